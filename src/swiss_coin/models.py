"""Pydantic domain models for Swiss Coin."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .money import DEFAULT_CURRENCY, from_minor_units, to_minor_units

# ============================================================================
# Enumerations
# ============================================================================


class SplitMethod(str, Enum):
    """How an expense's total is divided. The value is the stored tag."""

    EQUAL = "equal"
    PERCENTAGE = "percentage"
    AMOUNT = "amount"
    SHARES = "shares"
    ADJUSTMENT = "adjustment"

    @property
    def display_name(self) -> str:
        return _SPLIT_METHOD_NAMES[self]


_SPLIT_METHOD_NAMES = {
    SplitMethod.EQUAL: "Equally",
    SplitMethod.PERCENTAGE: "By Percent",
    SplitMethod.AMOUNT: "By Amount",
    SplitMethod.SHARES: "By Shares",
    SplitMethod.ADJUSTMENT: "Adjustments",
}


class ValidationErrorKind(str, Enum):
    """Kinds of validation failure returned by the split engine and aggregator."""

    INVALID_PARTICIPANT_SET = "InvalidParticipantSet"
    RECONCILIATION_FAILURE = "ReconciliationFailure"
    NEGATIVE_SHARE_FAILURE = "NegativeShareFailure"
    DIVISION_BY_ZERO = "DivisionByZero"
    SETTLEMENT_EXCEEDS_BALANCE = "SettlementExceedsBalance"
    INVALID_AMOUNT = "InvalidAmount"


class SettlementPolicy(str, Enum):
    """What to do when a settlement is larger than the outstanding balance."""

    REJECT = "reject"
    CLAMP = "clamp"


class ItemKind(str, Enum):
    """Type tag of a conversation feed item."""

    TRANSACTION = "transaction"
    SETTLEMENT = "settlement"
    REMINDER = "reminder"
    MESSAGE = "message"


class BillingCycle(str, Enum):
    """How often a subscription bills. CUSTOM uses the subscription's own day count."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class BillingStatus(str, Enum):
    """Where a subscription stands relative to its next billing date."""

    UPCOMING = "upcoming"
    DUE = "due"
    OVERDUE = "overdue"
    PAUSED = "paused"


def _normalize_currency(value: str) -> str:
    code = value.strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValueError(f"Invalid currency code: {value!r}")
    return code


# ============================================================================
# Entities
# ============================================================================


class Participant(BaseModel):
    """A person who can pay for or owe a share of an expense."""

    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(min_length=1)
    phone_number: str | None = None
    email: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)


class Group(BaseModel):
    """A named collection of participants. Member order carries no meaning."""

    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(min_length=1)
    owner_id: UUID
    member_ids: list[UUID] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)

    @field_validator("member_ids")
    @classmethod
    def dedupe_members(cls, value: list[UUID]) -> list[UUID]:
        return list(dict.fromkeys(value))

    def has_member(self, participant_id: UUID) -> bool:
        return participant_id in self.member_ids


class Split(BaseModel):
    """
    One participant's owed portion of an expense.

    A split has no identity of its own: it is addressed by
    (expense_id, participant_id), which is unique within an expense.
    """

    expense_id: UUID
    participant_id: UUID
    amount: Decimal = Field(ge=0)
    raw_input: Decimal | None = None  # percentage, share count, exact amount or adjustment

    @property
    def key(self) -> tuple[UUID, UUID]:
        return (self.expense_id, self.participant_id)


class Expense(BaseModel):
    """
    A shared expense paid by a single participant.

    Construction enforces that the splits reconcile exactly to the amount
    in the currency's minor unit.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    title: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    currency: str = DEFAULT_CURRENCY
    date: datetime = Field(default_factory=datetime.now)
    payer_id: UUID
    created_by_id: UUID | None = None
    group_id: UUID | None = None
    split_method: SplitMethod = SplitMethod.EQUAL
    splits: list[Split]
    note: str | None = None
    deleted_at: datetime | None = None

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        return _normalize_currency(value)

    @model_validator(mode="after")
    def check_splits(self) -> "Expense":
        if not self.splits:
            raise ValueError("An expense needs at least one participant")

        seen: set[UUID] = set()
        for split in self.splits:
            if split.expense_id != self.id:
                raise ValueError(
                    f"Split for {split.participant_id} belongs to expense "
                    f"{split.expense_id}, not {self.id}"
                )
            if split.participant_id in seen:
                raise ValueError(
                    f"Participant {split.participant_id} has more than one split"
                )
            seen.add(split.participant_id)

        expected = to_minor_units(self.amount, self.currency)
        actual = sum(to_minor_units(s.amount, self.currency) for s in self.splits)
        if actual != expected:
            raise ValueError(
                f"Splits sum to {from_minor_units(actual, self.currency)} "
                f"but the expense total is {from_minor_units(expected, self.currency)}"
            )
        return self

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def participant_ids(self) -> list[UUID]:
        return [split.participant_id for split in self.splits]

    def split_for(self, participant_id: UUID) -> Split | None:
        for split in self.splits:
            if split.participant_id == participant_id:
                return split
        return None

    def involves(self, participant_id: UUID) -> bool:
        """True if the participant paid or owes a share."""
        return self.payer_id == participant_id or self.split_for(participant_id) is not None


class Settlement(BaseModel):
    """A payment from one participant to another that reduces their balance."""

    id: UUID = Field(default_factory=uuid4)
    amount: Decimal = Field(gt=0)
    currency: str = DEFAULT_CURRENCY
    date: datetime = Field(default_factory=datetime.now)
    from_id: UUID
    to_id: UUID
    is_full_settlement: bool = False
    group_id: UUID | None = None
    note: str | None = None
    deleted_at: datetime | None = None

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        return _normalize_currency(value)

    @model_validator(mode="after")
    def check_parties(self) -> "Settlement":
        if self.from_id == self.to_id:
            raise ValueError("A settlement needs two different participants")
        return self

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def is_between(self, first_id: UUID, second_id: UUID) -> bool:
        return {self.from_id, self.to_id} == {first_id, second_id}


class Reminder(BaseModel):
    """A request for payment. Has no effect on balances."""

    id: UUID = Field(default_factory=uuid4)
    amount: Decimal = Field(gt=0)
    currency: str = DEFAULT_CURRENCY
    created_at: datetime = Field(default_factory=datetime.now)
    to_id: UUID
    message: str | None = None
    is_read: bool = False
    is_cleared: bool = False
    deleted_at: datetime | None = None

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        return _normalize_currency(value)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class Message(BaseModel):
    """Free-text chat message with a person, a group, or on an expense."""

    id: UUID = Field(default_factory=uuid4)
    content: str = Field(min_length=1)
    timestamp: datetime = Field(default_factory=datetime.now)
    is_from_user: bool = True
    is_edited: bool = False
    participant_id: UUID | None = None
    group_id: UUID | None = None
    expense_id: UUID | None = None  # set for comments on an expense
    deleted_at: datetime | None = None

    @model_validator(mode="after")
    def check_target(self) -> "Message":
        if self.participant_id is None and self.group_id is None and self.expense_id is None:
            raise ValueError("A message needs a person, group or expense")
        return self

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class Subscription(BaseModel):
    """
    A recurring charge, either personal or shared between subscribers.

    For a shared subscription `subscriber_ids` lists everyone who carries a
    share of each payment, the current user included.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    currency: str = DEFAULT_CURRENCY
    cycle: BillingCycle = BillingCycle.MONTHLY
    custom_cycle_days: int = Field(default=30, ge=1)
    start_date: date = Field(default_factory=date.today)
    next_billing_date: date
    is_shared: bool = False
    is_active: bool = True
    subscriber_ids: list[UUID] = Field(default_factory=list)
    note: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    deleted_at: datetime | None = None

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        return _normalize_currency(value)

    @field_validator("subscriber_ids")
    @classmethod
    def dedupe_subscribers(cls, value: list[UUID]) -> list[UUID]:
        return list(dict.fromkeys(value))

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def subscriber_count(self) -> int:
        """People sharing each payment; never below one."""
        if not self.is_shared:
            return 1
        return max(len(self.subscriber_ids), 1)

    def has_subscriber(self, participant_id: UUID) -> bool:
        return participant_id in self.subscriber_ids


class SubscriptionPayment(BaseModel):
    """
    One billing-period payment of a subscription by a single subscriber.

    Splits are addressed by the payment's id and reconcile exactly to the
    amount, the same way an expense's splits do.
    """

    id: UUID = Field(default_factory=uuid4)
    subscription_id: UUID
    amount: Decimal = Field(gt=0)
    currency: str = DEFAULT_CURRENCY
    payer_id: UUID
    billing_period_start: date | None = None
    billing_period_end: date | None = None
    date: datetime = Field(default_factory=datetime.now)
    splits: list[Split] = Field(min_length=1)
    note: str | None = None
    deleted_at: datetime | None = None

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        return _normalize_currency(value)

    @model_validator(mode="after")
    def check_splits(self) -> "SubscriptionPayment":
        if any(split.expense_id != self.id for split in self.splits):
            raise ValueError(f"A split does not belong to payment {self.id}")
        if len({split.participant_id for split in self.splits}) != len(self.splits):
            raise ValueError("A subscriber has more than one split")

        expected = to_minor_units(self.amount, self.currency)
        actual = sum(to_minor_units(s.amount, self.currency) for s in self.splits)
        if actual != expected:
            raise ValueError(
                f"Splits sum to {from_minor_units(actual, self.currency)} "
                f"but the payment is {from_minor_units(expected, self.currency)}"
            )
        return self

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def split_for(self, participant_id: UUID) -> Split | None:
        for split in self.splits:
            if split.participant_id == participant_id:
                return split
        return None


class SubscriptionSettlement(Settlement):
    """A settlement of a shared subscription balance. Kept apart from personal balances."""

    subscription_id: UUID


# ============================================================================
# Results
# ============================================================================


class ValidationFailure(BaseModel):
    """A structured validation error: which check failed and why."""

    kind: ValidationErrorKind
    detail: str


class SplitResult(BaseModel):
    """
    Outcome of the split engine.

    Exactly one of `shares` or `error` is set. `shares` is ordered by the
    deterministic participant order (display name, then id).
    """

    currency: str = DEFAULT_CURRENCY
    shares: dict[UUID, Decimal] | None = None
    error: ValidationFailure | None = None

    @classmethod
    def success(cls, shares: dict[UUID, Decimal], currency: str) -> "SplitResult":
        return cls(shares=shares, currency=currency)

    @classmethod
    def failure(
        cls, kind: ValidationErrorKind, detail: str, currency: str = DEFAULT_CURRENCY
    ) -> "SplitResult":
        return cls(error=ValidationFailure(kind=kind, detail=detail), currency=currency)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def total(self) -> Decimal:
        return sum((self.shares or {}).values(), Decimal("0"))


class SettlementCheck(BaseModel):
    """
    Outcome of checking a settlement against the outstanding balance.

    When the policy clamps, `requested_amount` keeps what the user entered
    and `amount` is what will be recorded.
    """

    requested_amount: Decimal
    amount: Decimal | None = None
    outstanding: Decimal
    clamped: bool = False
    error: ValidationFailure | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class MemberBalance(BaseModel):
    """A group member and their balance with the subject (positive = they owe)."""

    participant: Participant
    balance: Decimal


class GroupBalanceSummary(BaseModel):
    """Per-member balances in a group plus the un-netted totals."""

    group_id: UUID
    members: list[MemberBalance]
    owed_to_you: Decimal
    you_owe: Decimal

    @property
    def net(self) -> Decimal:
        return self.owed_to_you - self.you_owe

    @property
    def members_who_owe_you(self) -> list[MemberBalance]:
        return [m for m in self.members if m.balance > 0]

    @property
    def members_you_owe(self) -> list[MemberBalance]:
        return [m for m in self.members if m.balance < 0]


class SubscriptionMemberBalance(MemberBalance):
    """A subscriber's balance with the subject plus what they have paid in total."""

    paid: Decimal = Decimal("0")


class SubscriptionBalanceSummary(BaseModel):
    """Per-subscriber balances of a shared subscription plus the un-netted totals."""

    subscription_id: UUID
    members: list[SubscriptionMemberBalance]
    owed_to_you: Decimal
    you_owe: Decimal

    @property
    def net(self) -> Decimal:
        return self.owed_to_you - self.you_owe

    @property
    def members_who_owe_you(self) -> list[SubscriptionMemberBalance]:
        return [m for m in self.members if m.balance > 0]

    @property
    def members_you_owe(self) -> list[SubscriptionMemberBalance]:
        return [m for m in self.members if m.balance < 0]


class ConversationItem(BaseModel):
    """One entry in a conversation feed. `id` is the entity's own stable id."""

    id: UUID
    kind: ItemKind
    timestamp: datetime
    amount: Decimal | None = None
    currency: str | None = None
    entity: Expense | Settlement | Reminder | Message

    @property
    def is_system_strip(self) -> bool:
        return self.kind in (ItemKind.SETTLEMENT, ItemKind.REMINDER)


class ConversationDateGroup(BaseModel):
    """Conversation items that fall on the same calendar day."""

    day: date
    items: list[ConversationItem]
