"""Service layer that composes persistence with the split and balance logic.

Every read builds a fresh snapshot from the database and hands it to the pure
functions in `splitter`, `balances` and `conversation`. Writes happen only
after validation has passed.
"""

import logging
from collections.abc import Iterable, Mapping
from datetime import date, datetime, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from pydantic import BaseModel

from .balances import (
    balance_between,
    balances_by_currency,
    check_settlement,
    group_summary,
)
from .config import Settings
from .conversation import build_conversation, build_group_conversation
from .db import Database
from .exceptions import (
    MissingCurrentUserError,
    RecordNotFoundError,
    SettlementRejectedError,
    SplitRejectedError,
)
from .models import (
    BillingCycle,
    ConversationDateGroup,
    Expense,
    Group,
    GroupBalanceSummary,
    Message,
    Participant,
    Reminder,
    Settlement,
    SettlementCheck,
    SettlementPolicy,
    SplitMethod,
    SplitResult,
    Subscription,
    SubscriptionBalanceSummary,
    SubscriptionPayment,
    SubscriptionSettlement,
    ValidationErrorKind,
    ValidationFailure,
)
from .money import CurrencyBalance, is_valid_amount, round_to_minor_unit
from .splitter import build_splits, compute_split
from .subscriptions import (
    first_billing_date,
    next_billing_date,
    split_payment,
    subscription_summary,
)

logger = logging.getLogger(__name__)


class SettlementReceipt(BaseModel):
    """A recorded settlement plus what the user originally asked for."""

    settlement: Settlement
    requested_amount: Decimal
    clamped: bool = False


class PersonBalance(BaseModel):
    """One person and their per-currency balance with the current user."""

    participant: Participant
    balances: dict[str, Decimal]

    @property
    def balance(self) -> CurrencyBalance:
        return CurrencyBalance(self.balances)


class LedgerService:
    """Service for recording expenses, settlements and reminders and reading balances."""

    def __init__(self, settings: Settings, database: Database):
        """Initialize the ledger service."""
        self.settings = settings
        self.db = database

    # ========================================================================
    # Identity
    # ========================================================================

    def current_user_id(self) -> UUID:
        """
        The current user's participant id.

        Raises:
            MissingCurrentUserError: If no current user has been registered
        """
        user_id = self.db.get_current_user_id()
        if user_id is None or self.db.get_participant(user_id) is None:
            raise MissingCurrentUserError()
        return user_id

    def register_current_user(self, name: str, phone_number: str | None = None) -> Participant:
        """Create the participant that represents the person using the app."""
        participant = Participant(name=name, phone_number=phone_number)
        self.db.save_participant(participant)
        self.db.set_current_user_id(participant.id)
        logger.info(f"Registered current user {participant.name} ({participant.id})")
        return participant

    # ========================================================================
    # People and groups
    # ========================================================================

    def add_participant(
        self, name: str, phone_number: str | None = None, email: str | None = None
    ) -> Participant:
        """Add a contact."""
        participant = Participant(name=name, phone_number=phone_number, email=email)
        self.db.save_participant(participant)
        logger.info(f"Added participant {participant.name} ({participant.id})")
        return participant

    def get_participant(self, participant_id: UUID) -> Participant:
        participant = self.db.get_participant(participant_id)
        if participant is None:
            raise RecordNotFoundError("Participant", participant_id)
        return participant

    def create_group(self, name: str, member_ids: Iterable[UUID]) -> Group:
        """Create a group owned by the current user, who is always a member."""
        owner_id = self.current_user_id()
        members = [owner_id, *member_ids]
        for member_id in members:
            self.get_participant(member_id)

        group = Group(name=name, owner_id=owner_id, member_ids=members)
        self.db.save_group(group)
        logger.info(f"Created group {group.name} with {len(group.member_ids)} members")
        return group

    def get_group(self, group_id: UUID) -> Group:
        group = self.db.get_group(group_id)
        if group is None:
            raise RecordNotFoundError("Group", group_id)
        return group

    # ========================================================================
    # Expenses
    # ========================================================================

    def preview_split(
        self,
        amount: Decimal,
        participant_ids: Iterable[UUID],
        method: SplitMethod = SplitMethod.EQUAL,
        raw_inputs: Mapping[UUID, object] | None = None,
        currency: str | None = None,
        group_id: UUID | None = None,
    ) -> SplitResult:
        """
        Compute a split without saving anything.

        Returns:
            The structured split result, including validation failures
        """
        participants = [self.get_participant(pid) for pid in participant_ids]
        allowed_ids = self.get_group(group_id).member_ids if group_id else None
        return compute_split(
            total=amount,
            participants=participants,
            method=method,
            raw_inputs=raw_inputs,
            currency=currency or self.settings.default_currency,
            allowed_ids=allowed_ids,
            percentage_tolerance=self.settings.percentage_tolerance,
            max_amount=self.settings.max_amount,
        )

    def add_expense(
        self,
        title: str,
        amount: Decimal,
        participant_ids: Iterable[UUID],
        method: SplitMethod = SplitMethod.EQUAL,
        raw_inputs: Mapping[UUID, object] | None = None,
        payer_id: UUID | None = None,
        group_id: UUID | None = None,
        currency: str | None = None,
        date: datetime | None = None,
        note: str | None = None,
    ) -> Expense:
        """
        Split an expense and save it with its splits in one transaction.

        Args:
            title: What the expense was for
            amount: Total paid
            participant_ids: Everyone carrying a share (include the payer if
                they carry one)
            method: Split strategy
            raw_inputs: Per-participant input for the strategy
            payer_id: Who paid; defaults to the current user
            group_id: Optional group the expense belongs to
            currency: Defaults to the configured currency
            date: When it happened; defaults to now
            note: Optional free text

        Returns:
            The saved expense

        Raises:
            SplitRejectedError: If the split does not validate; nothing is saved
        """
        creator_id = self.current_user_id()
        payer_id = payer_id or creator_id
        self.get_participant(payer_id)
        currency = (currency or self.settings.default_currency).upper()

        participant_ids = list(participant_ids)
        result = self.preview_split(
            amount, participant_ids, method, raw_inputs, currency, group_id
        )
        if result.error is not None:
            logger.warning(f"Rejected expense '{title}': {result.error.kind.value}")
            raise SplitRejectedError(result.error)

        if group_id is not None and payer_id not in self.get_group(group_id).member_ids:
            raise SplitRejectedError(
                ValidationFailure(
                    kind=ValidationErrorKind.INVALID_PARTICIPANT_SET,
                    detail="The payer is not a member of this group",
                )
            )

        expense_id = uuid4()
        expense = Expense(
            id=expense_id,
            title=title,
            amount=result.total,
            currency=currency,
            date=date or datetime.now(),
            payer_id=payer_id,
            created_by_id=creator_id,
            group_id=group_id,
            split_method=SplitMethod(method),
            splits=build_splits(expense_id, result, raw_inputs),
            note=note,
        )
        self.db.save_expense(expense)

        logger.info(
            f"Saved expense '{expense.title}' {expense.amount} {expense.currency} "
            f"split {expense.split_method.value} between {len(expense.splits)} people"
        )
        return expense

    def delete_expense(self, expense_id: UUID) -> None:
        """Soft-delete an expense; it stops counting towards every balance."""
        if not self.db.soft_delete_expense(expense_id):
            raise RecordNotFoundError("Expense", expense_id)

    # ========================================================================
    # Settlements, reminders and messages
    # ========================================================================

    def record_settlement(
        self,
        counterpart_id: UUID,
        amount: Decimal | None = None,
        currency: str | None = None,
        group_id: UUID | None = None,
        policy: SettlementPolicy | None = None,
        note: str | None = None,
        date: datetime | None = None,
    ) -> SettlementReceipt:
        """
        Record a payment that settles the balance with a counterpart.

        The direction follows the balance: whoever owes pays. Without an
        amount the whole outstanding balance is settled.

        Args:
            counterpart_id: The other person
            amount: Amount paid; None settles in full
            currency: Defaults to the configured currency
            group_id: Settle the balance within a group only
            policy: Over-settlement handling; defaults to the configured policy
            note: Optional free text
            date: When it happened; defaults to now

        Returns:
            Receipt with the saved settlement and the requested amount

        Raises:
            SettlementRejectedError: If there is nothing to settle, or the
                amount exceeds the balance under the REJECT policy
        """
        user_id = self.current_user_id()
        self.get_participant(counterpart_id)
        currency = (currency or self.settings.default_currency).upper()
        policy = policy or self.settings.settlement_policy

        balance = self._balance_for_settlement(user_id, counterpart_id, currency, group_id)
        from_id, to_id, check = self._check_settlement(
            user_id, counterpart_id, balance, amount, policy, currency
        )

        settlement = Settlement(
            amount=check.amount,
            currency=currency,
            date=date or datetime.now(),
            from_id=from_id,
            to_id=to_id,
            is_full_settlement=amount is None or check.amount == check.outstanding,
            group_id=group_id,
            note=note,
        )
        self.db.save_settlement(settlement)
        logger.info(
            f"Recorded settlement of {settlement.amount} {currency} "
            f"from {from_id} to {to_id}"
        )
        return SettlementReceipt(
            settlement=settlement,
            requested_amount=check.requested_amount,
            clamped=check.clamped,
        )

    def _check_settlement(
        self,
        user_id: UUID,
        counterpart_id: UUID,
        balance: Decimal,
        amount: Decimal | None,
        policy: SettlementPolicy,
        currency: str,
    ) -> tuple[UUID, UUID, SettlementCheck]:
        """Work out who pays whom from the balance sign and check the amount."""
        if balance < 0:
            from_id, to_id = user_id, counterpart_id
        else:
            from_id, to_id = counterpart_id, user_id
        outstanding = abs(balance)

        check = check_settlement(
            outstanding if amount is None else amount, outstanding, policy, currency
        )
        if check.error is not None or check.amount is None:
            logger.warning(f"Rejected settlement with {counterpart_id}: {check.error}")
            raise SettlementRejectedError(check.error)  # type: ignore[arg-type]
        return from_id, to_id, check

    def _balance_for_settlement(
        self, user_id: UUID, counterpart_id: UUID, currency: str, group_id: UUID | None
    ) -> Decimal:
        expenses = self.db.list_expenses()
        settlements = self.db.list_settlements()
        if group_id is not None:
            self.get_group(group_id)
            expenses = [e for e in expenses if e.group_id == group_id]
            settlements = [s for s in settlements if s.group_id == group_id]
        return balance_between(user_id, counterpart_id, expenses, settlements, currency)

    def delete_settlement(self, settlement_id: UUID) -> None:
        """Soft-delete a settlement."""
        if not self.db.soft_delete_settlement(settlement_id):
            raise RecordNotFoundError("Settlement", settlement_id)

    def send_reminder(
        self,
        counterpart_id: UUID,
        amount: Decimal | None = None,
        currency: str | None = None,
        message: str | None = None,
    ) -> Reminder:
        """
        Record a payment reminder to someone who owes the current user.

        The amount defaults to the whole debt; a given amount is rounded to the
        currency's minor unit and must lie between zero and the debt.

        Raises:
            SettlementRejectedError: If the counterpart owes nothing or the
                amount is out of range
        """
        user_id = self.current_user_id()
        self.get_participant(counterpart_id)
        currency = (currency or self.settings.default_currency).upper()

        owed = balance_between(
            user_id, counterpart_id, self.db.list_expenses(), self.db.list_settlements(), currency
        )
        if owed <= 0:
            raise SettlementRejectedError(
                ValidationFailure(
                    kind=ValidationErrorKind.INVALID_AMOUNT,
                    detail="They don't owe you anything to be reminded about",
                )
            )

        if amount is None:
            amount = owed
        else:
            amount = self._reminder_amount(amount, owed, currency)

        reminder = Reminder(
            amount=amount,
            currency=currency,
            to_id=counterpart_id,
            message=message,
        )
        self.db.save_reminder(reminder)
        logger.info(f"Sent reminder for {reminder.amount} {currency} to {counterpart_id}")
        return reminder

    def _reminder_amount(self, amount: Decimal, owed: Decimal, currency: str) -> Decimal:
        def reject(kind: ValidationErrorKind, detail: str) -> SettlementRejectedError:
            return SettlementRejectedError(ValidationFailure(kind=kind, detail=detail))

        amount = Decimal(amount)
        if not is_valid_amount(amount):
            raise reject(ValidationErrorKind.INVALID_AMOUNT, f"Not a valid amount: {amount}")
        amount = round_to_minor_unit(amount, currency)
        if amount <= 0:
            raise reject(ValidationErrorKind.INVALID_AMOUNT, "Reminder amount must be greater than zero")
        if amount > owed:
            raise reject(
                ValidationErrorKind.SETTLEMENT_EXCEEDS_BALANCE,
                f"They only owe you {owed} {currency}",
            )
        return amount

    def delete_reminder(self, reminder_id: UUID) -> None:
        """Soft-delete a reminder."""
        if not self.db.soft_delete_reminder(reminder_id):
            raise RecordNotFoundError("Reminder", reminder_id)

    def post_message(
        self,
        content: str,
        participant_id: UUID | None = None,
        group_id: UUID | None = None,
        expense_id: UUID | None = None,
    ) -> Message:
        """Post a chat message to a person, a group, or as a comment on an expense."""
        if participant_id is not None:
            self.get_participant(participant_id)
        if group_id is not None:
            self.get_group(group_id)
        if expense_id is not None and self.db.get_expense(expense_id) is None:
            raise RecordNotFoundError("Expense", expense_id)

        message = Message(
            content=content,
            participant_id=participant_id,
            group_id=group_id,
            expense_id=expense_id,
        )
        self.db.save_message(message)
        return message

    # ========================================================================
    # Balances and conversations
    # ========================================================================

    def balance_with(self, counterpart_id: UUID) -> CurrencyBalance:
        """Per-currency balance with one person (positive = they owe you)."""
        user_id = self.current_user_id()
        self.get_participant(counterpart_id)
        return balances_by_currency(
            user_id, counterpart_id, self.db.list_expenses(), self.db.list_settlements()
        )

    def all_balances(self) -> list[PersonBalance]:
        """Balance with every other person, ordered by name."""
        user_id = self.current_user_id()
        expenses = self.db.list_expenses()
        settlements = self.db.list_settlements()

        return [
            PersonBalance(
                participant=person,
                balances=balances_by_currency(
                    user_id, person.id, expenses, settlements
                ).non_zero,
            )
            for person in self.db.list_participants()
            if person.id != user_id
        ]

    def group_summary(self, group_id: UUID, currency: str | None = None) -> GroupBalanceSummary:
        """Member balances within a group, in one currency."""
        return group_summary(
            self.current_user_id(),
            self.get_group(group_id),
            self.db.list_participants(),
            self.db.list_expenses(),
            self.db.list_settlements(),
            (currency or self.settings.default_currency).upper(),
        )

    def conversation(self, counterpart_id: UUID) -> list[ConversationDateGroup]:
        """Date-grouped feed with one person, newest first."""
        user_id = self.current_user_id()
        self.get_participant(counterpart_id)
        return build_conversation(
            user_id,
            counterpart_id,
            self.db.list_expenses(),
            self.db.list_settlements(),
            self.db.list_reminders(),
            self.db.list_messages(),
        )

    def group_conversation(self, group_id: UUID) -> list[ConversationDateGroup]:
        """Date-grouped group feed, newest first."""
        return build_group_conversation(
            self.current_user_id(),
            self.get_group(group_id),
            self.db.list_expenses(),
            self.db.list_settlements(),
            self.db.list_reminders(),
            self.db.list_messages(),
        )

    # ========================================================================
    # Subscriptions
    # ========================================================================

    def add_subscription(
        self,
        name: str,
        amount: Decimal,
        cycle: BillingCycle = BillingCycle.MONTHLY,
        member_ids: Iterable[UUID] = (),
        start_date: date | None = None,
        currency: str | None = None,
        custom_cycle_days: int = 30,
        note: str | None = None,
    ) -> Subscription:
        """
        Create a subscription. It is shared as soon as it has members; the
        current user is always one of its subscribers.

        Raises:
            SplitRejectedError: If the amount is not a valid positive amount
        """
        user_id = self.current_user_id()
        currency = (currency or self.settings.default_currency).upper()
        members = [pid for pid in dict.fromkeys(member_ids) if pid != user_id]
        for member_id in members:
            self.get_participant(member_id)

        start = start_date or date.today()
        subscription = Subscription(
            name=name,
            amount=self._subscription_amount(amount, currency),
            currency=currency,
            cycle=BillingCycle(cycle),
            custom_cycle_days=custom_cycle_days,
            start_date=start,
            next_billing_date=first_billing_date(cycle, start, date.today(), custom_cycle_days),
            is_shared=bool(members),
            subscriber_ids=[user_id, *members],
            note=note,
        )
        self.db.save_subscription(subscription)
        logger.info(
            f"Added subscription {subscription.name} {subscription.amount} {currency} "
            f"{subscription.cycle.value} with {subscription.subscriber_count} subscriber(s)"
        )
        return subscription

    def _subscription_amount(self, amount: Decimal, currency: str) -> Decimal:
        amount = Decimal(amount)
        if is_valid_amount(amount, self.settings.max_amount):
            amount = round_to_minor_unit(amount, currency)
            if amount > 0:
                return amount
        raise SplitRejectedError(
            ValidationFailure(
                kind=ValidationErrorKind.INVALID_AMOUNT,
                detail=f"Not a valid subscription amount: {amount}",
            )
        )

    def get_subscription(self, subscription_id: UUID) -> Subscription:
        subscription = self.db.get_subscription(subscription_id)
        if subscription is None or subscription.is_deleted:
            raise RecordNotFoundError("Subscription", subscription_id)
        return subscription

    def list_subscriptions(self) -> list[Subscription]:
        return self.db.list_subscriptions()

    def record_subscription_payment(
        self,
        subscription_id: UUID,
        amount: Decimal | None = None,
        payer_id: UUID | None = None,
        date: datetime | None = None,
        note: str | None = None,
    ) -> SubscriptionPayment:
        """
        Record one billing-period payment and advance the next billing date.

        The payment is split equally between the subscribers. The billing
        period runs from the previous next-billing date to one cycle after
        the payment date.

        Args:
            subscription_id: Subscription being paid
            amount: Amount paid; defaults to the subscription's amount
            payer_id: Who paid; defaults to the current user
            date: When it was paid; defaults to now
            note: Optional free text

        Raises:
            SplitRejectedError: If the payer is not a subscriber or the amount
                does not split; nothing is saved
        """
        subscription = self.get_subscription(subscription_id)
        payer_id = payer_id or self.current_user_id()
        if not subscription.has_subscriber(payer_id):
            raise SplitRejectedError(
                ValidationFailure(
                    kind=ValidationErrorKind.INVALID_PARTICIPANT_SET,
                    detail="Only a subscriber can pay for this subscription",
                )
            )

        subscribers = [self.get_participant(pid) for pid in subscription.subscriber_ids]
        result = split_payment(
            subscription, subscribers, subscription.amount if amount is None else amount
        )
        if result.error is not None:
            logger.warning(f"Rejected payment for {subscription.name}: {result.error.kind.value}")
            raise SplitRejectedError(result.error)

        paid_at = date or datetime.now()
        period_end = next_billing_date(
            subscription.cycle, paid_at.date(), subscription.custom_cycle_days
        )
        payment_id = uuid4()
        payment = SubscriptionPayment(
            id=payment_id,
            subscription_id=subscription.id,
            amount=result.total,
            currency=subscription.currency,
            payer_id=payer_id,
            billing_period_start=subscription.next_billing_date,
            billing_period_end=period_end,
            date=paid_at,
            splits=build_splits(payment_id, result),
            note=note,
        )
        self.db.save_subscription_payment(payment, period_end)
        logger.info(
            f"Recorded payment of {payment.amount} {payment.currency} for {subscription.name}; "
            f"next billing {period_end}"
        )
        return payment

    def subscription_payments(self, subscription_id: UUID) -> list[SubscriptionPayment]:
        """Payment history of a subscription, newest first."""
        return self.db.list_subscription_payments(self.get_subscription(subscription_id).id)

    def subscription_summary(self, subscription_id: UUID) -> SubscriptionBalanceSummary:
        """Balances with every other subscriber of a shared subscription."""
        subscription = self.get_subscription(subscription_id)
        return subscription_summary(
            self.current_user_id(),
            subscription,
            self.db.list_participants(),
            self.db.list_subscription_payments(subscription.id),
            self.db.list_subscription_settlements(subscription.id),
        )

    def settle_subscription(
        self,
        subscription_id: UUID,
        counterpart_id: UUID,
        amount: Decimal | None = None,
        policy: SettlementPolicy | None = None,
        note: str | None = None,
        date: datetime | None = None,
    ) -> SettlementReceipt:
        """
        Settle the subscription balance with one subscriber.

        Works like `record_settlement`, but only against what the two owe each
        other through this subscription.

        Raises:
            SettlementRejectedError: If the counterpart is not a subscriber,
                nothing is owed, or the amount exceeds the balance under the
                REJECT policy
        """
        user_id = self.current_user_id()
        subscription = self.get_subscription(subscription_id)
        self.get_participant(counterpart_id)
        if counterpart_id == user_id or not subscription.has_subscriber(counterpart_id):
            raise SettlementRejectedError(
                ValidationFailure(
                    kind=ValidationErrorKind.INVALID_PARTICIPANT_SET,
                    detail="Only another subscriber can settle this subscription",
                )
            )

        summary = self.subscription_summary(subscription_id)
        balance = next(
            (m.balance for m in summary.members if m.participant.id == counterpart_id),
            Decimal("0"),
        )
        from_id, to_id, check = self._check_settlement(
            user_id,
            counterpart_id,
            balance,
            amount,
            policy or self.settings.settlement_policy,
            subscription.currency,
        )

        settlement = SubscriptionSettlement(
            subscription_id=subscription.id,
            amount=check.amount,
            currency=subscription.currency,
            date=date or datetime.now(),
            from_id=from_id,
            to_id=to_id,
            is_full_settlement=amount is None or check.amount == check.outstanding,
            note=note,
        )
        self.db.save_subscription_settlement(settlement)
        logger.info(
            f"Recorded subscription settlement of {settlement.amount} {settlement.currency} "
            f"for {subscription.name} from {from_id} to {to_id}"
        )
        return SettlementReceipt(
            settlement=settlement,
            requested_amount=check.requested_amount,
            clamped=check.clamped,
        )

    def set_subscription_active(self, subscription_id: UUID, active: bool) -> Subscription:
        """
        Pause or resume a subscription. Resuming moves a billing date that
        passed while paused to the next one after today.
        """
        subscription = self.get_subscription(subscription_id)
        update: dict[str, object] = {"is_active": active}
        if active and not subscription.is_active:
            update["next_billing_date"] = first_billing_date(
                subscription.cycle,
                subscription.next_billing_date,
                date.today() - timedelta(days=1),
                subscription.custom_cycle_days,
            )
        subscription = subscription.model_copy(update=update)
        self.db.save_subscription(subscription)
        logger.info(f"{'Resumed' if active else 'Paused'} subscription {subscription.name}")
        return subscription

    def delete_subscription(self, subscription_id: UUID) -> None:
        """Soft-delete a subscription."""
        if not self.db.soft_delete_subscription(subscription_id):
            raise RecordNotFoundError("Subscription", subscription_id)
