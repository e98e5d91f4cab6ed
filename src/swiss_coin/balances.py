"""Balance aggregation between participants and across groups.

Sign convention: positive means the counterpart owes the subject, negative
means the subject owes the counterpart. Soft-deleted expenses and settlements
are ignored entirely.
"""

import logging
from collections.abc import Iterable
from decimal import Decimal
from uuid import UUID

from .exceptions import DataIntegrityError, MissingCurrentUserError
from .models import (
    Expense,
    Group,
    GroupBalanceSummary,
    MemberBalance,
    Participant,
    Settlement,
    SettlementCheck,
    SettlementPolicy,
    SubscriptionPayment,
    ValidationErrorKind,
    ValidationFailure,
)
from .money import (
    DEFAULT_CURRENCY,
    MAX_BALANCE,
    CurrencyBalance,
    is_valid_amount,
    round_to_minor_unit,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def require_subject(subject_id: UUID | None) -> UUID:
    if subject_id is None:
        raise MissingCurrentUserError()
    return subject_id


def pairwise_balance(
    expense: Expense | SubscriptionPayment, subject_id: UUID, counterpart_id: UUID
) -> Decimal:
    """
    One expense's (or subscription payment's) contribution to the balance
    between subject and counterpart.

    If the subject paid, the counterpart owes their split. If the counterpart
    paid, the subject owes theirs. Anyone's own share of their own expense is
    not a debt.
    """
    if expense.is_deleted or subject_id == counterpart_id:
        return ZERO

    if expense.payer_id == subject_id:
        split = expense.split_for(counterpart_id)
        return split.amount if split else ZERO
    if expense.payer_id == counterpart_id:
        split = expense.split_for(subject_id)
        return -split.amount if split else ZERO
    return ZERO


def settlement_effect(settlement: Settlement, subject_id: UUID, counterpart_id: UUID) -> Decimal:
    """
    One settlement's contribution to the balance between subject and counterpart.

    A payment from the counterpart to the subject reduces what the counterpart
    owes; a payment from the subject reduces what the subject owes.
    """
    if settlement.is_deleted or subject_id == counterpart_id:
        return ZERO
    if settlement.from_id == counterpart_id and settlement.to_id == subject_id:
        return -settlement.amount
    if settlement.from_id == subject_id and settlement.to_id == counterpart_id:
        return settlement.amount
    return ZERO


def balance_between(
    subject_id: UUID | None,
    counterpart_id: UUID,
    expenses: Iterable[Expense],
    settlements: Iterable[Settlement],
    currency: str | None = None,
) -> Decimal:
    """
    Net balance between two participants.

    Args:
        subject_id: Whose point of view (usually the current user)
        counterpart_id: The other participant
        expenses: Already-fetched expenses; unrelated ones contribute nothing
        settlements: Already-fetched settlements
        currency: Only count records in this currency. None counts everything.

    Returns:
        Positive if the counterpart owes the subject, negative otherwise

    Raises:
        MissingCurrentUserError: If subject_id is None
    """
    subject_id = require_subject(subject_id)
    code = currency.upper() if currency else None

    balance = ZERO
    for expense in expenses:
        if code is None or expense.currency == code:
            balance += pairwise_balance(expense, subject_id, counterpart_id)
    for settlement in settlements:
        if code is None or settlement.currency == code:
            balance += settlement_effect(settlement, subject_id, counterpart_id)
    return balance


def balances_by_currency(
    subject_id: UUID | None,
    counterpart_id: UUID,
    expenses: Iterable[Expense],
    settlements: Iterable[Settlement],
) -> CurrencyBalance:
    """Same as balance_between, kept separate per currency."""
    subject_id = require_subject(subject_id)

    balance = CurrencyBalance()
    for expense in expenses:
        amount = pairwise_balance(expense, subject_id, counterpart_id)
        if amount:
            balance.add(amount, expense.currency)
    for settlement in settlements:
        amount = settlement_effect(settlement, subject_id, counterpart_id)
        if amount:
            balance.add(amount, settlement.currency)
    return balance


def group_member_balances(
    subject_id: UUID | None,
    group: Group,
    participants: Iterable[Participant],
    expenses: Iterable[Expense],
    settlements: Iterable[Settlement],
    currency: str | None = None,
) -> list[MemberBalance]:
    """
    Balance between the subject and every other member of a group.

    Only expenses and settlements recorded against the group are counted.
    Members are returned sorted by name.

    Raises:
        MissingCurrentUserError: If subject_id is None
        DataIntegrityError: If a member id has no matching participant
    """
    subject_id = require_subject(subject_id)
    by_id = {p.id: p for p in participants}

    group_expenses = [e for e in expenses if e.group_id == group.id]
    group_settlements = [s for s in settlements if s.group_id == group.id]

    members = []
    for member_id in group.member_ids:
        if member_id == subject_id:
            continue
        participant = by_id.get(member_id)
        if participant is None:
            raise DataIntegrityError(
                f"Group {group.id} lists member {member_id} with no participant record"
            )
        members.append(
            MemberBalance(
                participant=participant,
                balance=balance_between(
                    subject_id, member_id, group_expenses, group_settlements, currency
                ),
            )
        )

    return sorted(members, key=lambda m: (m.participant.name, str(m.participant.id)))


def group_summary(
    subject_id: UUID | None,
    group: Group,
    participants: Iterable[Participant],
    expenses: Iterable[Expense],
    settlements: Iterable[Settlement],
    currency: str | None = None,
) -> GroupBalanceSummary:
    """
    Group balances with "owed to you" and "you owe" totals.

    The two totals are summed separately and not netted against each other.
    """
    members = group_member_balances(
        subject_id, group, participants, expenses, settlements, currency
    )
    return GroupBalanceSummary(
        group_id=group.id,
        members=members,
        owed_to_you=sum((m.balance for m in members if m.balance > 0), ZERO),
        you_owe=sum((-m.balance for m in members if m.balance < 0), ZERO),
    )


def check_settlement(
    amount: Decimal,
    outstanding: Decimal,
    policy: SettlementPolicy,
    currency: str = DEFAULT_CURRENCY,
) -> SettlementCheck:
    """
    Check a settlement amount against what the payer actually owes.

    Args:
        amount: Amount the user wants to settle
        outstanding: What the payer owes the recipient (positive)
        policy: REJECT fails on over-settlement; CLAMP records the outstanding
            amount instead and reports both figures
        currency: Currency of both amounts

    Returns:
        SettlementCheck with the amount to record, or an error
    """
    amount, outstanding = Decimal(amount), Decimal(outstanding)
    if not (is_valid_amount(amount) and is_valid_amount(outstanding, MAX_BALANCE)):
        return SettlementCheck(
            requested_amount=amount if amount.is_finite() else ZERO,
            outstanding=outstanding if outstanding.is_finite() else ZERO,
            error=ValidationFailure(
                kind=ValidationErrorKind.INVALID_AMOUNT,
                detail=f"Amount out of range: {amount} against a balance of {outstanding}",
            ),
        )

    requested = round_to_minor_unit(amount, currency)
    owed = round_to_minor_unit(outstanding, currency)

    def reject(kind: ValidationErrorKind, detail: str) -> SettlementCheck:
        return SettlementCheck(
            requested_amount=requested,
            outstanding=owed,
            error=ValidationFailure(kind=kind, detail=detail),
        )

    if requested <= 0:
        return reject(
            ValidationErrorKind.INVALID_AMOUNT,
            "Settlement amount must be greater than zero",
        )
    if owed <= 0:
        return reject(
            ValidationErrorKind.SETTLEMENT_EXCEEDS_BALANCE,
            "There is no outstanding balance to settle",
        )
    if requested <= owed:
        return SettlementCheck(requested_amount=requested, amount=requested, outstanding=owed)

    if policy == SettlementPolicy.CLAMP:
        logger.info(f"Clamped settlement from {requested} to outstanding {owed} {currency}")
        return SettlementCheck(
            requested_amount=requested, amount=owed, outstanding=owed, clamped=True
        )

    return reject(
        ValidationErrorKind.SETTLEMENT_EXCEEDS_BALANCE,
        f"Settlement of {requested} exceeds the outstanding balance of {owed}",
    )
