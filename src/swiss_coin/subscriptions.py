"""Billing dates, cost equivalents and member balances for subscriptions.

A shared subscription's payments are split equally between its subscribers
by the same engine that splits expenses, so balances here follow the same
sign convention as `balances`: positive means the member owes the subject.
"""

import calendar
from collections.abc import Iterable
from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID

from .balances import ZERO, pairwise_balance, require_subject, settlement_effect
from .exceptions import DataIntegrityError
from .models import (
    BillingCycle,
    BillingStatus,
    Participant,
    SplitMethod,
    SplitResult,
    Subscription,
    SubscriptionBalanceSummary,
    SubscriptionMemberBalance,
    SubscriptionPayment,
    SubscriptionSettlement,
)
from .money import round_to_minor_unit
from .splitter import compute_split

# A subscription billing within this many days counts as due.
DUE_SOON_DAYS = 7

WEEKS_PER_MONTH = Decimal("4.33")
DAYS_PER_MONTH = Decimal("30.44")


# ============================================================================
# Billing dates
# ============================================================================


def _add_months(day: date, months: int) -> date:
    """Move by whole months, clamping to the last day of a shorter month."""
    years, month_index = divmod(day.month - 1 + months, 12)
    year = day.year + years
    month = month_index + 1
    last_day = calendar.monthrange(year, month)[1]
    return day.replace(year=year, month=month, day=min(day.day, last_day))


def next_billing_date(
    cycle: BillingCycle | str, from_date: date, custom_cycle_days: int = 30
) -> date:
    """Billing date one cycle after `from_date`."""
    cycle = BillingCycle(cycle)
    if cycle == BillingCycle.WEEKLY:
        return from_date + timedelta(days=7)
    if cycle == BillingCycle.MONTHLY:
        return _add_months(from_date, 1)
    if cycle == BillingCycle.YEARLY:
        return _add_months(from_date, 12)
    return from_date + timedelta(days=max(1, custom_cycle_days))


def first_billing_date(
    cycle: BillingCycle | str,
    start_date: date,
    today: date,
    custom_cycle_days: int = 30,
) -> date:
    """
    First billing date after today for a subscription starting on `start_date`.

    A start date in the past is advanced one cycle at a time until it lies in
    the future; a future start date is the first billing date itself.
    """
    billing = start_date
    while billing <= today:
        billing = next_billing_date(cycle, billing, custom_cycle_days)
    return billing


def days_until_billing(subscription: Subscription, today: date) -> int:
    return (subscription.next_billing_date - today).days


def billing_status(subscription: Subscription, today: date) -> BillingStatus:
    """Paused if inactive, otherwise overdue, due within a week, or upcoming."""
    if not subscription.is_active:
        return BillingStatus.PAUSED

    days = days_until_billing(subscription, today)
    if days < 0:
        return BillingStatus.OVERDUE
    if days <= DUE_SOON_DAYS:
        return BillingStatus.DUE
    return BillingStatus.UPCOMING


# ============================================================================
# Cost equivalents
# ============================================================================


def _monthly_cost(subscription: Subscription) -> Decimal:
    amount = subscription.amount
    if subscription.cycle == BillingCycle.WEEKLY:
        return amount * WEEKS_PER_MONTH
    if subscription.cycle == BillingCycle.YEARLY:
        return amount / 12
    if subscription.cycle == BillingCycle.CUSTOM:
        return amount * DAYS_PER_MONTH / max(1, subscription.custom_cycle_days)
    return amount


def monthly_equivalent(subscription: Subscription) -> Decimal:
    """What the subscription costs per month, rounded to the minor unit."""
    return round_to_minor_unit(_monthly_cost(subscription), subscription.currency)


def yearly_equivalent(subscription: Subscription) -> Decimal:
    return round_to_minor_unit(_monthly_cost(subscription) * 12, subscription.currency)


def my_share(subscription: Subscription) -> Decimal:
    """Each subscriber's share of one billing amount (the whole amount if personal)."""
    return round_to_minor_unit(
        subscription.amount / subscription.subscriber_count, subscription.currency
    )


# ============================================================================
# Payments and balances
# ============================================================================


def split_payment(
    subscription: Subscription,
    subscribers: Iterable[Participant],
    amount: Decimal,
) -> SplitResult:
    """
    Split one payment equally between the subscribers.

    Leftover minor units go one at a time in the splitter's deterministic
    order. Anyone who is not a subscriber is rejected.
    """
    return compute_split(
        amount,
        subscribers,
        SplitMethod.EQUAL,
        currency=subscription.currency,
        allowed_ids=subscription.subscriber_ids,
    )


def subscription_member_balances(
    subject_id: UUID | None,
    subscription: Subscription,
    participants: Iterable[Participant],
    payments: Iterable[SubscriptionPayment],
    settlements: Iterable[SubscriptionSettlement],
) -> list[SubscriptionMemberBalance]:
    """
    Balance between the subject and every other subscriber.

    Personal and paused subscriptions carry no balances. Only payments and
    settlements recorded against this subscription are counted. Members are
    returned sorted by name.

    Raises:
        MissingCurrentUserError: If subject_id is None
        DataIntegrityError: If a subscriber id has no matching participant
    """
    subject_id = require_subject(subject_id)
    if not subscription.is_shared or not subscription.is_active:
        return []

    by_id = {p.id: p for p in participants}
    own_payments = [
        p for p in payments if p.subscription_id == subscription.id and not p.is_deleted
    ]
    own_settlements = [s for s in settlements if s.subscription_id == subscription.id]

    members = []
    for member_id in subscription.subscriber_ids:
        if member_id == subject_id:
            continue
        participant = by_id.get(member_id)
        if participant is None:
            raise DataIntegrityError(
                f"Subscription {subscription.id} lists subscriber {member_id} "
                "with no participant record"
            )

        balance = sum(
            (pairwise_balance(p, subject_id, member_id) for p in own_payments), ZERO
        )
        balance += sum(
            (settlement_effect(s, subject_id, member_id) for s in own_settlements), ZERO
        )
        paid = sum((p.amount for p in own_payments if p.payer_id == member_id), ZERO)
        members.append(SubscriptionMemberBalance(participant=participant, balance=balance, paid=paid))

    return sorted(members, key=lambda m: (m.participant.name, str(m.participant.id)))


def subscription_summary(
    subject_id: UUID | None,
    subscription: Subscription,
    participants: Iterable[Participant],
    payments: Iterable[SubscriptionPayment],
    settlements: Iterable[SubscriptionSettlement],
) -> SubscriptionBalanceSummary:
    members = subscription_member_balances(
        subject_id, subscription, participants, payments, settlements
    )
    return SubscriptionBalanceSummary(
        subscription_id=subscription.id,
        members=members,
        owed_to_you=sum((m.balance for m in members if m.balance > 0), ZERO),
        you_owe=sum((-m.balance for m in members if m.balance < 0), ZERO),
    )
