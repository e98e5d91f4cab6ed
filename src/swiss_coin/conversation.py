"""Conversation feed: expenses, settlements, reminders and messages in one timeline.

The projector is a pure read-side view. It is rebuilt from the current records
on every call and reuses each record's own id, so repeated calls on unchanged
data return identical feeds.
"""

from collections.abc import Iterable
from datetime import date, timedelta
from decimal import Decimal
from itertools import groupby
from uuid import UUID

from .balances import pairwise_balance, require_subject, settlement_effect
from .models import (
    ConversationDateGroup,
    ConversationItem,
    Expense,
    Group,
    ItemKind,
    Message,
    Reminder,
    Settlement,
)

# Tie-break for items with identical timestamps.
_KIND_ORDER = {
    ItemKind.TRANSACTION: 0,
    ItemKind.SETTLEMENT: 1,
    ItemKind.REMINDER: 2,
    ItemKind.MESSAGE: 3,
}


def net_effect(expense: Expense, subject_id: UUID) -> Decimal:
    """What an expense means for the subject overall: lent (+) or borrowed (-)."""
    if expense.is_deleted:
        return Decimal("0")
    own = expense.split_for(subject_id)
    own_amount = own.amount if own else Decimal("0")
    if expense.payer_id == subject_id:
        return expense.amount - own_amount
    return -own_amount


def _expense_item(expense: Expense, amount: Decimal) -> ConversationItem:
    return ConversationItem(
        id=expense.id,
        kind=ItemKind.TRANSACTION,
        timestamp=expense.date,
        amount=amount,
        currency=expense.currency,
        entity=expense,
    )


def _settlement_item(settlement: Settlement, amount: Decimal) -> ConversationItem:
    return ConversationItem(
        id=settlement.id,
        kind=ItemKind.SETTLEMENT,
        timestamp=settlement.date,
        amount=amount,
        currency=settlement.currency,
        entity=settlement,
    )


def _reminder_item(reminder: Reminder) -> ConversationItem:
    return ConversationItem(
        id=reminder.id,
        kind=ItemKind.REMINDER,
        timestamp=reminder.created_at,
        amount=reminder.amount,
        currency=reminder.currency,
        entity=reminder,
    )


def _message_item(message: Message) -> ConversationItem:
    return ConversationItem(
        id=message.id,
        kind=ItemKind.MESSAGE,
        timestamp=message.timestamp,
        entity=message,
    )


def sort_items(items: Iterable[ConversationItem]) -> list[ConversationItem]:
    """Newest first; kind, then id, break ties."""
    return sorted(
        items,
        key=lambda item: (item.timestamp, -_KIND_ORDER[item.kind], str(item.id)),
        reverse=True,
    )


def group_by_day(items: Iterable[ConversationItem]) -> list[ConversationDateGroup]:
    """Group items by calendar day, newest day first, keeping the item order."""
    ordered = sort_items(items)
    return [
        ConversationDateGroup(day=day, items=list(day_items))
        for day, day_items in groupby(ordered, key=lambda item: item.timestamp.date())
    ]


def conversation_items(
    subject_id: UUID | None,
    counterpart_id: UUID,
    expenses: Iterable[Expense],
    settlements: Iterable[Settlement],
    reminders: Iterable[Reminder],
    messages: Iterable[Message],
) -> list[ConversationItem]:
    """
    Everything shared between the subject and one counterpart, newest first.

    Includes expenses both take part in, settlements between the two,
    reminders sent to the counterpart and direct messages with them
    (comments on an expense are left out). Soft-deleted records are skipped.
    Expense and settlement amounts are their effect on the pair's balance.
    """
    subject_id = require_subject(subject_id)
    items: list[ConversationItem] = []

    for expense in expenses:
        if expense.is_deleted:
            continue
        if expense.involves(subject_id) and expense.involves(counterpart_id):
            items.append(_expense_item(expense, pairwise_balance(expense, subject_id, counterpart_id)))

    for settlement in settlements:
        if not settlement.is_deleted and settlement.is_between(subject_id, counterpart_id):
            items.append(
                _settlement_item(settlement, settlement_effect(settlement, subject_id, counterpart_id))
            )

    for reminder in reminders:
        if not reminder.is_deleted and reminder.to_id == counterpart_id:
            items.append(_reminder_item(reminder))

    for message in messages:
        if (
            not message.is_deleted
            and message.participant_id == counterpart_id
            and message.expense_id is None
        ):
            items.append(_message_item(message))

    return sort_items(items)


def build_conversation(
    subject_id: UUID | None,
    counterpart_id: UUID,
    expenses: Iterable[Expense],
    settlements: Iterable[Settlement],
    reminders: Iterable[Reminder],
    messages: Iterable[Message],
) -> list[ConversationDateGroup]:
    """Date-grouped conversation between the subject and one counterpart."""
    return group_by_day(
        conversation_items(subject_id, counterpart_id, expenses, settlements, reminders, messages)
    )


def group_conversation_items(
    subject_id: UUID | None,
    group: Group,
    expenses: Iterable[Expense],
    settlements: Iterable[Settlement],
    reminders: Iterable[Reminder],
    messages: Iterable[Message],
) -> list[ConversationItem]:
    """
    Everything in a group's feed, newest first.

    Group expenses (amount is the subject's net effect), group messages,
    settlements between the subject and any member, and reminders sent to
    members.
    """
    subject_id = require_subject(subject_id)
    others = {mid for mid in group.member_ids if mid != subject_id}
    items: list[ConversationItem] = []

    for expense in expenses:
        if not expense.is_deleted and expense.group_id == group.id:
            items.append(_expense_item(expense, net_effect(expense, subject_id)))

    for settlement in settlements:
        if settlement.is_deleted:
            continue
        counterpart = (
            settlement.to_id if settlement.from_id == subject_id
            else settlement.from_id if settlement.to_id == subject_id
            else None
        )
        if counterpart in others:
            items.append(
                _settlement_item(settlement, settlement_effect(settlement, subject_id, counterpart))
            )

    for reminder in reminders:
        if not reminder.is_deleted and reminder.to_id in others:
            items.append(_reminder_item(reminder))

    for message in messages:
        if not message.is_deleted and message.group_id == group.id and message.expense_id is None:
            items.append(_message_item(message))

    return sort_items(items)


def build_group_conversation(
    subject_id: UUID | None,
    group: Group,
    expenses: Iterable[Expense],
    settlements: Iterable[Settlement],
    reminders: Iterable[Reminder],
    messages: Iterable[Message],
) -> list[ConversationDateGroup]:
    """Date-grouped group feed."""
    return group_by_day(
        group_conversation_items(subject_id, group, expenses, settlements, reminders, messages)
    )


def date_label(day: date, today: date) -> str:
    """
    Header text for a day in the feed.

    "Today", "Yesterday", the weekday name within the current week,
    otherwise a medium date such as "Mar 4, 2026".
    """
    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    if day.isocalendar()[:2] == today.isocalendar()[:2]:
        return day.strftime("%A")
    return f"{day:%b} {day.day}, {day.year}"
