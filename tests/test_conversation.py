"""Tests for the conversation feed projection."""

from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from swiss_coin.conversation import (
    build_conversation,
    build_group_conversation,
    conversation_items,
    date_label,
    net_effect,
)
from swiss_coin.exceptions import MissingCurrentUserError
from swiss_coin.models import (
    Expense,
    Group,
    ItemKind,
    Message,
    Participant,
    Reminder,
    Settlement,
    Split,
)


def make_expense(
    payer: Participant,
    shares: list[tuple[Participant, str]],
    when: datetime,
    group: Group | None = None,
) -> Expense:
    expense_id = uuid4()
    splits = [
        Split(expense_id=expense_id, participant_id=person.id, amount=Decimal(amount))
        for person, amount in shares
    ]
    return Expense(
        id=expense_id,
        title="Groceries",
        amount=sum((s.amount for s in splits), Decimal("0")),
        date=when,
        payer_id=payer.id,
        group_id=group.id if group else None,
        splits=splits,
    )


@pytest.fixture
def me():
    return Participant(name="Me")


@pytest.fixture
def sam():
    return Participant(name="Sam")


@pytest.fixture
def kim():
    return Participant(name="Kim")


@pytest.fixture
def records(me, sam, kim):
    """A small history between me and Sam, plus noise that must not show up."""
    shared = make_expense(me, [(me, "20.00"), (sam, "20.00")], datetime(2026, 3, 10, 19, 0))
    return {
        "expenses": [
            shared,
            make_expense(me, [(me, "5.00"), (kim, "5.00")], datetime(2026, 3, 10, 20, 0)),
        ],
        "settlements": [
            Settlement(
                amount=Decimal("20.00"),
                from_id=sam.id,
                to_id=me.id,
                date=datetime(2026, 3, 11, 9, 0),
            ),
        ],
        "reminders": [
            Reminder(amount=Decimal("20.00"), to_id=sam.id, created_at=datetime(2026, 3, 11, 8, 0)),
            Reminder(amount=Decimal("5.00"), to_id=kim.id, created_at=datetime(2026, 3, 11, 8, 30)),
        ],
        "messages": [
            Message(content="thanks!", participant_id=sam.id, timestamp=datetime(2026, 3, 11, 10, 0)),
            Message(
                content="was this the big shop?",
                participant_id=sam.id,
                expense_id=shared.id,
                timestamp=datetime(2026, 3, 11, 11, 0),
            ),
            Message(
                content="oops",
                participant_id=sam.id,
                timestamp=datetime(2026, 3, 11, 12, 0),
                deleted_at=datetime(2026, 3, 11, 12, 1),
            ),
        ],
    }


class TestConversationItems:
    def test_includes_only_shared_records_newest_first(self, me, sam, records):
        items = conversation_items(me.id, sam.id, **records)

        assert [item.kind for item in items] == [
            ItemKind.MESSAGE,
            ItemKind.SETTLEMENT,
            ItemKind.REMINDER,
            ItemKind.TRANSACTION,
        ]

    def test_amounts_are_balance_effects(self, me, sam, records):
        items = conversation_items(me.id, sam.id, **records)
        by_kind = {item.kind: item for item in items}

        assert by_kind[ItemKind.TRANSACTION].amount == Decimal("20.00")
        assert by_kind[ItemKind.SETTLEMENT].amount == Decimal("-20.00")
        assert by_kind[ItemKind.REMINDER].amount == Decimal("20.00")
        assert by_kind[ItemKind.MESSAGE].amount is None

    def test_item_ids_are_entity_ids(self, me, sam, records):
        items = conversation_items(me.id, sam.id, **records)
        assert all(item.id == item.entity.id for item in items)

    def test_system_strips(self, me, sam, records):
        items = conversation_items(me.id, sam.id, **records)
        strips = [item.kind for item in items if item.is_system_strip]
        assert strips == [ItemKind.SETTLEMENT, ItemKind.REMINDER]

    def test_same_timestamp_orders_by_kind(self, me, sam):
        when = datetime(2026, 3, 10, 12, 0)
        expense = make_expense(me, [(sam, "10.00")], when)
        settlement = Settlement(amount=Decimal("10.00"), from_id=sam.id, to_id=me.id, date=when)

        items = conversation_items(me.id, sam.id, [expense], [settlement], [], [])

        assert [item.kind for item in items] == [ItemKind.TRANSACTION, ItemKind.SETTLEMENT]

    def test_missing_subject(self, sam, records):
        with pytest.raises(MissingCurrentUserError):
            conversation_items(None, sam.id, **records)


class TestBuildConversation:
    def test_grouped_by_day(self, me, sam, records):
        groups = build_conversation(me.id, sam.id, **records)

        assert [g.day for g in groups] == [date(2026, 3, 11), date(2026, 3, 10)]
        assert len(groups[0].items) == 3
        assert groups[1].items[0].kind == ItemKind.TRANSACTION

    def test_idempotent(self, me, sam, records):
        first = build_conversation(me.id, sam.id, **records)
        second = build_conversation(me.id, sam.id, **records)

        assert first == second

    def test_empty(self, me, sam):
        assert build_conversation(me.id, sam.id, [], [], [], []) == []


class TestGroupConversation:
    def test_group_feed(self, me, sam, kim):
        trip = Group(name="Trip", owner_id=me.id, member_ids=[me.id, sam.id, kim.id])
        group_expense = make_expense(
            kim, [(me, "20.00"), (kim, "20.00")], datetime(2026, 3, 10, 9, 0), group=trip
        )
        records = {
            "expenses": [
                group_expense,
                make_expense(me, [(sam, "1.00")], datetime(2026, 3, 10, 10, 0)),
            ],
            "settlements": [
                Settlement(
                    amount=Decimal("20.00"),
                    from_id=me.id,
                    to_id=kim.id,
                    date=datetime(2026, 3, 12, 9, 0),
                ),
                Settlement(
                    amount=Decimal("3.00"),
                    from_id=sam.id,
                    to_id=kim.id,
                    date=datetime(2026, 3, 12, 10, 0),
                ),
            ],
            "reminders": [],
            "messages": [
                Message(content="see you there", group_id=trip.id, timestamp=datetime(2026, 3, 11, 9, 0)),
            ],
        }

        groups = build_group_conversation(me.id, trip, **records)
        items = [item for g in groups for item in g.items]

        assert [item.kind for item in items] == [
            ItemKind.SETTLEMENT,
            ItemKind.MESSAGE,
            ItemKind.TRANSACTION,
        ]
        assert items[0].amount == Decimal("20.00")
        assert items[2].amount == Decimal("-20.00")

    def test_net_effect(self, me, sam):
        expense = make_expense(me, [(me, "10.00"), (sam, "30.00")], datetime(2026, 3, 1))

        assert net_effect(expense, me.id) == Decimal("30.00")
        assert net_effect(expense, sam.id) == Decimal("-30.00")


class TestDateLabel:
    """2026-03-12 is a Thursday."""

    today = date(2026, 3, 12)

    def test_today_and_yesterday(self):
        assert date_label(date(2026, 3, 12), self.today) == "Today"
        assert date_label(date(2026, 3, 11), self.today) == "Yesterday"

    def test_same_week_uses_weekday(self):
        assert date_label(date(2026, 3, 9), self.today) == "Monday"

    def test_older_uses_medium_date(self):
        assert date_label(date(2026, 3, 1), self.today) == "Mar 1, 2026"
        assert date_label(date(2025, 12, 25), self.today) == "Dec 25, 2025"
