"""Tests for SQLite persistence."""

import sqlite3
from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from swiss_coin.db import Database
from swiss_coin.exceptions import DataIntegrityError
from swiss_coin.models import (
    Expense,
    Group,
    Message,
    Participant,
    Reminder,
    Settlement,
    Split,
    SplitMethod,
    Subscription,
    SubscriptionPayment,
    SubscriptionSettlement,
)


@pytest.fixture
def db(tmp_path):
    """Create a temporary database."""
    db = Database(tmp_path / "test.db")
    yield db
    db.close()


@pytest.fixture
def people(db):
    me = Participant(name="Me")
    sam = Participant(name="Sam")
    db.save_participant(me)
    db.save_participant(sam)
    return me, sam


def make_expense(payer_id, shares, method=SplitMethod.EQUAL) -> Expense:
    expense_id = uuid4()
    splits = [
        Split(expense_id=expense_id, participant_id=pid, amount=Decimal(amount), raw_input=raw)
        for pid, amount, raw in shares
    ]
    return Expense(
        id=expense_id,
        title="Taxi",
        amount=sum((s.amount for s in splits), Decimal("0")),
        date=datetime(2026, 2, 14, 22, 30),
        payer_id=payer_id,
        split_method=method,
        splits=splits,
    )


class TestConfig:
    def test_current_user_round_trip(self, db, people):
        me, _ = people
        assert db.get_current_user_id() is None

        db.set_current_user_id(me.id)

        assert db.get_current_user_id() == me.id

    def test_bad_current_user_id(self, db):
        db.set_config("current_user_id", "not-a-uuid")
        with pytest.raises(DataIntegrityError):
            db.get_current_user_id()


class TestParticipantsAndGroups:
    def test_find_by_name_is_case_insensitive(self, db, people):
        _, sam = people
        assert db.find_participants_by_name("  sAm ") == [sam]
        assert db.find_participants_by_name("Nobody") == []

    def test_save_participant_updates(self, db, people):
        _, sam = people
        db.save_participant(sam.model_copy(update={"phone_number": "555-0100"}))

        assert db.get_participant(sam.id).phone_number == "555-0100"
        assert len(db.list_participants()) == 2

    def test_group_members_round_trip(self, db, people):
        me, sam = people
        group = Group(name="Flat", owner_id=me.id, member_ids=[me.id, sam.id])
        db.save_group(group)

        loaded = db.get_group(group.id)

        assert loaded.member_ids == [me.id, sam.id]
        assert db.find_groups_by_name("flat")[0].id == group.id

    def test_group_with_unknown_member_is_not_saved(self, db, people):
        me, _ = people
        group = Group(name="Ghosts", owner_id=me.id, member_ids=[me.id, uuid4()])

        with pytest.raises(sqlite3.IntegrityError):
            db.save_group(group)

        assert db.get_group(group.id) is None


class TestExpenses:
    def test_round_trip_keeps_splits_and_inputs(self, db, people):
        me, sam = people
        expense = make_expense(
            me.id,
            [(me.id, "3.00", Decimal("1")), (sam.id, "6.00", Decimal("2"))],
            SplitMethod.SHARES,
        )
        db.save_expense(expense)

        loaded = db.get_expense(expense.id)

        assert loaded == expense
        assert loaded.split_method == SplitMethod.SHARES
        assert [s.raw_input for s in loaded.splits] == [Decimal("1"), Decimal("2")]

    def test_save_is_atomic(self, db, people):
        """A split that fails its foreign key rolls back the whole expense."""
        me, _ = people
        expense = make_expense(me.id, [(me.id, "5.00", None), (uuid4(), "5.00", None)])

        with pytest.raises(sqlite3.IntegrityError):
            db.save_expense(expense)

        assert db.get_expense(expense.id) is None
        count = db.conn.execute("SELECT COUNT(*) FROM splits").fetchone()[0]
        assert count == 0

    def test_soft_delete(self, db, people):
        me, sam = people
        expense = make_expense(me.id, [(sam.id, "12.00", None)])
        db.save_expense(expense)

        assert db.soft_delete_expense(expense.id)
        assert not db.soft_delete_expense(expense.id)

        assert db.list_expenses() == []
        kept = db.list_expenses(include_deleted=True)
        assert len(kept) == 1
        assert kept[0].is_deleted

    def test_unknown_split_method_fails_fast(self, db, people):
        me, sam = people
        expense = make_expense(me.id, [(sam.id, "12.00", None)])
        db.save_expense(expense)
        db.conn.execute(
            "UPDATE expenses SET split_method = 'itemized' WHERE id = ?", (str(expense.id),)
        )

        with pytest.raises(DataIntegrityError):
            db.get_expense(expense.id)

    def test_splits_that_no_longer_reconcile_fail_fast(self, db, people):
        me, sam = people
        expense = make_expense(me.id, [(sam.id, "12.00", None)])
        db.save_expense(expense)
        db.conn.execute("UPDATE splits SET amount = '11.99'")

        with pytest.raises(DataIntegrityError):
            db.list_expenses()

    def test_negative_split_amount_fails_fast(self, db, people):
        me, sam = people
        db.save_expense(make_expense(me.id, [(sam.id, "12.00", None)]))
        db.conn.execute("UPDATE splits SET amount = '-12.00'")

        with pytest.raises(DataIntegrityError):
            db.list_expenses()


class TestSettlementsRemindersMessages:
    def test_settlement_round_trip_and_delete(self, db, people):
        me, sam = people
        settlement = Settlement(
            amount=Decimal("20.00"),
            from_id=sam.id,
            to_id=me.id,
            date=datetime(2026, 2, 15, 9, 0),
            is_full_settlement=True,
        )
        db.save_settlement(settlement)

        assert db.list_settlements() == [settlement]
        assert db.soft_delete_settlement(settlement.id)
        assert db.list_settlements() == []

    def test_reminder_flags(self, db, people):
        _, sam = people
        reminder = Reminder(amount=Decimal("8.00"), to_id=sam.id)
        db.save_reminder(reminder)

        assert db.mark_reminder_read(reminder.id)
        assert db.clear_reminders_for(sam.id) == 1
        assert db.clear_reminders_for(sam.id) == 0

        loaded = db.list_reminders()[0]
        assert loaded.is_read
        assert loaded.is_cleared

    def test_messages_newest_first(self, db, people):
        _, sam = people
        older = Message(content="hi", participant_id=sam.id, timestamp=datetime(2026, 2, 1))
        newer = Message(content="paid", participant_id=sam.id, timestamp=datetime(2026, 2, 2))
        db.save_message(older)
        db.save_message(newer)

        assert [m.content for m in db.list_messages()] == ["paid", "hi"]

    def test_settlement_with_zero_amount_fails_fast(self, db, people):
        me, sam = people
        db.save_settlement(Settlement(amount=Decimal("20.00"), from_id=sam.id, to_id=me.id))
        db.conn.execute("UPDATE settlements SET amount = '0'")

        with pytest.raises(DataIntegrityError):
            db.list_settlements()

    def test_reminder_with_negative_amount_fails_fast(self, db, people):
        _, sam = people
        db.save_reminder(Reminder(amount=Decimal("8.00"), to_id=sam.id))
        db.conn.execute("UPDATE reminders SET amount = '-1'")

        with pytest.raises(DataIntegrityError):
            db.list_reminders()

    def test_message_with_garbled_timestamp_fails_fast(self, db, people):
        _, sam = people
        db.save_message(Message(content="hi", participant_id=sam.id))
        db.conn.execute("UPDATE messages SET timestamp = 'yesterday-ish'")

        with pytest.raises(DataIntegrityError):
            db.list_messages()

    def test_empty_message_content_fails_fast(self, db, people):
        _, sam = people
        db.save_message(Message(content="hi", participant_id=sam.id))
        db.conn.execute("UPDATE messages SET content = ''")

        with pytest.raises(DataIntegrityError):
            db.list_messages()


class TestSubscriptions:
    def make_subscription(self, me, sam) -> Subscription:
        return Subscription(
            name="Streaming",
            amount=Decimal("15.99"),
            start_date=date(2026, 1, 10),
            next_billing_date=date(2026, 3, 10),
            is_shared=True,
            subscriber_ids=[me.id, sam.id],
        )

    def test_round_trip_keeps_subscribers(self, db, people):
        me, sam = people
        subscription = self.make_subscription(me, sam)
        db.save_subscription(subscription)

        assert db.get_subscription(subscription.id) == subscription
        assert db.find_subscriptions_by_name("streaming") == [subscription]

    def test_update_replaces_subscribers(self, db, people):
        me, sam = people
        subscription = self.make_subscription(me, sam)
        db.save_subscription(subscription)

        paused = subscription.model_copy(update={"is_active": False, "subscriber_ids": [me.id]})
        db.save_subscription(paused)

        loaded = db.get_subscription(subscription.id)
        assert not loaded.is_active
        assert loaded.subscriber_ids == [me.id]

    def test_payment_moves_next_billing_date(self, db, people):
        me, sam = people
        subscription = self.make_subscription(me, sam)
        db.save_subscription(subscription)
        payment_id = uuid4()
        payment = SubscriptionPayment(
            id=payment_id,
            subscription_id=subscription.id,
            amount=Decimal("15.99"),
            payer_id=me.id,
            billing_period_start=date(2026, 3, 10),
            billing_period_end=date(2026, 4, 10),
            date=datetime(2026, 3, 10, 8, 0),
            splits=[
                Split(expense_id=payment_id, participant_id=me.id, amount=Decimal("8.00")),
                Split(expense_id=payment_id, participant_id=sam.id, amount=Decimal("7.99")),
            ],
        )

        db.save_subscription_payment(payment, date(2026, 4, 10))

        assert db.list_subscription_payments(subscription.id) == [payment]
        assert db.get_subscription(subscription.id).next_billing_date == date(2026, 4, 10)

    def test_settlements_filtered_by_subscription(self, db, people):
        me, sam = people
        subscription = self.make_subscription(me, sam)
        db.save_subscription(subscription)
        settlement = SubscriptionSettlement(
            subscription_id=subscription.id,
            amount=Decimal("7.99"),
            from_id=sam.id,
            to_id=me.id,
            date=datetime(2026, 3, 12),
        )
        db.save_subscription_settlement(settlement)

        assert db.list_subscription_settlements(subscription.id) == [settlement]
        assert db.list_subscription_settlements(uuid4()) == []

    def test_soft_delete_hides_subscription(self, db, people):
        me, sam = people
        subscription = self.make_subscription(me, sam)
        db.save_subscription(subscription)

        assert db.soft_delete_subscription(subscription.id)
        assert db.list_subscriptions() == []
        assert db.find_subscriptions_by_name("Streaming") == []
        assert db.get_subscription(subscription.id).is_deleted

    def test_unknown_cycle_fails_fast(self, db, people):
        me, sam = people
        db.save_subscription(self.make_subscription(me, sam))
        db.conn.execute("UPDATE subscriptions SET cycle = 'fortnightly'")

        with pytest.raises(DataIntegrityError):
            db.list_subscriptions()

    def test_garbled_billing_date_fails_fast(self, db, people):
        me, sam = people
        db.save_subscription(self.make_subscription(me, sam))
        db.conn.execute("UPDATE subscriptions SET next_billing_date = 'soon'")

        with pytest.raises(DataIntegrityError):
            db.list_subscriptions()
