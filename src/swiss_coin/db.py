"""SQLite database operations for Swiss Coin."""

import logging
import sqlite3
from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from uuid import UUID

from pydantic import ValidationError

from .exceptions import DataIntegrityError
from .models import (
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

logger = logging.getLogger(__name__)


# ============================================================================
# Row decoding
# ============================================================================


def _required(row: sqlite3.Row, column: str, table: str):
    value = row[column]
    if value is None:
        raise DataIntegrityError(f"{table} row is missing {column}")
    return value


def _uuid(value: str | None, table: str, column: str) -> UUID | None:
    if value is None:
        return None
    try:
        return UUID(value)
    except (TypeError, ValueError) as e:
        raise DataIntegrityError(f"{table}.{column} is not a valid id: {value!r}") from e


def _required_uuid(row: sqlite3.Row, column: str, table: str) -> UUID:
    return _uuid(_required(row, column, table), table, column)  # type: ignore[return-value]


def _decimal(value: str | None, table: str, column: str) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(value)
    except InvalidOperation as e:
        raise DataIntegrityError(f"{table}.{column} is not a number: {value!r}") from e


def _timestamp(value: str | None, table: str, column: str) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise DataIntegrityError(f"{table}.{column} is not a timestamp: {value!r}") from e


def _date(value: str | None, table: str, column: str) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise DataIntegrityError(f"{table}.{column} is not a date: {value!r}") from e


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _str(value: object | None) -> str | None:
    return str(value) if value is not None else None


class Database:
    """SQLite database manager."""

    def __init__(self, db_path: Path):
        """Initialize database connection."""
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()

    def _init_schema(self):
        """Initialize database schema."""
        cursor = self.conn.cursor()

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS participants (
                id TEXT PRIMARY KEY NOT NULL,
                name TEXT NOT NULL,
                phone_number TEXT,
                email TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS user_groups (
                id TEXT PRIMARY KEY NOT NULL,
                name TEXT NOT NULL,
                owner_id TEXT NOT NULL REFERENCES participants(id),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS group_members (
                group_id TEXT NOT NULL REFERENCES user_groups(id),
                participant_id TEXT NOT NULL REFERENCES participants(id),
                PRIMARY KEY (group_id, participant_id)
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS expenses (
                id TEXT PRIMARY KEY NOT NULL,
                title TEXT NOT NULL,
                amount TEXT NOT NULL,
                currency TEXT NOT NULL,
                date TIMESTAMP NOT NULL,
                payer_id TEXT NOT NULL REFERENCES participants(id),
                created_by_id TEXT REFERENCES participants(id),
                group_id TEXT REFERENCES user_groups(id),
                split_method TEXT NOT NULL,
                note TEXT,
                deleted_at TIMESTAMP
            )
        """
        )

        # Splits are addressed by (expense, participant); there is no split id.
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS splits (
                expense_id TEXT NOT NULL REFERENCES expenses(id),
                participant_id TEXT NOT NULL REFERENCES participants(id),
                amount TEXT NOT NULL,
                raw_input TEXT,
                PRIMARY KEY (expense_id, participant_id)
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS settlements (
                id TEXT PRIMARY KEY NOT NULL,
                amount TEXT NOT NULL,
                currency TEXT NOT NULL,
                date TIMESTAMP NOT NULL,
                from_id TEXT NOT NULL REFERENCES participants(id),
                to_id TEXT NOT NULL REFERENCES participants(id),
                is_full_settlement INTEGER NOT NULL DEFAULT 0,
                group_id TEXT REFERENCES user_groups(id),
                note TEXT,
                deleted_at TIMESTAMP
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS reminders (
                id TEXT PRIMARY KEY NOT NULL,
                amount TEXT NOT NULL,
                currency TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                to_id TEXT NOT NULL REFERENCES participants(id),
                message TEXT,
                is_read INTEGER NOT NULL DEFAULT 0,
                is_cleared INTEGER NOT NULL DEFAULT 0,
                deleted_at TIMESTAMP
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY NOT NULL,
                content TEXT NOT NULL,
                timestamp TIMESTAMP NOT NULL,
                is_from_user INTEGER NOT NULL DEFAULT 1,
                is_edited INTEGER NOT NULL DEFAULT 0,
                participant_id TEXT REFERENCES participants(id),
                group_id TEXT REFERENCES user_groups(id),
                expense_id TEXT REFERENCES expenses(id),
                deleted_at TIMESTAMP
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS subscriptions (
                id TEXT PRIMARY KEY NOT NULL,
                name TEXT NOT NULL,
                amount TEXT NOT NULL,
                currency TEXT NOT NULL,
                cycle TEXT NOT NULL,
                custom_cycle_days INTEGER NOT NULL DEFAULT 30,
                start_date DATE NOT NULL,
                next_billing_date DATE NOT NULL,
                is_shared INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                note TEXT,
                created_at TIMESTAMP NOT NULL,
                deleted_at TIMESTAMP
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS subscription_members (
                subscription_id TEXT NOT NULL REFERENCES subscriptions(id),
                participant_id TEXT NOT NULL REFERENCES participants(id),
                PRIMARY KEY (subscription_id, participant_id)
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS subscription_payments (
                id TEXT PRIMARY KEY NOT NULL,
                subscription_id TEXT NOT NULL REFERENCES subscriptions(id),
                amount TEXT NOT NULL,
                currency TEXT NOT NULL,
                date TIMESTAMP NOT NULL,
                payer_id TEXT NOT NULL REFERENCES participants(id),
                billing_period_start DATE,
                billing_period_end DATE,
                note TEXT,
                deleted_at TIMESTAMP
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS subscription_payment_splits (
                payment_id TEXT NOT NULL REFERENCES subscription_payments(id),
                participant_id TEXT NOT NULL REFERENCES participants(id),
                amount TEXT NOT NULL,
                PRIMARY KEY (payment_id, participant_id)
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS subscription_settlements (
                id TEXT PRIMARY KEY NOT NULL,
                subscription_id TEXT NOT NULL REFERENCES subscriptions(id),
                amount TEXT NOT NULL,
                currency TEXT NOT NULL,
                date TIMESTAMP NOT NULL,
                from_id TEXT NOT NULL REFERENCES participants(id),
                to_id TEXT NOT NULL REFERENCES participants(id),
                is_full_settlement INTEGER NOT NULL DEFAULT 0,
                note TEXT,
                deleted_at TIMESTAMP
            )
        """
        )

        # Config table
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        self.conn.commit()

    def close(self):
        """Close database connection."""
        self.conn.close()

    # ========================================================================
    # Config operations
    # ========================================================================

    def get_config(self, key: str) -> str | None:
        """Get a config value by key."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT value FROM config WHERE key = ?", (key,))
        row = cursor.fetchone()
        return str(row["value"]) if row else None

    def set_config(self, key: str, value: str):
        """Set a config value."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO config (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, datetime.now().isoformat()),
        )
        self.conn.commit()

    def get_current_user_id(self) -> UUID | None:
        """Get the current user's participant id, if one has been registered."""
        return _uuid(self.get_config("current_user_id"), "config", "current_user_id")

    def set_current_user_id(self, participant_id: UUID):
        """Set the current user's participant id."""
        self.set_config("current_user_id", str(participant_id))

    # ========================================================================
    # Participant and group operations
    # ========================================================================

    def save_participant(self, participant: Participant):
        """Insert a participant, or update its display attributes."""
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO participants (id, name, phone_number, email, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    phone_number = excluded.phone_number,
                    email = excluded.email
                """,
                (
                    str(participant.id),
                    participant.name,
                    participant.phone_number,
                    participant.email,
                    participant.created_at.isoformat(),
                ),
            )

    def _row_to_participant(self, row: sqlite3.Row) -> Participant:
        return Participant(
            id=_required_uuid(row, "id", "participants"),
            name=_required(row, "name", "participants"),
            phone_number=row["phone_number"],
            email=row["email"],
            created_at=_timestamp(row["created_at"], "participants", "created_at") or datetime.now(),
        )

    def get_participant(self, participant_id: UUID) -> Participant | None:
        """Get a participant by id."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM participants WHERE id = ?", (str(participant_id),))
        row = cursor.fetchone()
        return self._row_to_participant(row) if row else None

    def find_participants_by_name(self, name: str) -> list[Participant]:
        """Case-insensitive exact name lookup."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM participants WHERE lower(name) = lower(?) ORDER BY created_at",
            (name.strip(),),
        )
        return [self._row_to_participant(row) for row in cursor.fetchall()]

    def list_participants(self) -> list[Participant]:
        """Get all participants, ordered by name."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM participants ORDER BY name, id")
        return [self._row_to_participant(row) for row in cursor.fetchall()]

    def save_group(self, group: Group):
        """Insert a group together with its members in one transaction."""
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO user_groups (id, name, owner_id, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET name = excluded.name
                """,
                (str(group.id), group.name, str(group.owner_id), group.created_at.isoformat()),
            )
            self.conn.execute("DELETE FROM group_members WHERE group_id = ?", (str(group.id),))
            self.conn.executemany(
                "INSERT INTO group_members (group_id, participant_id) VALUES (?, ?)",
                [(str(group.id), str(member_id)) for member_id in group.member_ids],
            )

    def _load_groups(self, where: str = "", params: tuple = ()) -> list[Group]:
        cursor = self.conn.cursor()
        cursor.execute(f"SELECT * FROM user_groups {where} ORDER BY name, id", params)
        rows = cursor.fetchall()

        cursor.execute("SELECT group_id, participant_id FROM group_members ORDER BY rowid")
        members: dict[str, list[UUID]] = defaultdict(list)
        for row in cursor.fetchall():
            members[row["group_id"]].append(
                _required_uuid(row, "participant_id", "group_members")
            )

        return [
            Group(
                id=_required_uuid(row, "id", "user_groups"),
                name=_required(row, "name", "user_groups"),
                owner_id=_required_uuid(row, "owner_id", "user_groups"),
                member_ids=members.get(row["id"], []),
                created_at=_timestamp(row["created_at"], "user_groups", "created_at") or datetime.now(),
            )
            for row in rows
        ]

    def get_group(self, group_id: UUID) -> Group | None:
        """Get a group by id."""
        groups = self._load_groups("WHERE id = ?", (str(group_id),))
        return groups[0] if groups else None

    def find_groups_by_name(self, name: str) -> list[Group]:
        """Case-insensitive exact name lookup."""
        return self._load_groups("WHERE lower(name) = lower(?)", (name.strip(),))

    def list_groups(self) -> list[Group]:
        """Get all groups, ordered by name."""
        return self._load_groups()

    # ========================================================================
    # Expense operations
    # ========================================================================

    def save_expense(self, expense: Expense):
        """
        Save an expense and all of its splits atomically.

        Either the expense and every split are written, or nothing is.
        """
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO expenses (
                    id, title, amount, currency, date, payer_id, created_by_id,
                    group_id, split_method, note, deleted_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(expense.id),
                    expense.title,
                    str(expense.amount),
                    expense.currency,
                    expense.date.isoformat(),
                    str(expense.payer_id),
                    _str(expense.created_by_id),
                    _str(expense.group_id),
                    expense.split_method.value,
                    expense.note,
                    _iso(expense.deleted_at),
                ),
            )
            self.conn.executemany(
                """
                INSERT INTO splits (expense_id, participant_id, amount, raw_input)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (
                        str(split.expense_id),
                        str(split.participant_id),
                        str(split.amount),
                        _str(split.raw_input),
                    )
                    for split in expense.splits
                ],
            )
        logger.debug(f"Saved expense {expense.id} with {len(expense.splits)} splits")

    def _row_to_expense(self, row: sqlite3.Row, splits: list[Split]) -> Expense:
        tag = _required(row, "split_method", "expenses")
        try:
            split_method = SplitMethod(tag)
        except ValueError as e:
            raise DataIntegrityError(f"Unknown split method tag {tag!r} on expense {row['id']}") from e

        try:
            return Expense(
                id=_required_uuid(row, "id", "expenses"),
                title=_required(row, "title", "expenses"),
                amount=_decimal(_required(row, "amount", "expenses"), "expenses", "amount"),
                currency=_required(row, "currency", "expenses"),
                date=_timestamp(_required(row, "date", "expenses"), "expenses", "date"),
                payer_id=_required_uuid(row, "payer_id", "expenses"),
                created_by_id=_uuid(row["created_by_id"], "expenses", "created_by_id"),
                group_id=_uuid(row["group_id"], "expenses", "group_id"),
                split_method=split_method,
                splits=splits,
                note=row["note"],
                deleted_at=_timestamp(row["deleted_at"], "expenses", "deleted_at"),
            )
        except ValidationError as e:
            raise DataIntegrityError(f"Stored expense {row['id']} is inconsistent: {e}") from e

    def _load_expenses(self, where: str, params: tuple) -> list[Expense]:
        cursor = self.conn.cursor()
        cursor.execute(f"SELECT * FROM expenses {where} ORDER BY date DESC, id", params)
        rows = cursor.fetchall()
        if not rows:
            return []

        ids = [row["id"] for row in rows]
        placeholders = ", ".join("?" for _ in ids)
        cursor.execute(
            f"SELECT * FROM splits WHERE expense_id IN ({placeholders}) ORDER BY rowid",
            ids,
        )
        splits: dict[str, list[Split]] = defaultdict(list)
        for split_row in cursor.fetchall():
            try:
                split = Split(
                    expense_id=_required_uuid(split_row, "expense_id", "splits"),
                    participant_id=_required_uuid(split_row, "participant_id", "splits"),
                    amount=_decimal(_required(split_row, "amount", "splits"), "splits", "amount"),
                    raw_input=_decimal(split_row["raw_input"], "splits", "raw_input"),
                )
            except ValidationError as e:
                raise DataIntegrityError(
                    f"Stored split on expense {split_row['expense_id']} is inconsistent: {e}"
                ) from e
            splits[split_row["expense_id"]].append(split)

        return [self._row_to_expense(row, splits.get(row["id"], [])) for row in rows]

    def get_expense(self, expense_id: UUID) -> Expense | None:
        """Get an expense (deleted or not) by id."""
        expenses = self._load_expenses("WHERE id = ?", (str(expense_id),))
        return expenses[0] if expenses else None

    def list_expenses(self, include_deleted: bool = False) -> list[Expense]:
        """Get all expenses with their splits, newest first."""
        where = "" if include_deleted else "WHERE deleted_at IS NULL"
        return self._load_expenses(where, ())

    def soft_delete_expense(self, expense_id: UUID, when: datetime | None = None) -> bool:
        """Mark an expense deleted. Returns False if it was missing or already deleted."""
        return self._soft_delete("expenses", expense_id, when)

    # ========================================================================
    # Settlement operations
    # ========================================================================

    def save_settlement(self, settlement: Settlement):
        """Save a settlement record."""
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO settlements (
                    id, amount, currency, date, from_id, to_id,
                    is_full_settlement, group_id, note, deleted_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(settlement.id),
                    str(settlement.amount),
                    settlement.currency,
                    settlement.date.isoformat(),
                    str(settlement.from_id),
                    str(settlement.to_id),
                    int(settlement.is_full_settlement),
                    _str(settlement.group_id),
                    settlement.note,
                    _iso(settlement.deleted_at),
                ),
            )

    def list_settlements(self, include_deleted: bool = False) -> list[Settlement]:
        """Get all settlements, newest first."""
        where = "" if include_deleted else "WHERE deleted_at IS NULL"
        cursor = self.conn.cursor()
        cursor.execute(f"SELECT * FROM settlements {where} ORDER BY date DESC, id")
        return [self._row_to_settlement(row) for row in cursor.fetchall()]

    def _row_to_settlement(self, row: sqlite3.Row) -> Settlement:
        try:
            return Settlement(
                id=_required_uuid(row, "id", "settlements"),
                amount=_decimal(_required(row, "amount", "settlements"), "settlements", "amount"),
                currency=_required(row, "currency", "settlements"),
                date=_timestamp(_required(row, "date", "settlements"), "settlements", "date"),
                from_id=_required_uuid(row, "from_id", "settlements"),
                to_id=_required_uuid(row, "to_id", "settlements"),
                is_full_settlement=bool(row["is_full_settlement"]),
                group_id=_uuid(row["group_id"], "settlements", "group_id"),
                note=row["note"],
                deleted_at=_timestamp(row["deleted_at"], "settlements", "deleted_at"),
            )
        except ValidationError as e:
            raise DataIntegrityError(f"Stored settlement {row['id']} is inconsistent: {e}") from e

    def soft_delete_settlement(self, settlement_id: UUID, when: datetime | None = None) -> bool:
        """Mark a settlement deleted."""
        return self._soft_delete("settlements", settlement_id, when)

    # ========================================================================
    # Reminder operations
    # ========================================================================

    def save_reminder(self, reminder: Reminder):
        """Save a reminder record."""
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO reminders (
                    id, amount, currency, created_at, to_id, message,
                    is_read, is_cleared, deleted_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(reminder.id),
                    str(reminder.amount),
                    reminder.currency,
                    reminder.created_at.isoformat(),
                    str(reminder.to_id),
                    reminder.message,
                    int(reminder.is_read),
                    int(reminder.is_cleared),
                    _iso(reminder.deleted_at),
                ),
            )

    def list_reminders(self, include_deleted: bool = False) -> list[Reminder]:
        """Get all reminders, newest first."""
        where = "" if include_deleted else "WHERE deleted_at IS NULL"
        cursor = self.conn.cursor()
        cursor.execute(f"SELECT * FROM reminders {where} ORDER BY created_at DESC, id")
        return [self._row_to_reminder(row) for row in cursor.fetchall()]

    def _row_to_reminder(self, row: sqlite3.Row) -> Reminder:
        try:
            return Reminder(
                id=_required_uuid(row, "id", "reminders"),
                amount=_decimal(_required(row, "amount", "reminders"), "reminders", "amount"),
                currency=_required(row, "currency", "reminders"),
                created_at=_timestamp(_required(row, "created_at", "reminders"), "reminders", "created_at"),
                to_id=_required_uuid(row, "to_id", "reminders"),
                message=row["message"],
                is_read=bool(row["is_read"]),
                is_cleared=bool(row["is_cleared"]),
                deleted_at=_timestamp(row["deleted_at"], "reminders", "deleted_at"),
            )
        except ValidationError as e:
            raise DataIntegrityError(f"Stored reminder {row['id']} is inconsistent: {e}") from e

    def mark_reminder_read(self, reminder_id: UUID) -> bool:
        """Mark a reminder as read."""
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE reminders SET is_read = 1 WHERE id = ?", (str(reminder_id),)
            )
        return cursor.rowcount > 0

    def clear_reminders_for(self, participant_id: UUID) -> int:
        """Clear every open reminder sent to a participant. Returns how many changed."""
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE reminders SET is_cleared = 1 WHERE to_id = ? AND is_cleared = 0",
                (str(participant_id),),
            )
        return cursor.rowcount

    def soft_delete_reminder(self, reminder_id: UUID, when: datetime | None = None) -> bool:
        """Mark a reminder deleted."""
        return self._soft_delete("reminders", reminder_id, when)

    # ========================================================================
    # Message operations
    # ========================================================================

    def save_message(self, message: Message):
        """Save a chat message."""
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO messages (
                    id, content, timestamp, is_from_user, is_edited,
                    participant_id, group_id, expense_id, deleted_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(message.id),
                    message.content,
                    message.timestamp.isoformat(),
                    int(message.is_from_user),
                    int(message.is_edited),
                    _str(message.participant_id),
                    _str(message.group_id),
                    _str(message.expense_id),
                    _iso(message.deleted_at),
                ),
            )

    def list_messages(self, include_deleted: bool = False) -> list[Message]:
        """Get all chat messages, newest first."""
        where = "" if include_deleted else "WHERE deleted_at IS NULL"
        cursor = self.conn.cursor()
        cursor.execute(f"SELECT * FROM messages {where} ORDER BY timestamp DESC, id")
        return [self._row_to_message(row) for row in cursor.fetchall()]

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        try:
            return Message(
                id=_required_uuid(row, "id", "messages"),
                content=_required(row, "content", "messages"),
                timestamp=_timestamp(_required(row, "timestamp", "messages"), "messages", "timestamp"),
                is_from_user=bool(row["is_from_user"]),
                is_edited=bool(row["is_edited"]),
                participant_id=_uuid(row["participant_id"], "messages", "participant_id"),
                group_id=_uuid(row["group_id"], "messages", "group_id"),
                expense_id=_uuid(row["expense_id"], "messages", "expense_id"),
                deleted_at=_timestamp(row["deleted_at"], "messages", "deleted_at"),
            )
        except ValidationError as e:
            raise DataIntegrityError(f"Stored message {row['id']} is inconsistent: {e}") from e

    # ========================================================================
    # Subscription operations
    # ========================================================================

    def save_subscription(self, subscription: Subscription):
        """Insert or update a subscription together with its subscribers."""
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO subscriptions (
                    id, name, amount, currency, cycle, custom_cycle_days,
                    start_date, next_billing_date, is_shared, is_active,
                    note, created_at, deleted_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    amount = excluded.amount,
                    currency = excluded.currency,
                    cycle = excluded.cycle,
                    custom_cycle_days = excluded.custom_cycle_days,
                    next_billing_date = excluded.next_billing_date,
                    is_shared = excluded.is_shared,
                    is_active = excluded.is_active,
                    note = excluded.note
                """,
                (
                    str(subscription.id),
                    subscription.name,
                    str(subscription.amount),
                    subscription.currency,
                    subscription.cycle.value,
                    subscription.custom_cycle_days,
                    subscription.start_date.isoformat(),
                    subscription.next_billing_date.isoformat(),
                    int(subscription.is_shared),
                    int(subscription.is_active),
                    subscription.note,
                    subscription.created_at.isoformat(),
                    _iso(subscription.deleted_at),
                ),
            )
            self.conn.execute(
                "DELETE FROM subscription_members WHERE subscription_id = ?",
                (str(subscription.id),),
            )
            self.conn.executemany(
                "INSERT INTO subscription_members (subscription_id, participant_id) VALUES (?, ?)",
                [(str(subscription.id), str(pid)) for pid in subscription.subscriber_ids],
            )
        logger.debug(
            f"Saved subscription {subscription.id} with {len(subscription.subscriber_ids)} subscribers"
        )

    def _load_subscriptions(self, where: str = "", params: tuple = ()) -> list[Subscription]:
        cursor = self.conn.cursor()
        cursor.execute(f"SELECT * FROM subscriptions {where} ORDER BY name, id", params)
        rows = cursor.fetchall()

        cursor.execute(
            "SELECT subscription_id, participant_id FROM subscription_members ORDER BY rowid"
        )
        members: dict[str, list[UUID]] = defaultdict(list)
        for row in cursor.fetchall():
            members[row["subscription_id"]].append(
                _required_uuid(row, "participant_id", "subscription_members")
            )

        subscriptions = []
        for row in rows:
            try:
                subscriptions.append(
                    Subscription(
                        id=_required_uuid(row, "id", "subscriptions"),
                        name=_required(row, "name", "subscriptions"),
                        amount=_decimal(_required(row, "amount", "subscriptions"), "subscriptions", "amount"),
                        currency=_required(row, "currency", "subscriptions"),
                        cycle=_required(row, "cycle", "subscriptions"),
                        custom_cycle_days=row["custom_cycle_days"],
                        start_date=_date(_required(row, "start_date", "subscriptions"), "subscriptions", "start_date"),
                        next_billing_date=_date(
                            _required(row, "next_billing_date", "subscriptions"),
                            "subscriptions",
                            "next_billing_date",
                        ),
                        is_shared=bool(row["is_shared"]),
                        is_active=bool(row["is_active"]),
                        subscriber_ids=members.get(row["id"], []),
                        note=row["note"],
                        created_at=_timestamp(_required(row, "created_at", "subscriptions"), "subscriptions", "created_at"),
                        deleted_at=_timestamp(row["deleted_at"], "subscriptions", "deleted_at"),
                    )
                )
            except ValidationError as e:
                raise DataIntegrityError(f"Stored subscription {row['id']} is inconsistent: {e}") from e
        return subscriptions

    def get_subscription(self, subscription_id: UUID) -> Subscription | None:
        """Get a subscription (deleted or not) by id."""
        subscriptions = self._load_subscriptions("WHERE id = ?", (str(subscription_id),))
        return subscriptions[0] if subscriptions else None

    def find_subscriptions_by_name(self, name: str) -> list[Subscription]:
        """Case-insensitive exact name lookup among live subscriptions."""
        return self._load_subscriptions(
            "WHERE lower(name) = lower(?) AND deleted_at IS NULL", (name.strip(),)
        )

    def list_subscriptions(self, include_deleted: bool = False) -> list[Subscription]:
        """Get all subscriptions, ordered by name."""
        where = "" if include_deleted else "WHERE deleted_at IS NULL"
        return self._load_subscriptions(where)

    def soft_delete_subscription(self, subscription_id: UUID, when: datetime | None = None) -> bool:
        """Mark a subscription deleted."""
        return self._soft_delete("subscriptions", subscription_id, when)

    def save_subscription_payment(self, payment: SubscriptionPayment, next_billing_date: date):
        """
        Save a payment with its splits and move the subscription's next
        billing date, all in one transaction.
        """
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO subscription_payments (
                    id, subscription_id, amount, currency, date, payer_id,
                    billing_period_start, billing_period_end, note, deleted_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(payment.id),
                    str(payment.subscription_id),
                    str(payment.amount),
                    payment.currency,
                    payment.date.isoformat(),
                    str(payment.payer_id),
                    payment.billing_period_start.isoformat() if payment.billing_period_start else None,
                    payment.billing_period_end.isoformat() if payment.billing_period_end else None,
                    payment.note,
                    _iso(payment.deleted_at),
                ),
            )
            self.conn.executemany(
                """
                INSERT INTO subscription_payment_splits (payment_id, participant_id, amount)
                VALUES (?, ?, ?)
                """,
                [
                    (str(payment.id), str(split.participant_id), str(split.amount))
                    for split in payment.splits
                ],
            )
            self.conn.execute(
                "UPDATE subscriptions SET next_billing_date = ? WHERE id = ?",
                (next_billing_date.isoformat(), str(payment.subscription_id)),
            )
        logger.debug(f"Saved payment {payment.id} for subscription {payment.subscription_id}")

    def list_subscription_payments(
        self, subscription_id: UUID | None = None, include_deleted: bool = False
    ) -> list[SubscriptionPayment]:
        """Get subscription payments with their splits, newest first."""
        clauses, params = [], []
        if subscription_id is not None:
            clauses.append("subscription_id = ?")
            params.append(str(subscription_id))
        if not include_deleted:
            clauses.append("deleted_at IS NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        cursor = self.conn.cursor()
        cursor.execute(
            f"SELECT * FROM subscription_payments {where} ORDER BY date DESC, id", tuple(params)
        )
        rows = cursor.fetchall()
        if not rows:
            return []

        ids = [row["id"] for row in rows]
        placeholders = ", ".join("?" for _ in ids)
        cursor.execute(
            f"SELECT * FROM subscription_payment_splits WHERE payment_id IN ({placeholders}) ORDER BY rowid",
            ids,
        )
        splits: dict[str, list[Split]] = defaultdict(list)
        for split_row in cursor.fetchall():
            table = "subscription_payment_splits"
            try:
                split = Split(
                    expense_id=_required_uuid(split_row, "payment_id", table),
                    participant_id=_required_uuid(split_row, "participant_id", table),
                    amount=_decimal(_required(split_row, "amount", table), table, "amount"),
                )
            except ValidationError as e:
                raise DataIntegrityError(
                    f"Stored split on payment {split_row['payment_id']} is inconsistent: {e}"
                ) from e
            splits[split_row["payment_id"]].append(split)

        payments = []
        for row in rows:
            table = "subscription_payments"
            try:
                payments.append(
                    SubscriptionPayment(
                        id=_required_uuid(row, "id", table),
                        subscription_id=_required_uuid(row, "subscription_id", table),
                        amount=_decimal(_required(row, "amount", table), table, "amount"),
                        currency=_required(row, "currency", table),
                        date=_timestamp(_required(row, "date", table), table, "date"),
                        payer_id=_required_uuid(row, "payer_id", table),
                        billing_period_start=_date(row["billing_period_start"], table, "billing_period_start"),
                        billing_period_end=_date(row["billing_period_end"], table, "billing_period_end"),
                        splits=splits.get(row["id"], []),
                        note=row["note"],
                        deleted_at=_timestamp(row["deleted_at"], table, "deleted_at"),
                    )
                )
            except ValidationError as e:
                raise DataIntegrityError(f"Stored payment {row['id']} is inconsistent: {e}") from e
        return payments

    def soft_delete_subscription_payment(self, payment_id: UUID, when: datetime | None = None) -> bool:
        """Mark a subscription payment deleted."""
        return self._soft_delete("subscription_payments", payment_id, when)

    def save_subscription_settlement(self, settlement: SubscriptionSettlement):
        """Save a settlement made against a shared subscription."""
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO subscription_settlements (
                    id, subscription_id, amount, currency, date, from_id, to_id,
                    is_full_settlement, note, deleted_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(settlement.id),
                    str(settlement.subscription_id),
                    str(settlement.amount),
                    settlement.currency,
                    settlement.date.isoformat(),
                    str(settlement.from_id),
                    str(settlement.to_id),
                    int(settlement.is_full_settlement),
                    settlement.note,
                    _iso(settlement.deleted_at),
                ),
            )

    def list_subscription_settlements(
        self, subscription_id: UUID | None = None, include_deleted: bool = False
    ) -> list[SubscriptionSettlement]:
        """Get subscription settlements, newest first."""
        clauses, params = [], []
        if subscription_id is not None:
            clauses.append("subscription_id = ?")
            params.append(str(subscription_id))
        if not include_deleted:
            clauses.append("deleted_at IS NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        cursor = self.conn.cursor()
        cursor.execute(
            f"SELECT * FROM subscription_settlements {where} ORDER BY date DESC, id", tuple(params)
        )
        settlements = []
        for row in cursor.fetchall():
            table = "subscription_settlements"
            try:
                settlements.append(
                    SubscriptionSettlement(
                        id=_required_uuid(row, "id", table),
                        subscription_id=_required_uuid(row, "subscription_id", table),
                        amount=_decimal(_required(row, "amount", table), table, "amount"),
                        currency=_required(row, "currency", table),
                        date=_timestamp(_required(row, "date", table), table, "date"),
                        from_id=_required_uuid(row, "from_id", table),
                        to_id=_required_uuid(row, "to_id", table),
                        is_full_settlement=bool(row["is_full_settlement"]),
                        note=row["note"],
                        deleted_at=_timestamp(row["deleted_at"], table, "deleted_at"),
                    )
                )
            except ValidationError as e:
                raise DataIntegrityError(f"Stored settlement {row['id']} is inconsistent: {e}") from e
        return settlements

    # ========================================================================
    # Soft delete
    # ========================================================================

    def _soft_delete(self, table: str, record_id: UUID, when: datetime | None) -> bool:
        with self.conn:
            cursor = self.conn.execute(
                f"UPDATE {table} SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                ((when or datetime.now()).isoformat(), str(record_id)),
            )
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Soft-deleted {table} record {record_id}")
        return deleted
