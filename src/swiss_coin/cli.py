"""CLI for Swiss Coin using Typer."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.table import Table

from .config import load_settings
from .conversation import date_label
from .db import Database
from .exceptions import RecordNotFoundError
from .models import (
    BillingCycle,
    BillingStatus,
    ConversationDateGroup,
    Expense,
    ItemKind,
    Participant,
    Settlement,
    SettlementPolicy,
    SplitMethod,
    SplitResult,
)
from .money import format_money
from .service import LedgerService
from .subscriptions import billing_status, monthly_equivalent

app = typer.Typer(
    name="swiss-coin",
    help="Split shared expenses and keep track of who owes whom",
)

console = Console()


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@contextmanager
def open_service(verbose: bool) -> Iterator[LedgerService]:
    """Load settings, open the database and report errors the same way for every command."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        db = Database(settings.database_path)
        yield LedgerService(settings, db)
    except Exception as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if db is not None:
            db.close()


# ============================================================================
# Parsing helpers
# ============================================================================


def parse_amount(value: str) -> Decimal:
    try:
        amount = Decimal(value.strip())
    except InvalidOperation as e:
        raise typer.BadParameter(f"Not an amount: {value!r}") from e
    if not amount.is_finite():
        raise typer.BadParameter(f"Not an amount: {value!r}")
    return amount


def resolve_person(service: LedgerService, name: str) -> Participant:
    """Find a participant by name; "me" is the current user."""
    if name.strip().lower() in ("me", "you"):
        return service.get_participant(service.current_user_id())

    matches = service.db.find_participants_by_name(name)
    if not matches:
        raise RecordNotFoundError("Person", name)
    if len(matches) > 1:
        raise typer.BadParameter(f"More than one person is called {name!r}")
    return matches[0]


def resolve_group_id(service: LedgerService, name: str) -> UUID:
    matches = service.db.find_groups_by_name(name)
    if not matches:
        raise RecordNotFoundError("Group", name)
    if len(matches) > 1:
        raise typer.BadParameter(f"More than one group is called {name!r}")
    return matches[0].id


def resolve_subscription_id(service: LedgerService, name: str) -> UUID:
    matches = service.db.find_subscriptions_by_name(name)
    if not matches:
        raise RecordNotFoundError("Subscription", name)
    if len(matches) > 1:
        raise typer.BadParameter(f"More than one subscription is called {name!r}")
    return matches[0].id


def parse_raw_inputs(service: LedgerService, inputs: list[str]) -> dict[UUID, str]:
    """Parse repeated NAME=VALUE options into per-participant raw inputs."""
    raw: dict[UUID, str] = {}
    for item in inputs:
        name, sep, value = item.partition("=")
        if not sep or not value.strip():
            raise typer.BadParameter(f"Expected NAME=VALUE, got {item!r}")
        raw[resolve_person(service, name).id] = value.strip()
    return raw


# ============================================================================
# Display helpers
# ============================================================================


def money_markup(amount: Decimal, currency: str, use_color: bool = True) -> str:
    """
    Format money for a table cell.

    Positive (they owe you) is green, negative (you owe) is red and wrapped
    in parentheses, accounting style.
    """
    formatted = format_money(abs(amount), currency)
    if amount < 0:
        return f"([red]{formatted}[/red])" if use_color else f"({formatted})"
    if amount > 0 and use_color:
        return f" [green]{formatted}[/green] "
    return f" {formatted} "


def display_split(
    result: SplitResult, people: dict[UUID, Participant], title: str = "Split"
):
    """Show a computed split as a table."""
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Person", style="cyan")
    table.add_column("Owes", justify="right")

    for pid, amount in (result.shares or {}).items():
        table.add_row(people[pid].name, money_markup(amount, result.currency, use_color=False))

    console.print(table)
    console.print(
        f"  [green]✓ Shares add up to {format_money(result.total, result.currency)}[/green]"
    )


def describe_balance(name: str, amount: Decimal, currency: str) -> str:
    if amount > 0:
        return f"{name} owes you {format_money(amount, currency)}"
    if amount < 0:
        return f"You owe {name} {format_money(-amount, currency)}"
    return f"You and {name} are settled up"


def display_conversation(
    groups: list[ConversationDateGroup], people: dict[UUID, Participant], today: date
):
    """Print a date-grouped feed, newest day first."""
    if not groups:
        console.print("[dim]Nothing here yet.[/dim]")
        return

    for day_group in groups:
        console.print(f"\n[bold]{date_label(day_group.day, today)}[/bold]")
        for item in day_group.items:
            time = item.timestamp.strftime("%H:%M")
            entity = item.entity
            if item.kind == ItemKind.TRANSACTION and isinstance(entity, Expense):
                payer = people[entity.payer_id].name if entity.payer_id in people else "?"
                console.print(
                    f"  {time}  💳 {entity.title} "
                    f"({format_money(entity.amount, entity.currency)}, paid by {payer}) "
                    f"{money_markup(item.amount or Decimal('0'), entity.currency)}"
                )
            elif item.kind == ItemKind.SETTLEMENT and isinstance(entity, Settlement):
                payer = people[entity.from_id].name if entity.from_id in people else "?"
                payee = people[entity.to_id].name if entity.to_id in people else "?"
                console.print(
                    f"  {time}  🤝 {payer} paid {payee} "
                    f"{format_money(entity.amount, entity.currency)}"
                )
            elif item.kind == ItemKind.REMINDER:
                console.print(
                    f"  {time}  🔔 Reminder: {format_money(item.amount or Decimal('0'), item.currency or 'USD')}"
                )
            else:
                console.print(f"  {time}  💬 {getattr(entity, 'content', '')}")


# ============================================================================
# Commands
# ============================================================================


@app.command()
def init(
    name: str = typer.Option(..., "--name", "-n", help="Your display name"),
    phone: Optional[str] = typer.Option(None, "--phone", help="Your phone number"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Register yourself as the current user."""
    with open_service(verbose) as service:
        me = service.register_current_user(name, phone)
        console.print(f"[green]✓ Welcome, {me.name}![/green]")


@app.command("add-person")
def add_person(
    name: str = typer.Argument(..., help="Display name"),
    phone: Optional[str] = typer.Option(None, "--phone", help="Phone number"),
    email: Optional[str] = typer.Option(None, "--email", help="Email address"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Add a contact to split expenses with."""
    with open_service(verbose) as service:
        person = service.add_participant(name, phone, email)
        console.print(f"[green]✓ Added {person.name}[/green]")


@app.command("add-group")
def add_group(
    name: str = typer.Argument(..., help="Group name"),
    members: list[str] = typer.Option(None, "--member", "-m", help="Member name (repeatable)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Create a group. You are always a member."""
    with open_service(verbose) as service:
        member_ids = [resolve_person(service, member).id for member in members or []]
        group = service.create_group(name, member_ids)
        console.print(f"[green]✓ Created {group.name} with {len(group.member_ids)} members[/green]")


@app.command()
def people(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List contacts and groups."""
    with open_service(verbose) as service:
        me = service.current_user_id()
        table = Table(title="People", show_header=True, header_style="bold magenta")
        table.add_column("Name", style="cyan")
        table.add_column("Phone", style="dim")
        for person in service.db.list_participants():
            label = f"{person.name} (you)" if person.id == me else person.name
            table.add_row(label, person.phone_number or "")
        console.print(table)

        groups = service.db.list_groups()
        if groups:
            table = Table(title="Groups", show_header=True, header_style="bold magenta")
            table.add_column("Group", style="cyan")
            table.add_column("Members", justify="right")
            for group in groups:
                table.add_row(group.name, str(len(group.member_ids)))
            console.print(table)


@app.command("add-expense")
def add_expense(
    title: str = typer.Argument(..., help="What the expense was for"),
    amount: str = typer.Argument(..., help="Total amount, e.g. 42.50"),
    with_: list[str] = typer.Option(None, "--with", "-w", help="Person sharing the cost (repeatable)"),
    group: Optional[str] = typer.Option(None, "--group", "-g", help="Group the expense belongs to"),
    paid_by: str = typer.Option("me", "--paid-by", "-p", help="Who paid"),
    include_me: bool = typer.Option(True, "--include-me/--exclude-me", help="Whether you carry a share"),
    method: SplitMethod = typer.Option(SplitMethod.EQUAL, "--method", "-s", help="Split method"),
    inputs: list[str] = typer.Option(None, "--input", "-i", help="NAME=VALUE percentage, amount, shares or adjustment"),
    currency: Optional[str] = typer.Option(None, "--currency", "-c", help="Currency code"),
    when: Optional[datetime] = typer.Option(None, "--date", help="Date of the expense"),
    note: Optional[str] = typer.Option(None, "--note", help="Optional note"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the split without saving"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    Add a shared expense.

    Without --with, a group expense is split between every group member.
    """
    with open_service(verbose) as service:
        total = parse_amount(amount)
        me = service.current_user_id()
        group_id = resolve_group_id(service, group) if group else None

        participant_ids = [resolve_person(service, name).id for name in with_ or []]
        if not participant_ids and group_id is not None:
            participant_ids = list(service.get_group(group_id).member_ids)
        if include_me and me not in participant_ids:
            participant_ids.insert(0, me)
        if not include_me and me in participant_ids:
            participant_ids.remove(me)

        raw_inputs = parse_raw_inputs(service, inputs or [])
        payer = resolve_person(service, paid_by)
        people_by_id = {p.id: p for p in service.db.list_participants()}

        result = service.preview_split(
            total, participant_ids, method, raw_inputs, currency, group_id
        )
        if result.error is not None:
            console.print(
                f"\n[bold red]Split rejected ({result.error.kind.value}):[/bold red] "
                f"{result.error.detail}"
            )
            sys.exit(1)

        display_split(result, people_by_id, title=f"{title} - {method.display_name}")

        if dry_run:
            console.print("\n[yellow]Dry run: nothing was saved.[/yellow]")
            return

        expense = service.add_expense(
            title=title,
            amount=total,
            participant_ids=participant_ids,
            method=method,
            raw_inputs=raw_inputs,
            payer_id=payer.id,
            group_id=group_id,
            currency=currency,
            date=when,
            note=note,
        )
        console.print(f"\n[bold green]✓ Saved expense {expense.id}[/bold green]")


@app.command("delete-expense")
def delete_expense(
    expense_id: str = typer.Argument(..., help="Expense id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Delete an expense. It stays on record but no longer counts."""
    with open_service(verbose) as service:
        service.delete_expense(UUID(expense_id))
        console.print("[green]✓ Expense deleted[/green]")


@app.command()
def settle(
    name: str = typer.Argument(..., help="Who to settle up with"),
    amount: Optional[str] = typer.Option(None, "--amount", "-a", help="Amount paid (default: everything)"),
    currency: Optional[str] = typer.Option(None, "--currency", "-c", help="Currency code"),
    group: Optional[str] = typer.Option(None, "--group", "-g", help="Settle within a group"),
    policy: Optional[SettlementPolicy] = typer.Option(
        None, "--policy", help="Over-settlement handling (default from settings)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Record a payment that settles your balance with someone."""
    with open_service(verbose) as service:
        person = resolve_person(service, name)
        receipt = service.record_settlement(
            person.id,
            amount=parse_amount(amount) if amount is not None else None,
            currency=currency,
            group_id=resolve_group_id(service, group) if group else None,
            policy=policy,
        )
        settlement = receipt.settlement
        recorded = format_money(settlement.amount, settlement.currency)
        if receipt.clamped:
            console.print(
                f"[yellow]⚠️  {format_money(receipt.requested_amount, settlement.currency)} is more "
                f"than the outstanding balance; recorded {recorded} instead.[/yellow]"
            )
        direction = "You paid" if settlement.to_id == person.id else f"{person.name} paid you"
        console.print(f"[green]✓ {direction} {recorded}[/green]")


@app.command()
def remind(
    name: str = typer.Argument(..., help="Who to remind"),
    amount: Optional[str] = typer.Option(None, "--amount", "-a", help="Amount (default: what they owe)"),
    currency: Optional[str] = typer.Option(None, "--currency", "-c", help="Currency code"),
    message: Optional[str] = typer.Option(None, "--message", "-m", help="Optional message"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Send a payment reminder to someone who owes you."""
    with open_service(verbose) as service:
        person = resolve_person(service, name)
        reminder = service.send_reminder(
            person.id,
            amount=parse_amount(amount) if amount is not None else None,
            currency=currency,
            message=message,
        )
        console.print(
            f"[green]✓ Reminded {person.name} about "
            f"{format_money(reminder.amount, reminder.currency)}[/green]"
        )


@app.command()
def message(
    text: str = typer.Argument(..., help="Message text"),
    to: Optional[str] = typer.Option(None, "--to", help="Person to message"),
    group: Optional[str] = typer.Option(None, "--group", "-g", help="Group to message"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Post a message to a person or a group."""
    with open_service(verbose) as service:
        if (to is None) == (group is None):
            raise typer.BadParameter("Pass exactly one of --to or --group")
        service.post_message(
            text,
            participant_id=resolve_person(service, to).id if to else None,
            group_id=resolve_group_id(service, group) if group else None,
        )
        console.print("[green]✓ Sent[/green]")


@app.command()
def balances(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show what everyone owes you, and what you owe them."""
    with open_service(verbose) as service:
        table = Table(title="Balances", show_header=True, header_style="bold magenta")
        table.add_column("Person", style="cyan")
        table.add_column("Balance", justify="right")
        table.add_column("", style="dim")

        for entry in service.all_balances():
            balance = entry.balance
            if balance.is_settled:
                table.add_row(entry.participant.name, "-", "settled up")
                continue
            for code, amount in balance.sorted_currencies:
                table.add_row(
                    entry.participant.name,
                    money_markup(amount, code),
                    "owes you" if amount > 0 else "you owe",
                )

        console.print(table)


@app.command("group")
def group_balances(
    name: str = typer.Argument(..., help="Group name"),
    currency: Optional[str] = typer.Option(None, "--currency", "-c", help="Currency code"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show member balances in a group."""
    with open_service(verbose) as service:
        group_id = resolve_group_id(service, name)
        code = (currency or service.settings.default_currency).upper()
        summary = service.group_summary(group_id, code)

        table = Table(title=name, show_header=True, header_style="bold magenta")
        table.add_column("Member", style="cyan")
        table.add_column("Balance", justify="right")
        for member in summary.members:
            table.add_row(member.participant.name, money_markup(member.balance, code))
        console.print(table)

        console.print()
        console.print("[bold]Summary:[/bold]")
        console.print(f"  You are owed: {money_markup(summary.owed_to_you, code)}")
        console.print(f"  You owe:      {money_markup(-summary.you_owe, code)}")


@app.command()
def conversation(
    name: str = typer.Argument(..., help="Person or group name"),
    is_group: bool = typer.Option(False, "--group", "-g", help="Show a group's feed"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show the shared timeline with a person or a group."""
    with open_service(verbose) as service:
        people_by_id = {p.id: p for p in service.db.list_participants()}
        if is_group:
            groups = service.group_conversation(resolve_group_id(service, name))
        else:
            person = resolve_person(service, name)
            groups = service.conversation(person.id)
            balance = service.balance_with(person.id)
            code = balance.primary_currency(service.settings.default_currency)
            console.print(f"[bold]{describe_balance(person.name, balance.get(code), code)}[/bold]")

        display_conversation(groups, people_by_id, date.today())


_STATUS_STYLES = {
    BillingStatus.UPCOMING: "dim",
    BillingStatus.DUE: "yellow",
    BillingStatus.OVERDUE: "red",
    BillingStatus.PAUSED: "dim italic",
}


@app.command("add-subscription")
def add_subscription(
    name: str = typer.Argument(..., help="Subscription name"),
    amount: str = typer.Argument(..., help="Amount per billing cycle"),
    cycle: BillingCycle = typer.Option(BillingCycle.MONTHLY, "--cycle", help="Billing cycle"),
    days: int = typer.Option(30, "--days", help="Cycle length in days for a custom cycle"),
    members: list[str] = typer.Option(None, "--member", "-m", help="Person sharing it (repeatable)"),
    start: Optional[datetime] = typer.Option(None, "--start", help="First billing date"),
    currency: Optional[str] = typer.Option(None, "--currency", "-c", help="Currency code"),
    note: Optional[str] = typer.Option(None, "--note", help="Optional note"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Track a recurring subscription, optionally shared with others."""
    with open_service(verbose) as service:
        subscription = service.add_subscription(
            name,
            parse_amount(amount),
            cycle=cycle,
            member_ids=[resolve_person(service, member).id for member in members or []],
            start_date=start.date() if start else None,
            currency=currency,
            custom_cycle_days=days,
            note=note,
        )
        kind = "shared" if subscription.is_shared else "personal"
        console.print(
            f"[green]✓ Added {kind} subscription {subscription.name}, "
            f"next billing {subscription.next_billing_date:%b %d, %Y}[/green]"
        )


@app.command("pay-subscription")
def pay_subscription(
    name: str = typer.Argument(..., help="Subscription name"),
    amount: Optional[str] = typer.Option(None, "--amount", "-a", help="Amount paid (default: the subscription amount)"),
    paid_by: str = typer.Option("me", "--paid-by", "-p", help="Who paid"),
    when: Optional[datetime] = typer.Option(None, "--date", help="Date of the payment"),
    note: Optional[str] = typer.Option(None, "--note", help="Optional note"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Record a billing-period payment, split equally between subscribers."""
    with open_service(verbose) as service:
        payment = service.record_subscription_payment(
            resolve_subscription_id(service, name),
            amount=parse_amount(amount) if amount is not None else None,
            payer_id=resolve_person(service, paid_by).id,
            date=when,
            note=note,
        )
        console.print(
            f"[green]✓ Recorded {format_money(payment.amount, payment.currency)}, "
            f"next billing {payment.billing_period_end:%b %d, %Y}[/green]"
        )


@app.command()
def subscriptions(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List subscriptions with their billing status and monthly cost."""
    with open_service(verbose) as service:
        today = date.today()
        table = Table(title="Subscriptions", show_header=True, header_style="bold magenta")
        table.add_column("Name", style="cyan")
        table.add_column("Amount", justify="right")
        table.add_column("Next billing")
        table.add_column("Status")
        table.add_column("Per month", justify="right")
        table.add_column("Balance", justify="right")

        for subscription in service.list_subscriptions():
            status = billing_status(subscription, today)
            code = subscription.currency
            balance = (
                money_markup(service.subscription_summary(subscription.id).net, code)
                if subscription.is_shared
                else ""
            )
            table.add_row(
                subscription.name,
                f"{format_money(subscription.amount, code)}/{subscription.cycle.value}",
                f"{subscription.next_billing_date:%b %d, %Y}",
                f"[{_STATUS_STYLES[status]}]{status.value}[/{_STATUS_STYLES[status]}]",
                format_money(monthly_equivalent(subscription), code),
                balance,
            )
        console.print(table)


@app.command("subscription")
def subscription_balances(
    name: str = typer.Argument(..., help="Subscription name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show what each subscriber owes you for a shared subscription."""
    with open_service(verbose) as service:
        subscription = service.get_subscription(resolve_subscription_id(service, name))
        code = subscription.currency
        if not subscription.is_shared:
            console.print(f"[dim]{subscription.name} is a personal subscription.[/dim]")
            return

        summary = service.subscription_summary(subscription.id)
        table = Table(title=subscription.name, show_header=True, header_style="bold magenta")
        table.add_column("Member", style="cyan")
        table.add_column("Paid", justify="right")
        table.add_column("Balance", justify="right")
        for member in summary.members:
            table.add_row(
                member.participant.name,
                format_money(member.paid, code),
                money_markup(member.balance, code),
            )
        console.print(table)

        console.print()
        console.print("[bold]Summary:[/bold]")
        console.print(f"  You are owed: {money_markup(summary.owed_to_you, code)}")
        console.print(f"  You owe:      {money_markup(-summary.you_owe, code)}")


@app.command("settle-subscription")
def settle_subscription(
    name: str = typer.Argument(..., help="Subscription name"),
    person: str = typer.Argument(..., help="Subscriber to settle up with"),
    amount: Optional[str] = typer.Option(None, "--amount", "-a", help="Amount paid (default: everything)"),
    policy: Optional[SettlementPolicy] = typer.Option(
        None, "--policy", help="Over-settlement handling (default from settings)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Settle what you and a subscriber owe each other for a subscription."""
    with open_service(verbose) as service:
        counterpart = resolve_person(service, person)
        receipt = service.settle_subscription(
            resolve_subscription_id(service, name),
            counterpart.id,
            amount=parse_amount(amount) if amount is not None else None,
            policy=policy,
        )
        settlement = receipt.settlement
        recorded = format_money(settlement.amount, settlement.currency)
        if receipt.clamped:
            console.print(
                f"[yellow]⚠️  {format_money(receipt.requested_amount, settlement.currency)} is more "
                f"than the outstanding balance; recorded {recorded} instead.[/yellow]"
            )
        direction = "You paid" if settlement.to_id == counterpart.id else f"{counterpart.name} paid you"
        console.print(f"[green]✓ {direction} {recorded}[/green]")


@app.command("pause-subscription")
def pause_subscription(
    name: str = typer.Argument(..., help="Subscription name"),
    resume: bool = typer.Option(False, "--resume", help="Resume instead of pausing"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Pause a subscription, or resume it with --resume."""
    with open_service(verbose) as service:
        subscription = service.set_subscription_active(
            resolve_subscription_id(service, name), active=resume
        )
        state = "resumed" if subscription.is_active else "paused"
        console.print(f"[green]✓ {subscription.name} {state}[/green]")


if __name__ == "__main__":
    app()
