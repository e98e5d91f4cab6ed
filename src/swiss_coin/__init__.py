"""Swiss Coin - Split shared expenses and settle balances between people and groups."""

__version__ = "0.1.0"

from .balances import balance_between, check_settlement, group_summary
from .config import Settings, load_settings
from .conversation import build_conversation, build_group_conversation
from .db import Database
from .models import (
    BillingCycle,
    Expense,
    Group,
    Participant,
    Settlement,
    SplitMethod,
    SplitResult,
    Subscription,
    ValidationErrorKind,
)
from .service import LedgerService
from .splitter import compute_split
from .subscriptions import next_billing_date, subscription_summary

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "Expense",
    "Group",
    "Participant",
    "Settlement",
    "SplitMethod",
    "SplitResult",
    "Subscription",
    "BillingCycle",
    "ValidationErrorKind",
    "compute_split",
    "balance_between",
    "check_settlement",
    "group_summary",
    "build_conversation",
    "build_group_conversation",
    "next_billing_date",
    "subscription_summary",
    "LedgerService",
]
