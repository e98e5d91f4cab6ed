"""Money and rounding helpers shared by the split engine and the aggregator."""

from decimal import ROUND_HALF_UP, Decimal

DEFAULT_CURRENCY = "USD"

# Largest magnitude accepted for a single amount or split input.
MAX_AMOUNT = Decimal("999999999.99")

# Largest balance magnitude a settlement is checked against.
MAX_BALANCE = Decimal("999999999999999.99")

# ISO 4217 currencies whose minor unit is not the cent.
_ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW",
        "PYG", "RWF", "UGX", "UYI", "VND", "VUV", "XAF", "XOF", "XPF",
    }
)
_THREE_DECIMAL_CURRENCIES = frozenset(
    {"BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND"}
)

_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "INR": "₹",
    "CNY": "¥",
    "JPY": "¥",
    "CHF": "CHF ",
    "CAD": "CA$",
    "AUD": "A$",
    "KRW": "₩",
    "SGD": "S$",
    "BRL": "R$",
    "MXN": "MX$",
    "SEK": "kr ",
}


def minor_unit_exponent(currency: str = DEFAULT_CURRENCY) -> int:
    """Number of decimal places in the currency's smallest unit."""
    code = currency.upper()
    if code in _ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in _THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def minor_unit(currency: str = DEFAULT_CURRENCY) -> Decimal:
    """The smallest representable amount, e.g. Decimal("0.01") for USD."""
    return Decimal(1).scaleb(-minor_unit_exponent(currency))


def is_valid_amount(amount: Decimal, limit: Decimal = MAX_AMOUNT) -> bool:
    """True for a finite amount whose magnitude does not exceed `limit`."""
    return amount.is_finite() and abs(amount) <= limit


def round_to_minor_unit(amount: Decimal, currency: str = DEFAULT_CURRENCY) -> Decimal:
    """
    Round an amount to the currency's minor unit.

    Uses ROUND_HALF_UP so that 0.005 USD becomes 0.01, matching how amounts
    are entered by hand.

    Args:
        amount: Amount as Decimal (ints are accepted)
        currency: ISO 4217 currency code

    Returns:
        Amount quantized to the minor unit
    """
    return Decimal(amount).quantize(minor_unit(currency), rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal, currency: str = DEFAULT_CURRENCY) -> int:
    """
    Convert a decimal amount to integer minor units (cents for USD).

    Args:
        amount: Amount as Decimal
        currency: ISO 4217 currency code

    Returns:
        Amount in minor units (integer)
    """
    scaled = Decimal(amount).scaleb(minor_unit_exponent(currency))
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(units: int, currency: str = DEFAULT_CURRENCY) -> Decimal:
    """Convert integer minor units back to a Decimal at the currency's precision."""
    return Decimal(units).scaleb(-minor_unit_exponent(currency)).quantize(
        minor_unit(currency)
    )


def format_money(amount: Decimal, currency: str = DEFAULT_CURRENCY) -> str:
    """Format an amount with its currency symbol, e.g. "$1,234.50" or "-¥300"."""
    exponent = minor_unit_exponent(currency)
    symbol = _SYMBOLS.get(currency.upper(), f"{currency.upper()} ")
    rounded = round_to_minor_unit(abs(amount), currency)
    sign = "-" if amount < 0 and rounded != 0 else ""
    return f"{sign}{symbol}{rounded:,.{exponent}f}"


class CurrencyBalance:
    """
    Signed balance tracked separately per currency.

    Positive amounts mean the counterpart owes the subject. Amounts smaller
    than one minor unit of their currency count as settled.
    """

    def __init__(self, balances: dict[str, Decimal] | None = None):
        self._balances: dict[str, Decimal] = {}
        for code, amount in (balances or {}).items():
            self.add(amount, code)

    @property
    def balances(self) -> dict[str, Decimal]:
        return dict(self._balances)

    def add(self, amount: Decimal, currency: str) -> None:
        code = currency.upper()
        self._balances[code] = self._balances.get(code, Decimal("0")) + amount

    def subtract(self, amount: Decimal, currency: str) -> None:
        self.add(-amount, currency)

    def merge(self, other: "CurrencyBalance") -> None:
        for code, amount in other._balances.items():
            self.add(amount, code)

    def get(self, currency: str) -> Decimal:
        return self._balances.get(currency.upper(), Decimal("0"))

    @property
    def non_zero(self) -> dict[str, Decimal]:
        return {
            code: amount
            for code, amount in self._balances.items()
            if abs(amount) >= minor_unit(code)
        }

    @property
    def sorted_currencies(self) -> list[tuple[str, Decimal]]:
        """Non-zero balances, largest magnitude first (code breaks ties)."""
        return sorted(self.non_zero.items(), key=lambda item: (-abs(item[1]), item[0]))

    @property
    def is_settled(self) -> bool:
        return not self.non_zero

    @property
    def single_currency(self) -> str | None:
        non_zero = self.non_zero
        return next(iter(non_zero)) if len(non_zero) == 1 else None

    @property
    def has_positive(self) -> bool:
        return any(amount > 0 for amount in self.non_zero.values())

    @property
    def has_negative(self) -> bool:
        return any(amount < 0 for amount in self.non_zero.values())

    @property
    def primary_amount(self) -> Decimal:
        ordered = self.sorted_currencies
        return ordered[0][1] if ordered else Decimal("0")

    def primary_currency(self, default: str = DEFAULT_CURRENCY) -> str:
        ordered = self.sorted_currencies
        return ordered[0][0] if ordered else default

    @property
    def currency_count(self) -> int:
        return len(self.non_zero)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CurrencyBalance):
            return NotImplemented
        return self.non_zero == other.non_zero

    def __repr__(self) -> str:
        return f"CurrencyBalance({self.non_zero!r})"
