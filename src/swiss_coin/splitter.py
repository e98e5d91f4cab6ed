"""Split engine: divide an expense total among participants to the exact cent.

All arithmetic is done on integer minor units. Every strategy returns amounts
that sum exactly to the total, or a structured validation failure. Nothing
here raises for bad input.
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from decimal import Decimal, InvalidOperation
from uuid import UUID

from .models import (
    Participant,
    Split,
    SplitMethod,
    SplitResult,
    ValidationErrorKind,
    ValidationFailure,
)
from .money import (
    DEFAULT_CURRENCY,
    MAX_AMOUNT,
    from_minor_units,
    is_valid_amount,
    to_minor_units,
)

logger = logging.getLogger(__name__)

PERCENTAGE_TOLERANCE = Decimal("0.01")

_Allocation = dict[UUID, int] | ValidationFailure
_Strategy = Callable[[int, list[UUID], dict[UUID, Decimal], str, Decimal], _Allocation]


def deterministic_order(participants: Iterable[Participant]) -> list[Participant]:
    """
    Order participants for leftover-cent distribution.

    Sorted by display name, then by id when names tie, so the same inputs
    always put the extra cents on the same people.
    """
    return sorted(participants, key=lambda p: (p.name, str(p.id)))


def _failure(kind: ValidationErrorKind, detail: str) -> ValidationFailure:
    return ValidationFailure(kind=kind, detail=detail)


def _distribute_remainder(
    units: dict[UUID, int], eligible: list[UUID], remainder: int
) -> None:
    """Hand out `remainder` minor units one at a time, cycling through `eligible`."""
    for i in range(remainder):
        units[eligible[i % len(eligible)]] += 1
    if remainder:
        logger.debug(f"Distributed {remainder} leftover minor unit(s) over {len(eligible)} participants")


def _allocate_by_weight(
    total_units: int, ordered_ids: list[UUID], weights: dict[UUID, Decimal]
) -> dict[UUID, int]:
    """
    Proportional allocation: floor each share, then distribute what is left.

    Only participants with a non-zero weight receive leftover units.
    """
    weight_sum = sum((weights.get(pid, Decimal("0")) for pid in ordered_ids), Decimal("0"))
    units = {
        pid: int((Decimal(total_units) * weights.get(pid, Decimal("0"))) // weight_sum)
        for pid in ordered_ids
    }
    eligible = [pid for pid in ordered_ids if weights.get(pid, Decimal("0")) > 0]
    _distribute_remainder(units, eligible, total_units - sum(units.values()))
    return units


# ============================================================================
# Strategies
# ============================================================================


def _split_equal(
    total_units: int,
    ordered_ids: list[UUID],
    inputs: dict[UUID, Decimal],
    currency: str,
    tolerance: Decimal,
) -> _Allocation:
    base, remainder = divmod(total_units, len(ordered_ids))
    units = {pid: base for pid in ordered_ids}
    _distribute_remainder(units, ordered_ids, remainder)
    return units


def _split_percentage(
    total_units: int,
    ordered_ids: list[UUID],
    inputs: dict[UUID, Decimal],
    currency: str,
    tolerance: Decimal,
) -> _Allocation:
    percentages = {pid: inputs.get(pid, Decimal("0")) for pid in ordered_ids}

    out_of_range = [pid for pid, pct in percentages.items() if pct < 0 or pct > 100]
    if out_of_range:
        return _failure(
            ValidationErrorKind.RECONCILIATION_FAILURE,
            f"Percentages must be between 0 and 100 (invalid for {len(out_of_range)} participant(s))",
        )

    total_percent = sum(percentages.values(), Decimal("0"))
    if abs(total_percent - 100) > tolerance:
        return _failure(
            ValidationErrorKind.RECONCILIATION_FAILURE,
            f"Percentages must add up to 100% (got {total_percent}%)",
        )

    # Weighting by the entered total keeps the floor allocation at or below
    # the expense total when the percentages are within tolerance of 100.
    return _allocate_by_weight(total_units, ordered_ids, percentages)


def _split_amount(
    total_units: int,
    ordered_ids: list[UUID],
    inputs: dict[UUID, Decimal],
    currency: str,
    tolerance: Decimal,
) -> _Allocation:
    units = {pid: to_minor_units(inputs.get(pid, Decimal("0")), currency) for pid in ordered_ids}

    negative = [pid for pid, value in units.items() if value < 0]
    if negative:
        return _failure(
            ValidationErrorKind.NEGATIVE_SHARE_FAILURE,
            f"Exact amounts cannot be negative ({len(negative)} participant(s))",
        )

    entered = sum(units.values())
    if entered != total_units:
        return _failure(
            ValidationErrorKind.RECONCILIATION_FAILURE,
            f"Amounts must equal the total: entered {from_minor_units(entered, currency)}, "
            f"total {from_minor_units(total_units, currency)}",
        )
    return units


def _split_shares(
    total_units: int,
    ordered_ids: list[UUID],
    inputs: dict[UUID, Decimal],
    currency: str,
    tolerance: Decimal,
) -> _Allocation:
    shares = {pid: inputs.get(pid, Decimal("0")) for pid in ordered_ids}

    invalid = [pid for pid, count in shares.items() if count < 0 or count != count.to_integral_value()]
    if invalid:
        return _failure(
            ValidationErrorKind.RECONCILIATION_FAILURE,
            f"Shares must be whole numbers of zero or more ({len(invalid)} invalid)",
        )

    if sum(shares.values(), Decimal("0")) == 0:
        return _failure(
            ValidationErrorKind.DIVISION_BY_ZERO,
            "Total shares is zero; enter shares for at least one person",
        )
    return _allocate_by_weight(total_units, ordered_ids, shares)


def _split_adjustment(
    total_units: int,
    ordered_ids: list[UUID],
    inputs: dict[UUID, Decimal],
    currency: str,
    tolerance: Decimal,
) -> _Allocation:
    adjustments = {pid: to_minor_units(inputs.get(pid, Decimal("0")), currency) for pid in ordered_ids}

    base, remainder = divmod(total_units - sum(adjustments.values()), len(ordered_ids))
    units = {pid: base for pid in ordered_ids}
    _distribute_remainder(units, ordered_ids, remainder)
    for pid in ordered_ids:
        units[pid] += adjustments[pid]

    negative = [pid for pid in ordered_ids if units[pid] < 0]
    if negative:
        worst = min(units[pid] for pid in negative)
        return _failure(
            ValidationErrorKind.NEGATIVE_SHARE_FAILURE,
            f"Adjustments would leave {len(negative)} participant(s) with a negative share "
            f"(lowest {from_minor_units(worst, currency)})",
        )
    return units


_STRATEGIES: dict[SplitMethod, _Strategy] = {
    SplitMethod.EQUAL: _split_equal,
    SplitMethod.PERCENTAGE: _split_percentage,
    SplitMethod.AMOUNT: _split_amount,
    SplitMethod.SHARES: _split_shares,
    SplitMethod.ADJUSTMENT: _split_adjustment,
}


# ============================================================================
# Public API
# ============================================================================


def _parse_inputs(
    raw_inputs: Mapping[UUID, object],
) -> dict[UUID, Decimal] | ValidationFailure:
    parsed = {}
    for pid, value in raw_inputs.items():
        try:
            number = Decimal(str(value).strip())
        except InvalidOperation:
            return _failure(ValidationErrorKind.INVALID_AMOUNT, f"Not a number: {value!r}")
        if not number.is_finite():
            return _failure(ValidationErrorKind.INVALID_AMOUNT, f"Not a finite number: {value!r}")
        if not is_valid_amount(number):
            return _failure(ValidationErrorKind.INVALID_AMOUNT, f"Out of range: {value!r}")
        parsed[pid] = number
    return parsed


def compute_split(
    total: Decimal,
    participants: Iterable[Participant],
    method: SplitMethod | str,
    raw_inputs: Mapping[UUID, object] | None = None,
    currency: str = DEFAULT_CURRENCY,
    allowed_ids: Iterable[UUID] | None = None,
    percentage_tolerance: Decimal = PERCENTAGE_TOLERANCE,
    max_amount: Decimal | None = None,
) -> SplitResult:
    """
    Compute each participant's owed amount for an expense.

    Steps:
    1. Validate the total and the participant set
    2. Order participants deterministically (name, then id)
    3. Run the strategy in integer minor units
    4. Verify the allocation sums exactly to the total

    Args:
        total: Expense total in the currency's major unit
        participants: Everyone sharing the expense (the payer included if they
            carry a share)
        method: Split strategy
        raw_inputs: Per-participant strategy input: percentage, exact amount,
            share count or adjustment. Missing entries count as zero.
        currency: ISO 4217 code; decides the minor unit
        allowed_ids: If given, every participant must be in this set
            (e.g. the members of the expense's group)
        percentage_tolerance: How far percentages may sum from 100
        max_amount: Optional upper bound for the total; never above MAX_AMOUNT

    Returns:
        SplitResult with `shares` in deterministic order, or with `error`
    """
    method = SplitMethod(method)
    participants = list(participants)

    def fail(kind: ValidationErrorKind, detail: str) -> SplitResult:
        logger.debug(f"Rejected {method.value} split: {kind.value}: {detail}")
        return SplitResult.failure(kind, detail, currency)

    try:
        total = Decimal(str(total))
    except InvalidOperation:
        return fail(ValidationErrorKind.INVALID_AMOUNT, f"Not a number: {total!r}")
    if not total.is_finite() or total <= 0:
        return fail(ValidationErrorKind.INVALID_AMOUNT, "Amount must be greater than zero")
    limit = MAX_AMOUNT if max_amount is None else min(max_amount, MAX_AMOUNT)
    if total > limit:
        return fail(ValidationErrorKind.INVALID_AMOUNT, f"Amount exceeds maximum allowed ({limit})")

    total_units = to_minor_units(total, currency)
    if total_units <= 0:
        return fail(ValidationErrorKind.INVALID_AMOUNT, "Amount rounds to zero")

    if not participants:
        return fail(ValidationErrorKind.INVALID_PARTICIPANT_SET, "Select at least one person to split with")

    ids = [p.id for p in participants]
    id_set = set(ids)
    if len(id_set) != len(ids):
        return fail(ValidationErrorKind.INVALID_PARTICIPANT_SET, "A participant is listed more than once")

    if allowed_ids is not None:
        allowed = set(allowed_ids)
        outsiders = [p.name for p in participants if p.id not in allowed]
        if outsiders:
            return fail(
                ValidationErrorKind.INVALID_PARTICIPANT_SET,
                f"Not allowed in this expense: {', '.join(sorted(outsiders))}",
            )

    raw_inputs = raw_inputs or {}
    unknown = [pid for pid in raw_inputs if pid not in id_set]
    if unknown:
        return fail(
            ValidationErrorKind.INVALID_PARTICIPANT_SET,
            f"Input given for {len(unknown)} person(s) not in the split",
        )

    inputs = _parse_inputs(raw_inputs)
    if isinstance(inputs, ValidationFailure):
        return fail(inputs.kind, inputs.detail)

    ordered_ids = [p.id for p in deterministic_order(participants)]
    allocation = _STRATEGIES[method](total_units, ordered_ids, inputs, currency, percentage_tolerance)
    if isinstance(allocation, ValidationFailure):
        return fail(allocation.kind, allocation.detail)

    # Final verification
    assert sum(allocation.values()) == total_units, "Split allocation failed to reconcile"

    shares = {pid: from_minor_units(allocation[pid], currency) for pid in ordered_ids}
    return SplitResult.success(shares, currency)


def build_splits(
    expense_id: UUID,
    result: SplitResult,
    raw_inputs: Mapping[UUID, object] | None = None,
) -> list[Split]:
    """
    Turn a successful split result into Split records for one expense.

    Raw inputs are kept on each split so the expense can be edited later.
    """
    if not result.ok or result.shares is None:
        raise ValueError("Cannot build splits from a failed split result")

    parsed = _parse_inputs(raw_inputs or {})
    if isinstance(parsed, ValidationFailure):
        raise ValueError(parsed.detail)

    return [
        Split(
            expense_id=expense_id,
            participant_id=pid,
            amount=amount,
            raw_input=parsed.get(pid),
        )
        for pid, amount in result.shares.items()
    ]
