"""Tests for the split engine: exact reconciliation, determinism and validation."""

from decimal import ROUND_DOWN, Decimal
from uuid import UUID, uuid4

import pytest

from swiss_coin.models import Participant, SplitMethod, ValidationErrorKind
from swiss_coin.splitter import build_splits, compute_split, deterministic_order


def make_person(name: str, id: str | None = None) -> Participant:
    return Participant(id=UUID(id) if id else uuid4(), name=name)


@pytest.fixture
def alice():
    return make_person("Alice", "00000000-0000-0000-0000-00000000000a")


@pytest.fixture
def bob():
    return make_person("Bob", "00000000-0000-0000-0000-00000000000b")


@pytest.fixture
def carol():
    return make_person("Carol", "00000000-0000-0000-0000-00000000000c")


@pytest.fixture
def trio(alice, bob, carol):
    return [carol, alice, bob]


class TestEqualSplit:
    def test_even_division(self, alice, bob):
        result = compute_split(Decimal("40.00"), [alice, bob], SplitMethod.EQUAL)

        assert result.ok
        assert result.shares == {alice.id: Decimal("20.00"), bob.id: Decimal("20.00")}

    def test_leftover_cent_goes_to_first_in_order(self, alice, bob, carol, trio):
        result = compute_split(Decimal("100.00"), trio, SplitMethod.EQUAL)

        assert result.shares[alice.id] == Decimal("33.34")
        assert result.shares[bob.id] == Decimal("33.33")
        assert result.shares[carol.id] == Decimal("33.33")
        assert result.total == Decimal("100.00")

    def test_zero_decimal_currency(self, alice, bob, carol, trio):
        result = compute_split(Decimal("1000"), trio, SplitMethod.EQUAL, currency="JPY")

        assert result.shares[alice.id] == Decimal("334")
        assert result.shares[bob.id] == Decimal("333")
        assert result.shares[carol.id] == Decimal("333")

    def test_single_participant_takes_everything(self, alice):
        result = compute_split(Decimal("9.99"), [alice], SplitMethod.EQUAL)

        assert result.shares == {alice.id: Decimal("9.99")}


class TestPercentageSplit:
    def test_percentages_reconcile(self, alice, bob):
        result = compute_split(
            Decimal("10.01"),
            [alice, bob],
            SplitMethod.PERCENTAGE,
            {alice.id: "50", bob.id: "50"},
        )

        assert result.shares == {alice.id: Decimal("5.01"), bob.id: Decimal("5.00")}

    def test_sum_within_tolerance_still_reconciles(self, alice, bob, carol, trio):
        inputs = {alice.id: "33.33", bob.id: "33.33", carol.id: "33.33"}
        result = compute_split(Decimal("100.00"), trio, SplitMethod.PERCENTAGE, inputs)

        assert result.ok
        assert result.total == Decimal("100.00")
        assert result.shares[alice.id] == Decimal("33.34")

    def test_sum_outside_tolerance_is_rejected(self, alice, bob, carol, trio):
        inputs = {alice.id: 33, bob.id: 33, carol.id: 33}
        result = compute_split(Decimal("100.00"), trio, SplitMethod.PERCENTAGE, inputs)

        assert not result.ok
        assert result.shares is None
        assert result.error.kind == ValidationErrorKind.RECONCILIATION_FAILURE

    def test_percentage_over_100_is_rejected(self, alice, bob):
        inputs = {alice.id: 150, bob.id: -50}
        result = compute_split(Decimal("10"), [alice, bob], SplitMethod.PERCENTAGE, inputs)

        assert result.error.kind == ValidationErrorKind.RECONCILIATION_FAILURE

    def test_zero_percent_receives_no_leftover(self, alice, bob, carol, trio):
        inputs = {alice.id: 0, bob.id: 50, carol.id: 50}
        result = compute_split(Decimal("0.03"), trio, SplitMethod.PERCENTAGE, inputs)

        assert result.shares[alice.id] == Decimal("0.00")
        assert result.total == Decimal("0.03")


class TestAmountSplit:
    def test_exact_amounts(self, alice, bob):
        inputs = {alice.id: "4.50", bob.id: "5.50"}
        result = compute_split(Decimal("10.00"), [alice, bob], SplitMethod.AMOUNT, inputs)

        assert result.shares == {alice.id: Decimal("4.50"), bob.id: Decimal("5.50")}

    def test_mismatch_is_rejected(self, alice, bob):
        inputs = {alice.id: 4, bob.id: 5}
        result = compute_split(Decimal("10.00"), [alice, bob], SplitMethod.AMOUNT, inputs)

        assert result.error.kind == ValidationErrorKind.RECONCILIATION_FAILURE

    def test_negative_amount_is_rejected(self, alice, bob):
        inputs = {alice.id: -5, bob.id: 15}
        result = compute_split(Decimal("10.00"), [alice, bob], SplitMethod.AMOUNT, inputs)

        assert result.error.kind == ValidationErrorKind.NEGATIVE_SHARE_FAILURE


class TestSharesSplit:
    def test_weighted_by_shares(self, alice, bob):
        inputs = {alice.id: 1, bob.id: 2}
        result = compute_split(Decimal("10.00"), [alice, bob], SplitMethod.SHARES, inputs)

        assert result.shares == {alice.id: Decimal("3.34"), bob.id: Decimal("6.66")}

    def test_zero_total_shares(self, alice, bob):
        inputs = {alice.id: 0, bob.id: 0}
        result = compute_split(Decimal("10.00"), [alice, bob], SplitMethod.SHARES, inputs)

        assert result.error.kind == ValidationErrorKind.DIVISION_BY_ZERO

    def test_missing_inputs_count_as_zero(self, alice, bob):
        result = compute_split(Decimal("10.00"), [alice, bob], SplitMethod.SHARES)

        assert result.error.kind == ValidationErrorKind.DIVISION_BY_ZERO

    def test_fractional_shares_are_rejected(self, alice, bob):
        inputs = {alice.id: "1.5", bob.id: 1}
        result = compute_split(Decimal("10.00"), [alice, bob], SplitMethod.SHARES, inputs)

        assert result.error.kind == ValidationErrorKind.RECONCILIATION_FAILURE


class TestAdjustmentSplit:
    def test_adjustment_on_top_of_equal_base(self, alice, bob, carol, trio):
        inputs = {alice.id: 5}
        result = compute_split(Decimal("30.00"), trio, SplitMethod.ADJUSTMENT, inputs)

        assert result.shares[alice.id] == Decimal("13.34")
        assert result.shares[bob.id] == Decimal("8.33")
        assert result.shares[carol.id] == Decimal("8.33")
        assert result.total == Decimal("30.00")

    def test_negative_result_is_rejected(self, alice, bob):
        inputs = {alice.id: -20, bob.id: 20}
        result = compute_split(Decimal("10.00"), [alice, bob], SplitMethod.ADJUSTMENT, inputs)

        assert result.error.kind == ValidationErrorKind.NEGATIVE_SHARE_FAILURE


class TestValidation:
    """Structured failures instead of exceptions."""

    def test_zero_amount(self, alice):
        result = compute_split(Decimal("0"), [alice], SplitMethod.EQUAL)
        assert result.error.kind == ValidationErrorKind.INVALID_AMOUNT

    def test_amount_rounding_to_zero(self, alice):
        result = compute_split(Decimal("0.001"), [alice], SplitMethod.EQUAL)
        assert result.error.kind == ValidationErrorKind.INVALID_AMOUNT

    def test_amount_over_maximum(self, alice):
        result = compute_split(
            Decimal("1000"), [alice], SplitMethod.EQUAL, max_amount=Decimal("999.99")
        )
        assert result.error.kind == ValidationErrorKind.INVALID_AMOUNT

    def test_empty_participant_set(self):
        result = compute_split(Decimal("10"), [], SplitMethod.EQUAL)
        assert result.error.kind == ValidationErrorKind.INVALID_PARTICIPANT_SET

    def test_duplicate_participant(self, alice):
        result = compute_split(Decimal("10"), [alice, alice], SplitMethod.EQUAL)
        assert result.error.kind == ValidationErrorKind.INVALID_PARTICIPANT_SET

    def test_participant_outside_allowed_set(self, alice, bob):
        result = compute_split(
            Decimal("10"), [alice, bob], SplitMethod.EQUAL, allowed_ids=[alice.id]
        )
        assert result.error.kind == ValidationErrorKind.INVALID_PARTICIPANT_SET
        assert "Bob" in result.error.detail

    def test_input_for_someone_not_in_split(self, alice, bob):
        result = compute_split(
            Decimal("10"), [alice], SplitMethod.AMOUNT, {alice.id: 5, bob.id: 5}
        )
        assert result.error.kind == ValidationErrorKind.INVALID_PARTICIPANT_SET

    def test_non_numeric_input(self, alice, bob):
        result = compute_split(
            Decimal("10"), [alice, bob], SplitMethod.SHARES, {alice.id: "two"}
        )
        assert result.error.kind == ValidationErrorKind.INVALID_AMOUNT

    def test_method_given_as_tag(self, alice, bob):
        result = compute_split(Decimal("10"), [alice, bob], "equal")
        assert result.ok

    def test_huge_total_without_configured_maximum(self, alice, bob):
        result = compute_split(Decimal("1e30"), [alice, bob], SplitMethod.EQUAL)
        assert result.error.kind == ValidationErrorKind.INVALID_AMOUNT

    @pytest.mark.parametrize("method", [SplitMethod.AMOUNT, SplitMethod.ADJUSTMENT])
    def test_huge_input_is_rejected(self, alice, bob, method):
        result = compute_split(Decimal("10"), [alice, bob], method, {alice.id: "1e30", bob.id: "1"})
        assert result.error.kind == ValidationErrorKind.INVALID_AMOUNT

    @pytest.mark.parametrize("value", ["NaN", "Infinity", "-1e30"])
    def test_non_finite_or_huge_shares(self, alice, bob, value):
        result = compute_split(Decimal("10"), [alice, bob], SplitMethod.SHARES, {alice.id: value})
        assert result.error.kind == ValidationErrorKind.INVALID_AMOUNT


class TestDeterminism:
    def test_order_is_by_name_then_id(self, alice, bob, carol, trio):
        result = compute_split(Decimal("100.00"), trio, SplitMethod.EQUAL)
        assert list(result.shares) == [alice.id, bob.id, carol.id]

    def test_same_name_ordered_by_id(self):
        first = make_person("Sam", "00000000-0000-0000-0000-000000000001")
        second = make_person("Sam", "00000000-0000-0000-0000-000000000002")

        assert deterministic_order([second, first]) == [first, second]

        result = compute_split(Decimal("0.01"), [second, first], SplitMethod.EQUAL)
        assert result.shares[first.id] == Decimal("0.01")
        assert result.shares[second.id] == Decimal("0.00")

    def test_repeated_calls_match(self, trio):
        runs = [
            compute_split(Decimal("77.77"), list(reversed(trio)), SplitMethod.EQUAL),
            compute_split(Decimal("77.77"), trio, SplitMethod.EQUAL),
        ]
        assert runs[0] == runs[1]


class TestBuildSplits:
    def test_keeps_raw_inputs(self, alice, bob):
        inputs = {alice.id: "25", bob.id: "75"}
        result = compute_split(Decimal("8.00"), [alice, bob], SplitMethod.PERCENTAGE, inputs)
        expense_id = uuid4()

        splits = build_splits(expense_id, result, inputs)

        assert [s.participant_id for s in splits] == [alice.id, bob.id]
        assert [s.amount for s in splits] == [Decimal("2.00"), Decimal("6.00")]
        assert splits[1].raw_input == Decimal("75")
        assert all(s.expense_id == expense_id for s in splits)

    def test_failed_result_raises(self):
        result = compute_split(Decimal("10"), [], SplitMethod.EQUAL)
        with pytest.raises(ValueError):
            build_splits(uuid4(), result)


def sweep_inputs(method: SplitMethod, total: Decimal, ids: list[UUID]) -> dict[UUID, Decimal]:
    """Valid raw inputs for a method, for any total and participant count."""
    n = len(ids)
    if method == SplitMethod.PERCENTAGE:
        each = (Decimal(100) / n).quantize(Decimal("0.01"), rounding=ROUND_DOWN)
        return {**{pid: each for pid in ids[:-1]}, ids[-1]: Decimal(100) - each * (n - 1)}
    if method == SplitMethod.AMOUNT:
        each = (total / n).quantize(Decimal("0.01"), rounding=ROUND_DOWN)
        return {**{pid: each for pid in ids[:-1]}, ids[-1]: total - each * (n - 1)}
    if method == SplitMethod.SHARES:
        return {pid: Decimal(i + 1) for i, pid in enumerate(ids)}
    if method == SplitMethod.ADJUSTMENT:
        return {ids[0]: Decimal("0.01")}
    return {}


class TestReconciliationSweep:
    """Every strategy sums exactly to the total for a spread of totals and group sizes."""

    @pytest.mark.parametrize("method", list(SplitMethod))
    @pytest.mark.parametrize("count", [1, 2, 3, 4, 6, 7])
    @pytest.mark.parametrize(
        "total", ["0.01", "0.99", "1.00", "10.01", "33.33", "100.00", "12345.67"]
    )
    def test_sum_equals_total(self, method, count, total):
        people = [make_person(f"P{i}") for i in range(count)]
        total = Decimal(total)
        inputs = sweep_inputs(method, total, [p.id for p in people])

        result = compute_split(total, people, method, inputs)

        assert result.ok, result.error
        assert result.total == total
        assert all(amount >= 0 for amount in result.shares.values())
