"""Unit tests for fixed-point credit amounts."""

from __future__ import annotations

from decimal import Decimal

import pytest

from credits_service.exceptions import InvalidAmountError
from credits_service.ledger.amounts import (
    MAX_MILLICREDITS,
    from_millicredits,
    quantize_credits,
    require_positive,
    to_millicredits,
)


@pytest.mark.unit
class TestQuantizeCredits:
    """Tests for rounding to ledger precision."""

    def test_quantizes_to_three_places(self) -> None:
        assert quantize_credits("98.5") == Decimal("98.500")
        assert str(quantize_credits(1)) == "1.000"

    def test_rounds_half_up(self) -> None:
        assert quantize_credits("1.0005") == Decimal("1.001")
        assert quantize_credits("1.0004") == Decimal("1.000")

    def test_float_goes_through_its_string_form(self) -> None:
        # 0.1 must not pick up binary float noise
        assert quantize_credits(0.1) == Decimal("0.100")

    @pytest.mark.parametrize("value", ["abc", "", float("nan"), Decimal("Infinity"), True])
    def test_rejects_non_numeric_values(self, value: object) -> None:
        with pytest.raises(InvalidAmountError):
            quantize_credits(value)  # type: ignore[arg-type]


@pytest.mark.unit
class TestMillicredits:
    """Tests for conversion to and from the stored integer form."""

    def test_to_millicredits(self) -> None:
        assert to_millicredits("98.5") == 98500
        assert to_millicredits(Decimal("0.1")) == 100
        assert to_millicredits(0) == 0

    def test_from_millicredits(self) -> None:
        assert from_millicredits(148500) == Decimal("148.500")
        assert from_millicredits(1) == Decimal("0.001")

    def test_sum_of_tenths_has_no_drift(self) -> None:
        total = sum(to_millicredits("0.1") for _ in range(10))
        assert from_millicredits(total) == Decimal(1)


@pytest.mark.unit
class TestRequirePositive:
    """Tests for the amount guard used by credit and debit."""

    def test_returns_millicredits(self) -> None:
        assert require_positive("0.5") == 500

    @pytest.mark.parametrize("value", [0, "0", -1, "-0.5", "0.0004"])
    def test_rejects_zero_negative_and_sub_precision(self, value: object) -> None:
        with pytest.raises(InvalidAmountError) as exc_info:
            require_positive(value)  # type: ignore[arg-type]
        assert exc_info.value.amount == value


@pytest.mark.unit
class TestOutOfRangeAmounts:
    """Amounts too large to quantize or store are invalid, not crashes."""

    def test_too_many_digits_to_quantize(self) -> None:
        with pytest.raises(InvalidAmountError):
            quantize_credits("1e30")

    @pytest.mark.parametrize("value", ["1e20", "-1e20", 10**17])
    def test_beyond_bigint_range(self, value: object) -> None:
        with pytest.raises(InvalidAmountError):
            to_millicredits(value)  # type: ignore[arg-type]

    def test_largest_storable_amount(self) -> None:
        largest = from_millicredits(MAX_MILLICREDITS)
        assert to_millicredits(largest) == MAX_MILLICREDITS

        with pytest.raises(InvalidAmountError):
            require_positive(largest + Decimal("0.001"))
