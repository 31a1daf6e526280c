"""Tests for the bitcoin calculator."""

from decimal import Decimal

import pytest

from reconciler.core.exceptions import ConfigurationError, InvalidParameterError
from reconciler.services.bitcoin_calculator import (
    MINER_MODELS,
    apportion_period_total,
    calculate_bitcoin,
    calculate_period,
    resolve_miner_models,
)

from tests.conftest import TEST_DIFFICULTY, TEST_MODEL


class TestCalculateBitcoin:
    """Test the per-period calculation."""

    def test_reference_model_yields_one_thousandth_per_mwh(self):
        assert calculate_bitcoin(Decimal("1"), TEST_MODEL, TEST_DIFFICULTY) == Decimal("0.00100000")
        assert calculate_bitcoin(Decimal("60"), TEST_MODEL, TEST_DIFFICULTY) == Decimal("0.06000000")

    def test_result_has_eight_decimal_places(self):
        result = calculate_bitcoin(Decimal("12.345"), "S19J_PRO", Decimal("108105433845147"))
        assert result.as_tuple().exponent == -8

    def test_deterministic(self):
        first = calculate_bitcoin(Decimal("37.5"), "S9", Decimal("95672703408223"))
        second = calculate_bitcoin(Decimal("37.5"), "S9", Decimal("95672703408223"))
        assert first == second

    def test_scales_inversely_with_difficulty(self):
        low = calculate_bitcoin(Decimal("100"), "M20S", Decimal("50000000000000"))
        high = calculate_bitcoin(Decimal("100"), "M20S", Decimal("100000000000000"))
        assert low > high
        assert abs(low - high * 2) <= Decimal("0.00000002")

    def test_more_efficient_model_mines_more(self):
        difficulty = Decimal("108105433845147")
        s19 = calculate_bitcoin(Decimal("100"), "S19J_PRO", difficulty)
        s9 = calculate_bitcoin(Decimal("100"), "S9", difficulty)
        assert s19 > s9

    @pytest.mark.parametrize("difficulty", [Decimal("0"), Decimal("-1")])
    def test_non_positive_difficulty_rejected(self, difficulty):
        with pytest.raises(InvalidParameterError):
            calculate_bitcoin(Decimal("10"), "S9", difficulty)

    def test_non_positive_volume_rejected(self):
        with pytest.raises(InvalidParameterError):
            calculate_bitcoin(Decimal("0"), "S9", TEST_DIFFICULTY)

    def test_unknown_model_rejected(self):
        with pytest.raises(InvalidParameterError):
            calculate_bitcoin(Decimal("10"), "ANTMINER_X", TEST_DIFFICULTY)


class TestApportionment:
    """Test splitting a period total across farms."""

    def test_proportional_split(self):
        shares = apportion_period_total(
            Decimal("0.060"), {"A": Decimal("10"), "B": Decimal("20"), "C": Decimal("30")}
        )
        assert shares == {
            "A": Decimal("0.01000000"),
            "B": Decimal("0.02000000"),
            "C": Decimal("0.03000000"),
        }

    def test_shares_sum_to_total_when_rounding(self):
        total = Decimal("0.00000010")
        shares = apportion_period_total(
            total, {"A": Decimal("1"), "B": Decimal("1"), "C": Decimal("1")}
        )
        assert sum(shares.values()) == total
        # The leftover unit goes to the lowest farm id on a tie
        assert shares == {
            "A": Decimal("0.00000004"),
            "B": Decimal("0.00000003"),
            "C": Decimal("0.00000003"),
        }

    def test_largest_remainder_gets_leftover(self):
        shares = apportion_period_total(
            Decimal("0.00000010"), {"A": Decimal("1"), "B": Decimal("2")}
        )
        assert shares == {"A": Decimal("0.00000003"), "B": Decimal("0.00000007")}

    def test_empty_volumes(self):
        assert apportion_period_total(Decimal("1"), {}) == {}

    def test_calculate_period_matches_period_total(self):
        volumes = {"T_FARM-1": Decimal("13.7"), "T_FARM-2": Decimal("2.9"), "T_FARM-3": Decimal("41.13")}
        total, shares = calculate_period(volumes, "S19J_PRO", Decimal("108105433845147"))
        assert total == calculate_bitcoin(sum(volumes.values()), "S19J_PRO", Decimal("108105433845147"))
        assert sum(shares.values()) == total


class TestResolveMinerModels:
    def test_known_models(self):
        models = resolve_miner_models(["S19J_PRO", "S9", "M20S"])
        assert [m.name for m in models] == ["S19J_PRO", "S9", "M20S"]
        assert models[0] is MINER_MODELS["S19J_PRO"]

    def test_unknown_model_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            resolve_miner_models(["S19J_PRO", "S21"])

    def test_empty_list_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            resolve_miner_models([])
