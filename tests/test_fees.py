"""
Unit tests for payout fee calculation.
"""
from decimal import Decimal

import pytest

from billing_events.core.errors import AmountTooLowForPayout
from billing_events.core.fees import calculate_fees, fees_for_net, reverse_gross

TRANSFER_RATE = Decimal("0.0025")
PAYOUT_RATE = Decimal("0.0025")
PAYOUT_FLAT = 25


class TestCalculateFees:
    """Test suite for the forward fee calculation."""

    @pytest.mark.unit
    def test_fees_on_round_amount(self) -> None:
        fees = calculate_fees(10_000, TRANSFER_RATE, PAYOUT_RATE, PAYOUT_FLAT)

        # ceil(10000 * 0.0025) = 25
        assert fees.transfer_fee == 25
        # round_half_up(9975 * 0.0025 + 25) = round_half_up(49.9375) = 50
        assert fees.payout_fee == 50
        assert fees.fees_amount == 75
        assert fees.net == 9925

    @pytest.mark.unit
    def test_transfer_fee_rounds_up(self) -> None:
        fees = calculate_fees(1001, TRANSFER_RATE, PAYOUT_RATE, PAYOUT_FLAT)
        # 1001 * 0.0025 = 2.5025
        assert fees.transfer_fee == 3

    @pytest.mark.unit
    def test_payout_fee_rounds_half_up(self) -> None:
        fees = calculate_fees(1000, Decimal("0"), Decimal("0.0025"), 25)
        # 1000 * 0.0025 + 25 = 27.5
        assert fees.payout_fee == 28

    @pytest.mark.unit
    def test_zero_transfer_rate(self) -> None:
        fees = calculate_fees(10_000, Decimal("0"), PAYOUT_RATE, PAYOUT_FLAT)
        assert fees.transfer_fee == 0
        assert fees.payout_fee == 50
        assert fees.net == 9950

    @pytest.mark.unit
    @pytest.mark.parametrize("gross", [0, 10, 25])
    def test_fees_consuming_amount_rejected(self, gross: int) -> None:
        with pytest.raises(AmountTooLowForPayout):
            calculate_fees(gross, TRANSFER_RATE, PAYOUT_RATE, PAYOUT_FLAT)


class TestReverseGross:
    """Test suite for computing the gross amount behind a requested net."""

    @pytest.mark.unit
    def test_known_value(self) -> None:
        assert reverse_gross(9925, TRANSFER_RATE, PAYOUT_RATE, PAYOUT_FLAT) == 10_000

    @pytest.mark.unit
    @pytest.mark.parametrize("net", [1, 99, 1000, 4321, 9925, 123_456, 10_000_000])
    def test_reverse_is_within_one_cent(self, net: int) -> None:
        fees = fees_for_net(net, TRANSFER_RATE, PAYOUT_RATE, PAYOUT_FLAT)
        assert abs(fees.net - net) <= 1

    @pytest.mark.unit
    @pytest.mark.parametrize("net", [0, -100])
    def test_non_positive_net_rejected(self, net: int) -> None:
        with pytest.raises(AmountTooLowForPayout):
            reverse_gross(net, TRANSFER_RATE, PAYOUT_RATE, PAYOUT_FLAT)
