"""
Payout fee calculation.

Two fees apply to every payout, both in integer cents:

- transfer fee: ``ceil(gross * p1)``, charged moving funds to the connected account
- payout fee: ``round_half_up((gross - gross * p1) * p2 + f2)``, charged by the bank payout

``reverse_gross`` inverts the calculation so a caller can ask for a net
amount and learn which gross balance funds it.
"""
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal

from billing_events.core.errors import AmountTooLowForPayout


@dataclass(frozen=True)
class PayoutFees:
    gross: int
    transfer_fee: int
    payout_fee: int

    @property
    def fees_amount(self) -> int:
        return self.transfer_fee + self.payout_fee

    @property
    def net(self) -> int:
        return self.gross - self.fees_amount


def _ceil(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def _round_half_up(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_HALF_UP))


def calculate_fees(
    gross: int, transfer_rate: Decimal, payout_rate: Decimal, payout_flat: int
) -> PayoutFees:
    """
    Split a gross amount into fees and the net amount paid out.

    Raises:
        AmountTooLowForPayout: If fees leave nothing to pay out
    """
    amount = Decimal(gross)
    transfer_fee = _ceil(amount * transfer_rate)
    payout_fee = _round_half_up((amount - amount * transfer_rate) * payout_rate + payout_flat)
    fees = PayoutFees(gross=gross, transfer_fee=transfer_fee, payout_fee=payout_fee)

    if fees.net <= 0:
        raise AmountTooLowForPayout(
            f"Fees of {fees.fees_amount} consume the whole amount of {gross}",
            gross=gross,
            fees_amount=fees.fees_amount,
        )
    return fees


def reverse_gross(
    net: int, transfer_rate: Decimal, payout_rate: Decimal, payout_flat: int
) -> int:
    """
    Smallest gross amount whose payout is ``net``, within one cent.

    Raises:
        AmountTooLowForPayout: If ``net`` is not positive
    """
    if net <= 0:
        raise AmountTooLowForPayout(f"Requested payout {net} must be positive", net=net)

    divisor = (1 - transfer_rate) * (1 - payout_rate)
    return _ceil((Decimal(net) + payout_flat) / divisor)


def fees_for_net(
    net: int, transfer_rate: Decimal, payout_rate: Decimal, payout_flat: int
) -> PayoutFees:
    gross = reverse_gross(net, transfer_rate, payout_rate, payout_flat)
    return calculate_fees(gross, transfer_rate, payout_rate, payout_flat)
