"""Payment challenge generation.

A challenge is built from the resource descriptor alone: no ledger reads and
no token state are involved, so a 402 never reveals anything about existing
tokens.

Unit conversion: prices are decimal strings in whole ledger units (SUI);
1 SUI = 10**9 MIST. The conversion rounds down and is done with Decimal,
never with binary floats.
"""

from __future__ import annotations

import secrets
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Union

from .config import ContractIdentifiers
from .errors import PW_E_INVALID_PRICE, paywall_error
from .models import PaymentChallenge, ResourceDescriptor, normalize_resource_path

SMALLEST_UNIT_FACTOR = 10 ** 9
NONCE_BYTES = 16


def price_to_smallest_unit(price: Union[str, int, Decimal]) -> int:
    """Convert a whole-unit decimal price to the ledger's smallest unit.

    Raises PaywallError(InvalidPrice) for non-numeric, non-finite or
    non-positive prices, and for prices below one smallest unit.
    """
    try:
        d = Decimal(str(price).strip())
    except (InvalidOperation, ValueError):
        raise paywall_error(PW_E_INVALID_PRICE, "price is not a decimal number", price=str(price))
    if not d.is_finite():
        raise paywall_error(PW_E_INVALID_PRICE, "price must be finite", price=str(price))
    if d <= 0:
        raise paywall_error(PW_E_INVALID_PRICE, "price must be positive", price=str(price))
    smallest = int((d * SMALLEST_UNIT_FACTOR).to_integral_value(rounding=ROUND_DOWN))
    if smallest <= 0:
        raise paywall_error(PW_E_INVALID_PRICE, "price is below the smallest unit", price=str(price))
    return smallest


def smallest_unit_to_price(amount: int) -> str:
    """Inverse of price_to_smallest_unit, rendered without exponent or trailing zeros."""
    d = Decimal(int(amount)) / Decimal(SMALLEST_UNIT_FACTOR)
    return format(d.normalize(), "f")


def generate_nonce() -> str:
    return secrets.token_hex(NONCE_BYTES)


class ChallengeGenerator:
    def __init__(self, contract: ContractIdentifiers):
        self.contract = contract

    def generate(self, resource: ResourceDescriptor) -> PaymentChallenge:
        return PaymentChallenge(
            price=resource.price,
            price_in_smallest_unit=price_to_smallest_unit(resource.price),
            receiver_address=resource.receiver_address,
            contract_identifiers=self.contract.to_challenge_dict(),
            domain=resource.domain,
            resource_path=normalize_resource_path(resource.resource_path),
            nonce=generate_nonce(),
        )
