from decimal import Decimal
from typing import Optional

CENT = Decimal("0.01")


def cents_to_decimal(amount: Optional[int]) -> Decimal:
    """Square money amounts are integer minor units."""
    return (Decimal(amount or 0) / 100).quantize(CENT)
