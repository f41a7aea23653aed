"""Fixed-point credit amounts.

Credits cross the API as ``Decimal`` and are stored as integer millicredits.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from credits_service.exceptions import InvalidAmountError

MILLICREDITS_PER_CREDIT = 1000
CREDIT_QUANTUM = Decimal("0.001")
# Balance and amount columns are BIGINT
MAX_MILLICREDITS = 2**63 - 1

AmountLike = Decimal | int | float | str


def quantize_credits(value: AmountLike) -> Decimal:
    """Round a credit amount to the ledger's precision."""
    if isinstance(value, bool):
        raise InvalidAmountError(value)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmountError(value) from e
    if not amount.is_finite():
        raise InvalidAmountError(value)
    try:
        return amount.quantize(CREDIT_QUANTUM, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise InvalidAmountError(value) from e


def to_millicredits(value: AmountLike) -> int:
    """Convert credits to integer millicredits.

    Raises InvalidAmountError when the result does not fit a BIGINT column.
    """
    millicredits = int(quantize_credits(value) * MILLICREDITS_PER_CREDIT)
    if abs(millicredits) > MAX_MILLICREDITS:
        raise InvalidAmountError(value)
    return millicredits


def from_millicredits(value: int) -> Decimal:
    """Convert integer millicredits back to credits."""
    return (Decimal(value) / MILLICREDITS_PER_CREDIT).quantize(CREDIT_QUANTUM)


def require_positive(value: AmountLike) -> int:
    """Return the amount in millicredits, rejecting zero and negatives.

    Amounts that round to zero at ledger precision are rejected too.
    """
    millicredits = to_millicredits(value)
    if millicredits <= 0:
        raise InvalidAmountError(value)
    return millicredits
