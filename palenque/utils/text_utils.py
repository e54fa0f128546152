# palenque/utils/text_utils.py
import logging
from datetime import timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from palenque.errors import BadRequestError

log = logging.getLogger(__name__)

CENT = Decimal('0.01')

# --- CORNER NAME MAPPING ---
# Operators and clients send the corner in English or Spanish, sometimes
# abbreviated. Keys are lowercase; values are the canonical side stored in the DB.
SIDE_ALIASES = {
    "red": "red",
    "rojo": "red",
    "roja": "red",
    "r": "red",
    "blue": "blue",
    "azul": "blue",
    "b": "blue",
}

RESULT_ALIASES = dict(SIDE_ALIASES, **{
    "draw": "draw",
    "tablas": "draw",
    "empate": "draw",
    "cancelled": "cancelled",
    "canceled": "cancelled",
    "cancelada": "cancelled",
})


def normalize_side(value: str) -> str:
    """Returns 'red' or 'blue' for any accepted spelling of a corner."""
    if not value or not isinstance(value, str):
        raise BadRequestError("Side must be red or blue")
    side = SIDE_ALIASES.get(value.strip().lower())
    if side is None:
        log.debug(f"Unrecognised side value '{value}'")
        raise BadRequestError("Side must be red or blue")
    return side


def normalize_result(value: str) -> str:
    if not value or not isinstance(value, str):
        raise BadRequestError("Result must be red, blue, draw, or cancelled")
    result = RESULT_ALIASES.get(value.strip().lower())
    if result is None:
        raise BadRequestError("Result must be red, blue, draw, or cancelled")
    return result


def opposite_side(side: str) -> str:
    return 'blue' if side == 'red' else 'red'


def to_money(value, field='Amount') -> Decimal:
    """Parses a user supplied amount into a Decimal rounded to cents."""
    if value is None or isinstance(value, bool):
        raise BadRequestError(f"{field} is required")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise BadRequestError(f"{field} must be a number")
    if not amount.is_finite():
        raise BadRequestError(f"{field} must be a number")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def ensure_utc(dt):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt
