"""
Defensive normalization of shop backend payloads.

The backend is inconsistent about response shapes: cart detail listings may
arrive as a bare list, wrapped in a ``$values`` container, or as a single
object. Individual entries may be missing fields. Nothing here raises; bad
input degrades to defaults or is skipped.
"""
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from cartsync.config import Config
from cartsync.models import CartLine, CartStatus, RecordInfo

logger = logging.getLogger(__name__)

WRAPPER_KEYS = ("$values", "values")

# Places the group name has been seen in cart detail entries
GROUP_NAME_PATHS = (
    ("groupName",),
    ("nameGroup",),
    ("group", "name"),
    ("record", "groupName"),
    ("record", "nameGroup"),
    ("record", "group", "name"),
    ("record", "recordGroup", "name"),
    ("recordGroup", "name"),
    ("record", "group", "groupName"),
    ("record", "recordGroup", "groupName"),
)
_INVALID_GROUP_NAMES = {"", "N/A", "string"}
_HTML_ENTITY = re.compile(r"&[^;]+;")
_WHITESPACE = re.compile(r"\s+")


def to_int(value: Any, default: int = 0) -> int:
    """Parse a non-negative integer, falling back to default"""
    if isinstance(value, bool) or value is None:
        return default
    try:
        number = int(Decimal(str(value)))
    except (InvalidOperation, ValueError, OverflowError):
        return default
    return max(0, number)


def to_decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    """Parse a non-negative decimal, falling back to default"""
    if isinstance(value, bool) or value is None:
        return default
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default
    if not number.is_finite() or number < 0:
        return default
    return number


def _first_str(data: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _first_present(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _dig(data: Dict[str, Any], path: tuple) -> Any:
    current: Any = data
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def extract_group_name(detail: Dict[str, Any], default: str = Config.PLACEHOLDER_GROUP) -> str:
    for path in GROUP_NAME_PATHS:
        value = _dig(detail, path)
        if isinstance(value, str) and value not in _INVALID_GROUP_NAMES:
            cleaned = _WHITESPACE.sub(" ", _HTML_ENTITY.sub("", value)).strip()
            if cleaned:
                return cleaned
    return default


def unwrap_collection(payload: Any) -> List[Any]:
    """
    Normalize a listing payload to a plain list.

    Accepts a bare list, a dict with a values wrapper, or a single object.
    Anything else is treated as empty.
    """
    if payload is None:
        return []
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in WRAPPER_KEYS:
            if key in payload:
                wrapped = payload[key]
                if isinstance(wrapped, list):
                    return wrapped
                if isinstance(wrapped, dict):
                    return [wrapped]
                return []
        if not payload:
            return []
        return [payload]

    logger.warning(f"Unexpected cart detail payload type: {type(payload).__name__}")
    return []


def _record_id_of(detail: Dict[str, Any]) -> int:
    for key in ("recordId", "idRecord", "record_id"):
        if key in detail:
            return to_int(detail.get(key))
    nested = detail.get("record")
    if isinstance(nested, dict):
        return to_int(nested.get("idRecord") or nested.get("recordId"))
    return 0


def normalize_cart_line(detail: Any) -> Optional[CartLine]:
    """Build a CartLine from one raw cart detail, or None if unusable"""
    if not isinstance(detail, dict):
        return None

    record_id = _record_id_of(detail)
    if record_id <= 0:
        return None

    return CartLine(
        record_id=record_id,
        title=_first_str(detail, "titleRecord", "recordTitle", "title") or Config.PLACEHOLDER_TITLE,
        image_url=_first_str(detail, "imageRecord", "image", "imageUrl") or Config.PLACEHOLDER_IMAGE,
        group_name=extract_group_name(detail),
        unit_price=to_decimal(detail.get("price")),
        quantity=to_int(_first_present(detail, "amount", "quantity")),
        stock=to_int(detail.get("stock")),
    )


def normalize_cart_details(payload: Any) -> List[CartLine]:
    """
    Turn any cart detail payload into cart lines.

    Entries without a record id and entries with zero quantity are dropped.
    Repeated record ids are merged into the first line, keeping insertion order.
    """
    lines: List[CartLine] = []
    positions: Dict[int, int] = {}
    skipped = 0

    for detail in unwrap_collection(payload):
        line = normalize_cart_line(detail)
        if line is None:
            skipped += 1
            continue
        if line.quantity == 0:
            continue

        if line.record_id in positions:
            index = positions[line.record_id]
            existing = lines[index]
            lines[index] = existing.model_copy(update={"quantity": existing.quantity + line.quantity})
            continue

        positions[line.record_id] = len(lines)
        lines.append(line)

    if skipped:
        logger.warning(f"Skipped {skipped} malformed cart detail entries")
    return lines


def normalize_record(payload: Any, record_id: int) -> Optional[RecordInfo]:
    """Build RecordInfo from a record payload, or None if it is not an object"""
    if isinstance(payload, dict) and any(key in payload for key in WRAPPER_KEYS):
        items = unwrap_collection(payload)
        payload = items[0] if items else None
    if not isinstance(payload, dict):
        return None

    return RecordInfo(
        record_id=_record_id_of(payload) or record_id,
        title=_first_str(payload, "titleRecord", "title") or "",
        image_url=_first_str(payload, "imageRecord", "image") or "",
        group_name=extract_group_name(payload, default=""),
        price=to_decimal(payload.get("price")),
        stock=to_int(payload.get("stock")),
    )


def normalize_cart_status(payload: Any) -> CartStatus:
    """Only an explicit enabled=false disables the cart"""
    if isinstance(payload, dict) and payload.get("enabled") is False:
        return CartStatus(enabled=False)
    return CartStatus(enabled=True)


def normalize_item_count(payload: Any) -> int:
    if isinstance(payload, dict):
        return to_int(payload.get("totalItems"))
    return to_int(payload)
