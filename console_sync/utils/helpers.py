"""
Utility helper functions for safe data handling.
"""
from datetime import datetime, timezone
from typing import Any, Optional


def safe_str(value: Any, default: str = "") -> str:
    """
    Safely convert value to string, handling None.

    Args:
        value: Any value to convert
        default: Default string if value is None

    Returns:
        String representation or default
    """
    if value is None:
        return default
    return str(value)


def safe_lower(value: Any) -> str:
    """
    Safely lowercase a value, handling None.

    Returns:
        Lowercased string or empty string if None
    """
    if value is None:
        return ""
    return str(value).lower()


def safe_int(value: Any, default: int = 0) -> int:
    """
    Safely convert value to int, handling None and invalid values.

    Args:
        value: Any value to convert
        default: Default int if conversion fails

    Returns:
        Integer or default
    """
    if value is None:
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def safe_float(value: Any, default: float = 0.0) -> float:
    """
    Safely convert value to float, handling None and invalid values.

    Args:
        value: Any value to convert
        default: Default float if conversion fails

    Returns:
        Float or default
    """
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (ValueError, TypeError):
        return default


def safe_timestamp(value: Any) -> float:
    """
    Parse an ISO-8601 string (or epoch number) into epoch seconds.

    Missing or unparseable values map to 0.0 (the epoch) so they sort first.
    """
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def pick_field(record: Any, *names: str) -> Optional[Any]:
    """
    Return the first non-None field among names.

    Looks on the record itself first, then on its nested "payload" mapping
    (the items endpoint wraps item data that way).
    """
    if not isinstance(record, dict):
        return None
    payload = record.get("payload")
    sources = [record]
    if isinstance(payload, dict):
        sources.append(payload)
    for source in sources:
        for name in names:
            value = source.get(name)
            if value is not None:
                return value
    return None
