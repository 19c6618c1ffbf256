# shared/json_utils.py
"""
Centralized JSON parsing utilities for the story service.
Provides consistent error handling for JSONB columns and cached payloads.
"""

import json
import logging
from datetime import date, datetime
from typing import Any, Dict, List, TypeVar, Union
from uuid import UUID

logger = logging.getLogger(__name__)

T = TypeVar("T")


def safe_json_parse(
    value: Any, default: T = None, expected_type: type = None
) -> Union[T, Dict, List, str, int, float, bool]:
    """
    Safely parse JSON with consistent error handling.

    Args:
        value: Value to parse (string, dict, list, etc.)
        default: Default value to return on parse failure
        expected_type: Expected type for validation (dict, list, etc.)

    Returns:
        Parsed value or default on failure
    """
    # If already the expected type, return as-is
    if expected_type and isinstance(value, expected_type):
        return value

    # If not a string, return as-is or default
    if not isinstance(value, str):
        return value if value is not None else default

    try:
        parsed = json.loads(value)

        if expected_type and not isinstance(parsed, expected_type):
            logger.warning(f"Parsed JSON type {type(parsed)} doesn't match expected {expected_type}")
            return default

        return parsed

    except (json.JSONDecodeError, TypeError, ValueError) as e:
        logger.debug(f"JSON parse failed for value '{value[:100]}...': {e}")
        return default


def parse_jsonb_field(field_value: Any, default: Dict = None, field_name: str = "unknown") -> Dict:
    """
    Parse JSONB field from database with fallback to empty dict.

    Args:
        field_value: JSONB field value from database
        default: Default dict to return on parse failure
        field_name: Field name for logging purposes

    Returns:
        Parsed dictionary or default
    """
    if default is None:
        default = {}

    if field_value is None:
        return default

    if isinstance(field_value, dict):
        return field_value

    parsed = safe_json_parse(field_value, default, dict)

    if parsed == default and field_value:
        logger.warning(f"Failed to parse JSONB field '{field_name}': {field_value}")

    return parsed


def _json_default(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def safe_json_dumps(value: Any, default: str = "{}") -> str:
    """
    Serialize to JSON for JSONB columns and cache entries.

    UUIDs and datetimes are stringified; unserializable values fall back to default.
    """
    try:
        return json.dumps(value, default=_json_default)
    except (TypeError, ValueError) as e:
        logger.warning(f"JSON serialization failed: {e}")
        return default
