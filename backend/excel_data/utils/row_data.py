"""Serialization of row column-maps.

A row's cells are stored as a JSON object mapping column name to string
value. Key order is preserved so the stored text follows the sheet's column
order.
"""
import json
from typing import Any, Dict, Mapping, Optional


class RowDataFormatError(ValueError):
    """Stored row data is not a JSON object of column -> value."""


def normalize_row_data(data: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Coerce incoming cell values to strings; None becomes an empty cell."""
    if not data:
        return {}
    return {str(key): "" if value is None else str(value) for key, value in data.items()}


def serialize_row_data(data: Mapping[str, Any]) -> str:
    return json.dumps(normalize_row_data(data), ensure_ascii=False)


def deserialize_row_data(raw: Optional[str]) -> Dict[str, str]:
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as e:
        raise RowDataFormatError(f"Row data is not valid JSON: {e}") from e
    if not isinstance(decoded, dict):
        raise RowDataFormatError("Row data must be a JSON object")
    return normalize_row_data(decoded)


def preview(raw: Optional[str], length: int) -> str:
    """Truncate serialized row data for history listings."""
    if not raw:
        return ""
    if len(raw) <= length:
        return raw
    return raw[:length] + "..."
