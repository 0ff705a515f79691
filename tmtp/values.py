"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Coercion helpers for loosely typed export values.

Exported rows carry numbers as strings, booleans as 0/1 or "yes", timestamps
in several formats and custom field values as ids, names or delimited lists.
These helpers turn them into the values the target tables expect and never
raise on bad input: they return ``None`` instead.
"""

import json
import math
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

MAX_INT_32 = 2_147_483_647
MIN_INT_32 = -2_147_483_648

TRUE_STRINGS = frozenset({"1", "true", "yes", "y", "on"})

SYSTEM_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")

# (factor, adjustment label) tried in order when an estimate overflows int32
_ESTIMATE_SCALES = (
    (1_000_000, "microseconds"),
    (1_000_000_000, "nanoseconds"),
    (1_000, "milliseconds"),
)

WarningCallback = Callable[[str, dict[str, Any]], None]


def to_number(value: Any) -> float | None:
    """Parse a finite number, or return None."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def to_int(value: Any) -> int | None:
    """Parse a number and truncate it toward zero."""
    parsed = to_number(value)
    return None if parsed is None else int(parsed)


def to_string(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in TRUE_STRINGS
    return bool(value)


def to_datetime(value: Any) -> datetime | None:
    """
    Parse a timestamp into a naive UTC datetime.

    Strings are tried as given, with spaces replaced by ``T``, and finally with
    a ``Z`` suffix. Numbers are epoch milliseconds.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return None
        parsed = None
        with_t = trimmed.replace(" ", "T")
        for candidate in (trimmed, with_t, f"{with_t}Z"):
            try:
                parsed = datetime.fromisoformat(candidate)
                break
            except ValueError:
                continue
        if parsed is None:
            return None
    else:
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_iso_string(value: Any) -> str | None:
    parsed = to_datetime(value)
    return None if parsed is None else parsed.isoformat() + "Z"


def microseconds_to_seconds(value: Any, floor: bool = False) -> int | None:
    """Durations in the export are microseconds; the target stores seconds."""
    parsed = to_number(value)
    if parsed is None:
        return None
    seconds = parsed / 1_000_000
    return math.floor(seconds) if floor else round(seconds)


def normalize_estimate(value: Any) -> tuple[int | None, str | None]:
    """
    Fit an estimate into a 32-bit integer.

    Returns the value and the name of the adjustment applied, if any. Values
    too large are assumed to be in microseconds, nanoseconds or milliseconds,
    in that order; when none of those fit the value is clamped.
    """
    parsed = to_number(value)
    if parsed is None:
        return None, None

    rounded = round(parsed)
    if abs(rounded) <= MAX_INT_32:
        return rounded, None

    for factor, adjustment in _ESTIMATE_SCALES:
        scaled = round(parsed / factor)
        if abs(scaled) <= MAX_INT_32:
            return scaled, adjustment

    return (MAX_INT_32 if parsed > 0 else MIN_INT_32), "clamped"


def generate_system_name(value: str) -> str:
    """Derive an identifier-safe system name from a display name."""
    normalized = re.sub(r"\s+", "_", value.lower())
    normalized = re.sub(r"[^a-z0-9_]", "", normalized)
    normalized = re.sub(r"^[^a-z]+", "", normalized)
    return normalized or "status"


def is_valid_system_name(value: Any) -> bool:
    return isinstance(value, str) and bool(SYSTEM_NAME_PATTERN.match(value))


def normalize_color_hex(value: str | None) -> str | None:
    if not value:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    upper = trimmed.upper()
    return upper if upper.startswith("#") else f"#{upper}"


def convert_to_array(value: Any) -> list[Any]:
    """Accept a list, a JSON array string or a ``;``/``,``/``|`` delimited string."""
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return []
        try:
            parsed = json.loads(trimmed)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            return parsed
        return [entry.strip() for entry in re.split(r"[;,|]", trimmed) if entry.strip()]
    return [value]


@dataclass
class FieldMetadata:
    """A target case or result field as seen by value normalization."""

    field_id: int
    system_name: str
    display_name: str
    field_type: str
    options_by_name: dict[str, int] = field(default_factory=dict)

    @property
    def option_ids(self) -> set[int]:
        return set(self.options_by_name.values())

    @property
    def is_multi_select(self) -> bool:
        return re.sub(r"\s+", "-", self.field_type.lower()) == "multi-select"


def _option_id_from_text(text: str, metadata: FieldMetadata) -> int | None:
    numeric = to_number(text)
    if numeric is not None and numeric.is_integer() and int(numeric) in metadata.option_ids:
        return int(numeric)
    return metadata.options_by_name.get(text.lower())


def normalize_dropdown_value(
    value: Any, metadata: FieldMetadata, log_warning: WarningCallback
) -> int | None:
    """Resolve a dropdown value given as an option id or option name."""
    if value is None or value == "":
        return None

    if isinstance(value, int) and not isinstance(value, bool) and value in metadata.option_ids:
        return value

    text = str(value).strip()
    if not text:
        return None

    option_id = _option_id_from_text(text, metadata)
    if option_id is None:
        log_warning(
            "Unrecognized dropdown option",
            {
                "field": metadata.system_name,
                "display_name": metadata.display_name,
                "value": value,
                "available_options": sorted(metadata.options_by_name),
            },
        )
    return option_id


def normalize_multi_select_value(
    value: Any, metadata: FieldMetadata, log_warning: WarningCallback
) -> list[int] | None:
    """Resolve every entry of a multi-select value; unknown entries are dropped."""
    if value is None or value == "":
        return None

    option_ids: list[int] = []
    for entry in convert_to_array(value):
        if entry is None or entry == "":
            continue
        if isinstance(entry, int) and not isinstance(entry, bool) and entry in metadata.option_ids:
            option_id = entry
        elif isinstance(entry, str):
            trimmed = entry.strip()
            if not trimmed:
                continue
            option_id = _option_id_from_text(trimmed, metadata)
            if option_id is None:
                log_warning(
                    "Unrecognized multi-select option",
                    {
                        "field": metadata.system_name,
                        "display_name": metadata.display_name,
                        "value": trimmed,
                        "available_options": sorted(metadata.options_by_name),
                    },
                )
                continue
        else:
            log_warning(
                "Unsupported multi-select option value",
                {
                    "field": metadata.system_name,
                    "display_name": metadata.display_name,
                    "value": entry,
                    "entry_type": type(entry).__name__,
                },
            )
            continue
        if option_id not in option_ids:
            option_ids.append(option_id)

    return option_ids or None


def normalize_field_value(
    value: Any,
    metadata: FieldMetadata,
    log_warning: WarningCallback,
    to_document: Callable[[Any], dict | None],
    source_value_names: dict[int, str] | None = None,
) -> Any:
    """
    Convert a raw custom field value to the storage shape of its field type.

    ``source_value_names`` maps export field value ids to option names so
    dropdown and multi-select values exported as ids resolve by name.
    """
    if value is None:
        return None

    field_type = metadata.field_type.lower()

    if "text long" in field_type or "text (long)" in field_type:
        return to_document(value)
    if "text string" in field_type or field_type == "string":
        return to_string(value)
    if field_type == "integer":
        return to_int(value)
    if field_type == "number":
        return to_number(value)
    if field_type == "checkbox":
        return to_bool(value)
    if field_type == "dropdown":
        if source_value_names and isinstance(value, int) and value in source_value_names:
            value = source_value_names[value]
        return normalize_dropdown_value(value, metadata, log_warning)
    if metadata.is_multi_select:
        if source_value_names:
            entries = value if isinstance(value, list) else [value]
            value = [
                source_value_names.get(entry, entry) if isinstance(entry, int) else entry
                for entry in entries
            ]
        return normalize_multi_select_value(value, metadata, log_warning)
    if field_type == "date":
        return to_iso_string(value)
    if field_type == "link":
        return to_string(value)
    if field_type == "steps":
        # Steps come from their own dataset
        return None
    return value
