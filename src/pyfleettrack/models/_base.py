"""Base model and timestamp handling for tracking payloads.

Every tracking model inherits from :class:`TrackingBaseModel` which
provides:

* ``alias_generator=to_camel`` so camelCase wire keys map
  automatically to snake_case fields.
* A ``model_validator(mode="before")`` that strips placeholder values
  (``""``, ``"--"``, NaN) so the field default is used, and applies the
  per-class ``_KEY_ALIASES`` renames.

Timestamps go through :data:`UtcDatetime`, which accepts aware or naive
datetimes, ISO-8601 strings and epoch seconds **or** milliseconds, and
always yields an aware UTC datetime.
"""

from __future__ import annotations

import enum
import math
from datetime import UTC, datetime
from typing import Annotated, Any, ClassVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, model_validator
from pydantic.alias_generators import to_camel

# Placeholder strings upstream producers use for "not available".
_SENTINELS = frozenset({"", "--", "NaN", "nan", "null"})

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def parse_timestamp(value: Any) -> datetime | None:
    """Convert an ISO string or epoch number (seconds or ms) to an aware UTC datetime.

    Naive datetimes are assumed to already be in UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    if isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(value, (int, float)):
        ts = float(value)
        if ts >= _MS_THRESHOLD:
            ts /= 1000.0
        return datetime.fromtimestamp(ts, tz=UTC)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return parse_timestamp(datetime.fromisoformat(text))
    raise ValueError(f"unsupported timestamp value: {value!r}")


UtcDatetime = Annotated[datetime, BeforeValidator(parse_timestamp)]
"""Annotated type that coerces any supported timestamp form to an aware UTC datetime."""


def utcnow() -> datetime:
    return datetime.now(UTC)


class TrackingEnum(enum.StrEnum):
    """Base for wire enums.

    Lookup is case-insensitive so ``"VEHICLE"`` and ``"vehicle"`` both
    resolve to the same member.
    """

    @classmethod
    def _missing_(cls, value: object) -> TrackingEnum | None:
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return None


class TrackingBaseModel(BaseModel):
    """Base for tracking models.

    Handles:
    * camelCase → snake_case via ``alias_generator=to_camel``
    * placeholder values (``""``, ``"--"``, NaN) → dropped so the field
      default is used instead
    * legacy key renames via ``_KEY_ALIASES``
    """

    _KEY_ALIASES: ClassVar[dict[str, str]] = {}

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    @staticmethod
    def _clean_dict(values: dict[str, Any], aliases: dict[str, str] | None = None) -> dict[str, Any]:
        working = dict(values)
        if aliases:
            for old_key, new_key in aliases.items():
                if old_key in working and new_key not in working:
                    working[new_key] = working.pop(old_key)

        cleaned: dict[str, Any] = {}
        for key, value in working.items():
            if value is None:
                continue
            if isinstance(value, str) and value.strip() in _SENTINELS:
                continue
            if isinstance(value, float) and math.isnan(value):
                continue
            cleaned[key] = value
        return cleaned

    @model_validator(mode="before")
    @classmethod
    def _clean_values(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        return TrackingBaseModel._clean_dict(values, cls._KEY_ALIASES)
