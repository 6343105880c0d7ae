"""Raw producer payload -> :class:`PositionSample`."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

import pydantic

from pyfleettrack.exceptions import TrackingValidationError
from pyfleettrack.ingestion.normalize import first_present, safe_float, safe_str, unwrap_payload
from pyfleettrack.models.position import PositionSample


def _error_field(exc: pydantic.ValidationError) -> str:
    errors = exc.errors()
    if not errors or not errors[0].get("loc"):
        return ""
    return str(errors[0]["loc"][0])


def parse_position(data: PositionSample | Mapping[str, Any]) -> PositionSample:
    """Build a validated sample from a producer payload.

    Accepts camelCase or snake_case keys, ``lat``/``lng``/``lon``
    shorthands, a ``timestamp`` alias for ``recordedAt`` and
    ``{"position": {...}}`` envelopes as sent by mobile clients.

    Raises
    ------
    TrackingValidationError
        If the payload is missing fields or violates a range invariant.
    """
    if isinstance(data, PositionSample):
        return data
    if not isinstance(data, Mapping):
        raise TrackingValidationError(f"Position payload must be a mapping, got {type(data).__name__}")

    flat = dict(unwrap_payload(data))
    numeric = {
        "latitude": first_present(flat, "latitude", "lat"),
        "longitude": first_present(flat, "longitude", "lng", "lon"),
        "heading": first_present(flat, "heading", "bearing"),
        "speed": first_present(flat, "speed"),
        "accuracy": first_present(flat, "accuracy"),
    }
    for field, raw in numeric.items():
        if raw is None:
            continue
        value = safe_float(raw)
        if value is None:
            raise TrackingValidationError(f"{field} is not a number: {raw!r}", field=field)
        flat[field] = value
    for alias in ("lat", "lng", "lon", "bearing"):
        flat.pop(alias, None)

    log_id = first_present(flat, "sourceLogId", "source_log_id")
    if log_id is not None:
        flat.pop("source_log_id", None)
        flat["sourceLogId"] = safe_str(log_id)

    try:
        return PositionSample.model_validate(flat)
    except pydantic.ValidationError as exc:
        raise TrackingValidationError(f"Invalid position payload: {exc}", field=_error_field(exc)) from exc


def parse_positions(batch: Iterable[PositionSample | Mapping[str, Any]]) -> list[PositionSample]:
    """Validate a whole batch up front; one bad entry rejects all of them."""
    samples: list[PositionSample] = []
    for index, item in enumerate(batch):
        try:
            samples.append(parse_position(item))
        except TrackingValidationError as exc:
            raise TrackingValidationError(f"Batch entry {index}: {exc}", field=exc.field) from exc
    return samples
