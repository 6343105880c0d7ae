"""Position sample model."""

from __future__ import annotations

from datetime import datetime
from typing import ClassVar

from pydantic import Field, field_validator, model_validator

from pyfleettrack._constants import COORDINATE_PRECISION
from pyfleettrack.models._base import TrackingBaseModel, TrackingEnum, UtcDatetime


class EntityType(TrackingEnum):
    """Kind of tracked object."""

    DRIVER = "driver"
    VEHICLE = "vehicle"
    LOAD = "load"
    SMART_HUB = "smart_hub"


class PositionSource(TrackingEnum):
    """Producer that reported a position."""

    MOBILE_APP = "mobile_app"
    ELD = "eld"
    GPS_DEVICE = "gps_device"
    MANUAL = "manual"
    SYSTEM = "system"


class PositionSample(TrackingBaseModel):
    """One observed position of an entity.

    ``created_at`` is ``None`` until the sample is persisted; the store
    stamps it on append. Coordinates are rounded to 6 decimal places.
    """

    _KEY_ALIASES: ClassVar[dict[str, str]] = {
        "lat": "latitude",
        "lng": "longitude",
        "lon": "longitude",
        "timestamp": "recordedAt",
    }

    entity_id: str = Field(min_length=1)
    entity_type: EntityType
    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    heading: float | None = Field(default=None, ge=0.0, lt=360.0)
    """Degrees clockwise from north."""
    speed: float | None = Field(default=None, ge=0.0)
    """km/h."""
    accuracy: float | None = Field(default=None, ge=0.0)
    """Meters."""
    source: PositionSource = PositionSource.SYSTEM
    recorded_at: UtcDatetime
    created_at: UtcDatetime | None = None
    source_log_id: str | None = None

    @field_validator("entity_type", "source", mode="before")
    @classmethod
    def _lower_enum(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("latitude", "longitude")
    @classmethod
    def _round_coordinate(cls, value: float) -> float:
        return round(value, COORDINATE_PRECISION)

    @model_validator(mode="after")
    def _check_persist_order(self) -> PositionSample:
        if self.created_at is not None and self.recorded_at > self.created_at:
            raise ValueError("recorded_at must not be later than created_at")
        return self

    @property
    def key(self) -> tuple[EntityType, str]:
        """Subscription/cache key ``(entity_type, entity_id)``."""
        return (self.entity_type, self.entity_id)

    @property
    def coordinates(self) -> tuple[float, float]:
        """``(latitude, longitude)`` pair."""
        return (self.latitude, self.longitude)

    def persisted(self, created_at: datetime) -> PositionSample:
        """Return a validated copy stamped with *created_at*."""
        data = self.model_dump()
        data["created_at"] = created_at
        return PositionSample.model_validate(data)
