"""Base model for control-plane payloads.

Every wire model inherits from :class:`BridgeModel` which provides:

* ``alias_generator=to_camel`` so the control plane's camelCase keys map
  to snake_case fields, and :meth:`BridgeModel.to_wire` dumps them back.
* ``populate_by_name`` so tests and internal code can construct models
  with Python field names.
* Frozen instances; updates go through ``model_copy(update=...)``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(UTC)


def _ensure_tz_aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_ensure_tz_aware)]
"""Datetime that is always timezone-aware (naive input is taken as UTC)."""

OptionalUtcDatetime = Annotated[datetime | None, AfterValidator(_ensure_tz_aware)]


class BridgeModel(BaseModel):
    """Base for all bridge wire and state models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_wire(self) -> dict[str, Any]:
        """JSON-compatible dict using camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)
