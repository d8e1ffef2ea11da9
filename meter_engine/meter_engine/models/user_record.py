"""Per-user quota record: limits, window counters and billing deltas.

A ``UserRecord`` is the only durable state the ledger mutates.  Stored
records are always merged over :func:`default_record_data` before
validation so that resources added to the catalog after a record was
written receive zeroed counters without losing existing values.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from meter_engine.models.catalog import (
    CATALOG,
    WINDOWS,
    ResourceKind,
    Window,
    WindowLimit,
)


class WindowUsage(BaseModel):
    """Usage accumulated in each window since its last reset."""

    minute: int = 0
    day: int = 0

    def get(self, window: Window) -> int:
        return getattr(self, window.value)

    def add(self, window: Window, amount: int) -> None:
        setattr(self, window.value, max(0, self.get(window) + amount))

    def reset(self, window: Window) -> None:
        setattr(self, window.value, 0)


class UserRecord(BaseModel):
    """Quota and billing state for one user.

    Attributes
    ----------
    active:
        Whether the account may use metered resources at all.
    billing_id:
        External billing customer reference.  ``None`` disables metering.
    limits / used / usage_since_last_record:
        Text resources, charged per character.
    image_limits / image_used / usage_image_since_last_record:
        Image resources, charged per generated image.
    """

    # Unknown fields written by newer deployments survive a load/save cycle.
    model_config = ConfigDict(extra="allow")

    active: bool = False
    billing_id: str | None = None

    limits: dict[str, WindowLimit | None] = Field(default_factory=dict)
    used: dict[str, WindowUsage] = Field(default_factory=dict)
    usage_since_last_record: dict[str, int] = Field(default_factory=dict)

    image_limits: dict[str, WindowLimit | None] = Field(default_factory=dict)
    image_used: dict[str, WindowUsage] = Field(default_factory=dict)
    usage_image_since_last_record: dict[str, int] = Field(default_factory=dict)

    def limits_for(self, kind: ResourceKind) -> dict[str, WindowLimit | None]:
        return self.image_limits if kind == ResourceKind.IMAGE else self.limits

    def used_for(self, kind: ResourceKind) -> dict[str, WindowUsage]:
        return self.image_used if kind == ResourceKind.IMAGE else self.used

    def deltas_for(self, kind: ResourceKind) -> dict[str, int]:
        return self.usage_image_since_last_record if kind == ResourceKind.IMAGE else self.usage_since_last_record

    def has_minute_usage(self) -> bool:
        """True if any resource still has a non-zero minute counter."""
        counters = list(self.used.values()) + list(self.image_used.values())
        return any(c.minute for c in counters)

    @model_validator(mode="after")
    def _ensure_counters(self) -> UserRecord:
        # Every limited resource needs counters, even ones unknown to the catalog.
        for kind in ResourceKind:
            used = self.used_for(kind)
            deltas = self.deltas_for(kind)
            for model in self.limits_for(kind):
                used.setdefault(model, WindowUsage())
                deltas.setdefault(model, 0)
        return self


def default_record_data() -> dict[str, Any]:
    """Return the structural default skeleton as plain JSON data."""
    data: dict[str, Any] = {
        "active": False,
        "billing_id": None,
        "limits": {},
        "used": {},
        "usage_since_last_record": {},
        "image_limits": {},
        "image_used": {},
        "usage_image_since_last_record": {},
    }
    for resource in CATALOG.values():
        if resource.kind == ResourceKind.IMAGE:
            limits_key, used_key, delta_key = "image_limits", "image_used", "usage_image_since_last_record"
        else:
            limits_key, used_key, delta_key = "limits", "used", "usage_since_last_record"
        data[limits_key][resource.id] = resource.default_limits.model_dump()
        data[used_key][resource.id] = {w.value: 0 for w in WINDOWS}
        data[delta_key][resource.id] = 0
    return data


def merge_defaults(defaults: dict[str, Any], stored: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge *defaults* under *stored*.

    Keys present only in *defaults* are injected; values already present in
    *stored* are never overwritten.  Neither argument is mutated.
    """
    merged = dict(stored)
    for key, default_value in defaults.items():
        if key not in merged:
            merged[key] = default_value
        elif isinstance(default_value, dict) and isinstance(merged[key], dict):
            merged[key] = merge_defaults(default_value, merged[key])
    return merged


def record_from_stored(stored: dict[str, Any] | None) -> UserRecord:
    """Build a ``UserRecord`` from raw stored JSON (or ``None``)."""
    if stored is None:
        return UserRecord.model_validate(default_record_data())
    return UserRecord.model_validate(merge_defaults(default_record_data(), stored))


def record_to_stored(record: UserRecord) -> dict[str, Any]:
    return record.model_dump(mode="json")
