"""Registry of metered resources and their default quota windows.

Every resource the engine meters is declared here exactly once.  Text
resources are charged per character of content; image resources are
charged per generated image.  A resource missing from the registry has no
limit object and is therefore always denied.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, Field


class Window(str, Enum):
    """Time-scoped counter a quota is checked against."""

    MINUTE = "minute"
    DAY = "day"


WINDOWS: tuple[Window, ...] = (Window.MINUTE, Window.DAY)


class ResourceKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"


class WindowLimit(BaseModel):
    """Per-window quota.  ``None`` means unlimited, ``0`` means blocked."""

    minute: int | None = None
    day: int | None = None

    def get(self, window: Window) -> int | None:
        return getattr(self, window.value)


class MeteredResource(BaseModel):
    """A single entry of the resource registry."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    label: str
    kind: ResourceKind
    default_limits: WindowLimit
    resolutions: tuple[str, ...] = ()


def _text(model_id: str, label: str, minute: int | None, day: int | None) -> MeteredResource:
    return MeteredResource(
        id=model_id,
        label=label,
        kind=ResourceKind.TEXT,
        default_limits=WindowLimit(minute=minute, day=day),
    )


def _image(model_id: str, label: str, resolutions: tuple[str, ...]) -> MeteredResource:
    # Image generation is opt-in per user: blocked until limits are granted.
    return MeteredResource(
        id=model_id,
        label=label,
        kind=ResourceKind.IMAGE,
        default_limits=WindowLimit(minute=0, day=0),
        resolutions=resolutions,
    )


_RESOURCES: tuple[MeteredResource, ...] = (
    _text("gpt-3.5-turbo", "GPT-3.5 Turbo (4k context)", 10_000, None),
    _text("gpt-3.5-turbo-16k", "GPT-3.5 Turbo (16k context)", 10_000, None),
    _text("gpt-4", "GPT-4 (8k context)", 2_500, None),
    _text("gpt-4-1106-preview", "GPT-4 Turbo (128k context)", 4_000, 25_000),
    _text("gpt-4-vision-preview", "GPT-4V (128k context)", 2_500, 10_000),
    _image("dall-e-3", "DALL·E 3", ("1024x1024", "1024x1792", "1792x1024")),
    _image("dall-e-2", "DALL·E 2", ("256x256", "512x512", "1024x1024")),
)

CATALOG: Mapping[str, MeteredResource] = MappingProxyType({r.id: r for r in _RESOURCES})


def get_resource(model: str) -> MeteredResource | None:
    """Return the registry entry for *model*, or ``None`` if unknown."""
    return CATALOG.get(model)


def resources_of_kind(kind: ResourceKind) -> list[MeteredResource]:
    return [r for r in _RESOURCES if r.kind == kind]
