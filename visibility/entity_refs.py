"""Entity types and instance-aware entity references.

A reference is written ``id`` (global, matches the id under any upstream
instance) or ``id:instanceId`` (scoped to one instance). Only this module
converts between the string form and :class:`EntityRef`.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class EntityType(str, Enum):
    SCENE = "scene"
    PERFORMER = "performer"
    STUDIO = "studio"
    TAG = "tag"
    GROUP = "group"
    GALLERY = "gallery"
    IMAGE = "image"

    @classmethod
    def parse(cls, raw: str) -> "EntityType":
        """Accept singular or plural names in any case (``tags`` -> TAG)."""
        if isinstance(raw, cls):
            return raw
        token = str(raw or "").strip().lower()
        try:
            return cls(token)
        except ValueError:
            pass
        singular = _PLURAL_ALIASES.get(token)
        if singular is None:
            raise ValueError(f"Unknown entity type: {raw!r}")
        return cls(singular)


_PLURAL_ALIASES = {
    "scenes": "scene",
    "performers": "performer",
    "studios": "studio",
    "tags": "tag",
    "groups": "group",
    "galleries": "gallery",
    "images": "image",
}


@dataclass(frozen=True, order=True)
class EntityRef:
    id: str
    instance_id: str = ""

    @property
    def is_global(self) -> bool:
        return self.instance_id == ""

    def __str__(self) -> str:
        return format_ref(self)


def parse_ref(raw: str) -> EntityRef:
    """Split on the first colon; the remainder (may be empty or hold colons) is the instance."""
    value = str(raw)
    entity_id, sep, instance_id = value.partition(":")
    if not sep:
        return EntityRef(value, "")
    return EntityRef(entity_id, instance_id)


def format_ref(ref: EntityRef) -> str:
    if not ref.instance_id:
        return ref.id
    return f"{ref.id}:{ref.instance_id}"


def matches(candidate: EntityRef, ref_filter: EntityRef) -> bool:
    """True when ``ref_filter`` selects ``candidate``: same id, and the filter is global or same-instance."""
    if candidate.id != ref_filter.id:
        return False
    return ref_filter.instance_id == "" or ref_filter.instance_id == candidate.instance_id
