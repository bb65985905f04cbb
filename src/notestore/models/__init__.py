"""Data models for the notestore persistence core."""

from notestore.models.schema import (
    Collection,
    Document,
    DocumentStatus,
    Entity,
    EntityKind,
    LabelColorMap,
    Preferences,
)

__all__ = [
    "Collection",
    "Document",
    "DocumentStatus",
    "Entity",
    "EntityKind",
    "LabelColorMap",
    "Preferences",
]
