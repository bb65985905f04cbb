"""Data models for the notestore persistence core."""

import datetime
import os
import re
import threading
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set, Type, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
)
from pydantic.alias_generators import to_camel

from notestore.exceptions import ErrorCode, InvalidEntityError

# Valid entity IDs double as file names in the host file service
SAFE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-]+$")

PREFERENCES_ID = "preferences"
LABEL_COLORS_ID = "label_colors"


def validate_safe_path_component(value: str, field_name: str = "value") -> str:
    """Validate that a value is safe to use as a filesystem path component.

    Rejects empty values, path separators, parent directory references
    and any characters outside alphanumeric, underscore and hyphen.

    Raises:
        ValueError: If the value contains unsafe characters
    """
    if not value:
        raise ValueError(f"{field_name} cannot be empty")

    if ".." in value:
        raise ValueError(f"{field_name} cannot contain '..' (path traversal)")

    if "/" in value or "\\" in value:
        raise ValueError(f"{field_name} cannot contain path separators")

    if not SAFE_ID_PATTERN.match(value):
        raise ValueError(
            f"{field_name} contains invalid characters. "
            "Only alphanumeric characters, underscores and hyphens are allowed."
        )

    return value


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    Legacy blobs were written with naive ISO strings; those are assumed
    to be UTC.
    """
    if dt_value is None:
        return None
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


# Counter for same-microsecond uniqueness (seeded from PID for cross-process safety)
_id_lock = threading.Lock()
_last_timestamp = 0
_counter = (os.getpid() * 7) % 1_000_000


def generate_id() -> str:
    """Generate a timestamp-based ID with guaranteed uniqueness.

    Returns:
        A string in format "YYYYMMDDTHHMMSSsssssscccccc" where ssssss is the
        microsecond component and cccccc a counter for IDs generated within
        the same microsecond.
    """
    global _last_timestamp, _counter

    with _id_lock:
        now = utc_now()
        current_timestamp = int(now.timestamp() * 1_000_000)

        if current_timestamp == _last_timestamp:
            _counter += 1
        else:
            _last_timestamp = current_timestamp
            _counter = (os.getpid() * 7) % 1_000_000

        _counter %= 1_000_000

        date_time = now.strftime("%Y%m%dT%H%M%S")
        return f"{date_time}{now.microsecond:06d}{_counter:06d}"


class EntityKind(str, Enum):
    """The four kinds of persisted entities."""

    DOCUMENTS = "documents"
    COLLECTIONS = "collections"
    PREFERENCES = "preferences"
    LABEL_COLORS = "label_colors"

    @property
    def is_singleton(self) -> bool:
        """Preferences and label colours occupy a single slot."""
        return self in (EntityKind.PREFERENCES, EntityKind.LABEL_COLORS)


class DocumentStatus(str, Enum):
    """Workflow status of a document."""

    DRAFT = "draft"
    IN_PROGRESS = "in-progress"
    REVIEW = "review"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class _Entity(BaseModel):
    """Shared model configuration.

    On-disk JSON uses camelCase keys; either spelling is accepted on input.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
        extra="ignore",
    )

    def to_record(self) -> Dict[str, Any]:
        """Serialize to the JSON-ready record written by every backend."""
        return self.model_dump(mode="json", by_alias=True)


class Document(_Entity):
    """A single note; the unit of debounced persistence."""

    id: str = Field(default_factory=generate_id, frozen=True)
    title: str = ""
    body: str = ""
    collection_ref: Optional[str] = None
    labels: Set[str] = Field(default_factory=set)
    status: DocumentStatus = DocumentStatus.DRAFT
    pinned: bool = False
    trashed: bool = False
    trashed_at: Optional[datetime.datetime] = None
    created_at: datetime.datetime = Field(default_factory=utc_now, frozen=True)
    updated_at: datetime.datetime = Field(default_factory=utc_now)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return validate_safe_path_component(v, "Document ID")

    @field_validator("created_at", "updated_at", "trashed_at")
    @classmethod
    def validate_timestamps(cls, v: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
        return ensure_timezone_aware(v)

    @field_serializer("labels")
    def serialize_labels(self, labels: Set[str]) -> List[str]:
        # Stable ordering keeps files diffable
        return sorted(labels)

    def trashed_copy(self) -> "Document":
        """Return a soft-deleted copy (flag flip, no physical deletion)."""
        return self.model_copy(update={"trashed": True, "trashed_at": utc_now()})

    def restored_copy(self) -> "Document":
        """Return a copy brought back from the trash."""
        return self.model_copy(update={"trashed": False, "trashed_at": None})


class Collection(_Entity):
    """A notebook grouping documents; may be nested via parent_ref."""

    id: str = Field(default_factory=generate_id, frozen=True)
    name: str
    color: str = "blue"
    parent_ref: Optional[str] = None
    created_at: datetime.datetime = Field(default_factory=utc_now, frozen=True)
    updated_at: datetime.datetime = Field(default_factory=utc_now)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return validate_safe_path_component(v, "Collection ID")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Collection name cannot be empty")
        return v

    @field_validator("created_at", "updated_at")
    @classmethod
    def validate_timestamps(cls, v: datetime.datetime) -> datetime.datetime:
        return ensure_timezone_aware(v)


class Preferences(_Entity):
    """Flat settings bag stored in a single slot."""

    values: Dict[str, Any] = Field(default_factory=dict)

    @property
    def id(self) -> str:
        return PREFERENCES_ID

    def to_record(self) -> Dict[str, Any]:
        return dict(self.values)


class LabelColorMap(_Entity):
    """Label name to colour string; insertion order is irrelevant."""

    colors: Dict[str, str] = Field(default_factory=dict)

    @property
    def id(self) -> str:
        return LABEL_COLORS_ID

    def to_record(self) -> Dict[str, Any]:
        return dict(self.colors)


Entity = Union[Document, Collection, Preferences, LabelColorMap]

ENTITY_MODELS: Dict[EntityKind, Type[_Entity]] = {
    EntityKind.DOCUMENTS: Document,
    EntityKind.COLLECTIONS: Collection,
    EntityKind.PREFERENCES: Preferences,
    EntityKind.LABEL_COLORS: LabelColorMap,
}


def entity_from_record(kind: EntityKind, record: Any) -> Entity:
    """Build an entity from a stored record.

    Singleton kinds are stored as bare mappings; the others as objects
    carrying their own fields.

    Raises:
        ValueError: If the record does not have the expected shape.
        pydantic.ValidationError: If the fields do not validate.
    """
    if kind is EntityKind.PREFERENCES:
        if not isinstance(record, Mapping):
            raise ValueError("preferences record must be an object")
        return Preferences(values=dict(record))
    if kind is EntityKind.LABEL_COLORS:
        if not isinstance(record, Mapping):
            raise ValueError("label colour record must be an object")
        return LabelColorMap(colors={str(k): str(v) for k, v in record.items()})
    if not isinstance(record, Mapping):
        raise ValueError(f"{kind.value} record must be an object")
    return ENTITY_MODELS[kind].model_validate(record)


def coerce_entity(kind: EntityKind, value: Any) -> Entity:
    """Validate a caller-supplied entity (model or mapping) before any I/O.

    Mappings must carry a truthy ``id`` for identity-bearing kinds; a model
    built with ``model_construct`` is re-checked too. Singleton kinds take
    the bare stored mapping (settings or label colours).

    Raises:
        InvalidEntityError: If the identity or a required field is missing
            or malformed.
    """
    model_cls = ENTITY_MODELS[kind]

    if isinstance(value, model_cls):
        entity = value
    elif isinstance(value, Mapping):
        if not kind.is_singleton and not value.get("id"):
            raise InvalidEntityError(
                f"{kind.value} entity is missing its id",
                kind=kind.value,
                field="id",
                code=ErrorCode.ENTITY_ID_MISSING,
            )
        try:
            if kind.is_singleton:
                entity = entity_from_record(kind, value)
            else:
                entity = model_cls.model_validate(value)
        except ValidationError as e:
            raise InvalidEntityError(
                f"Invalid {kind.value} entity: {e.errors()[0]['msg']}",
                kind=kind.value,
                field=".".join(str(p) for p in e.errors()[0]["loc"]),
            ) from e
    else:
        raise InvalidEntityError(
            f"Expected a {model_cls.__name__} or mapping, got {type(value).__name__}",
            kind=kind.value,
        )

    if not kind.is_singleton:
        entity_id = getattr(entity, "id", None)
        if not entity_id:
            raise InvalidEntityError(
                f"{kind.value} entity is missing its id",
                kind=kind.value,
                field="id",
                code=ErrorCode.ENTITY_ID_MISSING,
            )
        try:
            validate_safe_path_component(entity_id, "id")
        except ValueError as e:
            raise InvalidEntityError(
                str(e), kind=kind.value, field="id", value=entity_id
            ) from e
    return entity
