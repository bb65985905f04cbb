"""Tests for the entity models and their validation helpers."""

import datetime

import pytest
from pydantic import ValidationError

from notestore.exceptions import ErrorCode, InvalidEntityError
from notestore.models.schema import (
    Collection,
    Document,
    DocumentStatus,
    EntityKind,
    LabelColorMap,
    Preferences,
    coerce_entity,
    entity_from_record,
    generate_id,
    validate_safe_path_component,
)


class TestDocument:
    """Tests for the Document model."""

    def test_defaults(self):
        doc = Document(title="Draft")
        assert doc.id
        assert doc.body == ""
        assert doc.labels == set()
        assert doc.status is DocumentStatus.DRAFT
        assert doc.trashed is False
        assert doc.trashed_at is None
        assert doc.created_at.tzinfo is not None

    def test_id_is_immutable(self):
        doc = Document(title="Draft")
        with pytest.raises(ValidationError):
            doc.id = "other"

    def test_created_at_is_immutable(self):
        doc = Document(title="Draft")
        with pytest.raises(ValidationError):
            doc.created_at = datetime.datetime.now(datetime.timezone.utc)

    def test_record_uses_camel_case(self):
        doc = Document(id="doc1", title="T", collection_ref="nb1", labels={"b", "a"})
        record = doc.to_record()
        assert record["collectionRef"] == "nb1"
        assert record["labels"] == ["a", "b"]
        assert "createdAt" in record and "updatedAt" in record
        assert record["status"] == "draft"

    def test_accepts_either_spelling(self):
        camel = Document.model_validate({"id": "a1", "collectionRef": "nb"})
        snake = Document.model_validate({"id": "a2", "collection_ref": "nb"})
        assert camel.collection_ref == snake.collection_ref == "nb"

    def test_naive_timestamps_become_utc(self):
        doc = Document.model_validate({"id": "a1", "createdAt": "2024-01-02T03:04:05"})
        assert doc.created_at.tzinfo == datetime.timezone.utc

    def test_unsafe_id_rejected(self):
        with pytest.raises(ValidationError):
            Document(id="../etc/passwd")

    def test_trash_and_restore_copies(self):
        doc = Document(id="a1", title="T")
        trashed = doc.trashed_copy()
        assert trashed.trashed is True
        assert trashed.trashed_at is not None
        assert doc.trashed is False

        restored = trashed.restored_copy()
        assert restored.trashed is False
        assert restored.trashed_at is None
        assert restored.id == doc.id

    def test_record_round_trip(self):
        doc = Document(id="a1", title="T", body="b", labels={"x"}, pinned=True,
                       status=DocumentStatus.IN_PROGRESS)
        again = entity_from_record(EntityKind.DOCUMENTS, doc.to_record())
        assert again == doc


class TestCollection:
    def test_name_required(self):
        with pytest.raises(ValidationError):
            Collection(name="   ")

    def test_defaults(self):
        nb = Collection(name="Work")
        assert nb.color == "blue"
        assert nb.parent_ref is None


class TestSingletons:
    def test_preferences_record_is_bare_mapping(self):
        prefs = Preferences(values={"theme": "dark"})
        assert prefs.to_record() == {"theme": "dark"}
        assert prefs.id == "preferences"

    def test_label_colors_from_record(self):
        colors = entity_from_record(EntityKind.LABEL_COLORS, {"work": "red", "n": 1})
        assert isinstance(colors, LabelColorMap)
        assert colors.colors == {"work": "red", "n": "1"}

    def test_singleton_record_must_be_object(self):
        with pytest.raises(ValueError):
            entity_from_record(EntityKind.PREFERENCES, ["theme"])

    def test_is_singleton(self):
        assert EntityKind.PREFERENCES.is_singleton
        assert EntityKind.LABEL_COLORS.is_singleton
        assert not EntityKind.DOCUMENTS.is_singleton
        assert not EntityKind.COLLECTIONS.is_singleton


class TestCoerceEntity:
    """Identity checks that run before any I/O."""

    def test_mapping_without_id(self):
        with pytest.raises(InvalidEntityError) as exc_info:
            coerce_entity(EntityKind.DOCUMENTS, {"title": "no id"})
        assert exc_info.value.code is ErrorCode.ENTITY_ID_MISSING

    def test_mapping_with_empty_id(self):
        with pytest.raises(InvalidEntityError):
            coerce_entity(EntityKind.DOCUMENTS, {"id": "", "title": "x"})

    def test_constructed_model_without_id(self):
        doc = Document.model_construct(id="", title="x")
        with pytest.raises(InvalidEntityError) as exc_info:
            coerce_entity(EntityKind.DOCUMENTS, doc)
        assert exc_info.value.code is ErrorCode.ENTITY_ID_MISSING

    def test_invalid_field_is_wrapped(self):
        with pytest.raises(InvalidEntityError) as exc_info:
            coerce_entity(EntityKind.COLLECTIONS, {"id": "nb1"})
        assert exc_info.value.details["field"] == "name"

    def test_wrong_type(self):
        with pytest.raises(InvalidEntityError):
            coerce_entity(EntityKind.DOCUMENTS, "doc1")

    def test_model_passes_through(self):
        doc = Document(id="a1")
        assert coerce_entity(EntityKind.DOCUMENTS, doc) is doc

    def test_singleton_mapping_is_a_bare_record(self):
        prefs = coerce_entity(EntityKind.PREFERENCES, {"theme": "dark"})
        assert prefs.values == {"theme": "dark"}


class TestHelpers:
    def test_generate_id_unique(self):
        ids = {generate_id() for _ in range(1000)}
        assert len(ids) == 1000

    @pytest.mark.parametrize("value", ["", "a/b", "a\\b", "..", "a b", "a.json"])
    def test_unsafe_path_components(self, value):
        with pytest.raises(ValueError):
            validate_safe_path_component(value)

    def test_safe_path_component(self):
        assert validate_safe_path_component("note_1-A") == "note_1-A"
