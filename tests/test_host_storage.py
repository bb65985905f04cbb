"""Tests for the host file service and the backend built on it."""

import json
from pathlib import Path

import pytest

from notestore.exceptions import BackendUnavailableError, InvalidEntityError, StorageError
from notestore.models.schema import Collection, Document, EntityKind, LabelColorMap, Preferences
from notestore.storage.file_service import MAX_METADATA_ACTIONS, HostFileService


class TestHostFileService:
    """File layout, backups and the metadata log."""

    @pytest.mark.anyio
    async def test_initialize_creates_layout(self, file_service):
        await file_service.initialize()
        assert file_service.notes_dir.is_dir()
        assert file_service.backup_dir.is_dir()

    @pytest.mark.anyio
    async def test_initialize_unusable_directory(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("file in the way")
        service = HostFileService(blocker / "data")
        with pytest.raises(BackendUnavailableError):
            await service.initialize()

    @pytest.mark.anyio
    async def test_save_and_load_note(self, file_service):
        await file_service.initialize()
        result = await file_service.save_note({"id": "n1", "title": "Hello"})
        assert result["success"] is True
        assert Path(result["path"]).name == "note-n1.json"
        assert await file_service.load_note("n1") == {"id": "n1", "title": "Hello"}
        assert await file_service.load_note("missing") is None

    @pytest.mark.anyio
    async def test_save_note_requires_id(self, file_service):
        await file_service.initialize()
        with pytest.raises(StorageError):
            await file_service.save_note({"title": "no id"})

    @pytest.mark.anyio
    async def test_overwrite_keeps_backup(self, file_service):
        await file_service.initialize()
        await file_service.save_note({"id": "n1", "title": "v1"})
        await file_service.save_note({"id": "n1", "title": "v2"})

        backups = file_service.backups.list_backups()
        assert len(backups) == 1
        assert backups[0]["source"] == "note-n1"
        assert json.loads(Path(backups[0]["path"]).read_text())["title"] == "v1"

    @pytest.mark.anyio
    async def test_delete_note_leaves_backup(self, file_service):
        await file_service.initialize()
        await file_service.save_note({"id": "n1", "title": "keep me"})

        result = await file_service.delete_note("n1")
        assert result["success"] is True
        backup = Path(result["backupPath"])
        assert backup.exists()
        assert "_deleted" in backup.name
        assert json.loads(backup.read_text())["title"] == "keep me"
        assert await file_service.load_note("n1") is None

    @pytest.mark.anyio
    async def test_delete_missing_note(self, file_service):
        await file_service.initialize()
        result = await file_service.delete_note("ghost")
        assert result == {"success": False, "error": "Note not found"}

    @pytest.mark.anyio
    async def test_load_all_skips_unreadable_files(self, file_service):
        await file_service.initialize()
        await file_service.save_note({"id": "ok", "title": "fine"})
        (file_service.notes_dir / "note-broken.json").write_text("{oops")
        notes = await file_service.load_all_notes()
        assert [n["id"] for n in notes] == ["ok"]
        assert not (file_service.notes_dir / "note-broken.json").exists()
        labels = [b["label"] for b in file_service.backups.list_backups()]
        assert labels.count("corrupted") == 1

    @pytest.mark.anyio
    async def test_corrupted_data_file_falls_back_to_default(self, file_service):
        await file_service.initialize()
        file_service.settings_file.write_text("not json at all")
        assert await file_service.load_settings() == {}
        assert await file_service.load_settings() == {}

        labels = [b["label"] for b in file_service.backups.list_backups()]
        assert labels.count("corrupted") == 1
        assert json.loads(file_service.settings_file.read_text()) == {}

    @pytest.mark.anyio
    async def test_corrupted_note_is_cleared_on_load(self, file_service):
        await file_service.initialize()
        path = file_service.notes_dir / "note-d1.json"
        path.write_text("{not json")

        assert await file_service.load_note("d1") is None

        assert not path.exists()
        [backup] = file_service.backups.list_backups()
        assert backup["label"] == "corrupted"
        assert Path(backup["path"]).read_text() == "{not json"

    @pytest.mark.anyio
    async def test_metadata_log_is_capped(self, file_service):
        await file_service.initialize()
        file_service.metadata_file.write_text(json.dumps({
            "created": "2024-01-01T00:00:00+00:00",
            "actions": [{"action": "old", "data": {}}] * MAX_METADATA_ACTIONS,
        }))
        await file_service.save_note({"id": "n1", "title": "x"})
        metadata = json.loads(file_service.metadata_file.read_text())
        assert len(metadata["actions"]) == MAX_METADATA_ACTIONS
        assert metadata["actions"][-1]["action"] == "note_saved"

    @pytest.mark.anyio
    async def test_storage_info(self, file_service):
        await file_service.initialize()
        await file_service.save_note({"id": "n1"})
        await file_service.save_notebooks([{"id": "nb", "name": "Work"}])
        info = await file_service.storage_info()
        assert info["notesCount"] == 1
        assert info["notebooksCount"] == 1
        assert info["hasSettings"] is False
        assert info["directories"]["notes"] == str(file_service.notes_dir)

    @pytest.mark.anyio
    async def test_migrate_from_legacy(self, file_service):
        await file_service.initialize()
        result = await file_service.migrate_from_legacy({
            "notes": [{"id": "a"}, {"id": "b"}],
            "notebooks": [{"id": "nb", "name": "Work"}],
            "settings": {"theme": "dark"},
            "tagColors": {"work": "red"},
        })
        assert result.success is True
        assert result.notes_count == 2
        assert await file_service.load_settings() == {"theme": "dark"}
        assert await file_service.load_tag_colors() == {"work": "red"}
        metadata = json.loads(file_service.metadata_file.read_text())
        assert metadata["actions"][-1]["action"] == "migration_completed"


class TestHostFileBackend:
    @pytest.mark.anyio
    async def test_document_round_trip(self, host_backend):
        doc = Document(id="d1", title="Title", labels={"x"})
        await host_backend.write_document(doc)
        assert await host_backend.read_one(EntityKind.DOCUMENTS, "d1") == doc
        assert await host_backend.read_all(EntityKind.DOCUMENTS) == [doc]

    @pytest.mark.anyio
    async def test_rejects_missing_id_before_io(self, host_backend, file_service):
        with pytest.raises(InvalidEntityError):
            await host_backend.write_document({"title": "no id"})
        assert list(file_service.notes_dir.iterdir()) == []

    @pytest.mark.anyio
    async def test_delete_returns_backup_location(self, host_backend):
        await host_backend.write_document(Document(id="d1", title="gone soon"))
        backup = await host_backend.delete_one(EntityKind.DOCUMENTS, "d1")

        assert backup is not None
        assert host_backend.last_backup_path == backup
        assert json.loads(Path(backup).read_text())["title"] == "gone soon"
        assert await host_backend.read_one(EntityKind.DOCUMENTS, "d1") is None

    @pytest.mark.anyio
    async def test_write_all_documents_replaces_set(self, host_backend):
        await host_backend.write_document(Document(id="old"))
        await host_backend.write_all(EntityKind.DOCUMENTS, [Document(id="new")])
        assert [d.id for d in await host_backend.read_all(EntityKind.DOCUMENTS)] == ["new"]

    @pytest.mark.anyio
    async def test_collections_and_singletons(self, host_backend):
        await host_backend.write_all(EntityKind.COLLECTIONS, [Collection(id="nb", name="Work")])
        await host_backend.write_all(EntityKind.PREFERENCES, [Preferences(values={"a": 1})])
        await host_backend.write_all(EntityKind.LABEL_COLORS, [LabelColorMap(colors={"t": "red"})])

        assert (await host_backend.read_one(EntityKind.COLLECTIONS, "nb")).name == "Work"
        assert (await host_backend.read_one(EntityKind.PREFERENCES)).values == {"a": 1}
        await host_backend.delete_one(EntityKind.LABEL_COLORS, "t")
        assert (await host_backend.read_one(EntityKind.LABEL_COLORS)).colors == {}

    @pytest.mark.anyio
    async def test_malformed_document_file_reads_as_missing(self, host_backend, file_service):
        (file_service.notes_dir / "note-d1.json").write_text(json.dumps({"id": "d1", "status": "bogus"}))
        assert await host_backend.read_one(EntityKind.DOCUMENTS, "d1") is None

    @pytest.mark.anyio
    async def test_corrupted_document_file_reads_as_missing(self, host_backend, file_service):
        (file_service.notes_dir / "note-d1.json").write_text("{not json")
        assert await host_backend.read_one(EntityKind.DOCUMENTS, "d1") is None
        assert await host_backend.read_all(EntityKind.DOCUMENTS) == []

    @pytest.mark.anyio
    async def test_corrupted_collections_file_is_reset(self, host_backend, file_service):
        file_service.notebooks_file.write_text("{not json")
        for _ in range(3):
            assert await host_backend.read_all(EntityKind.COLLECTIONS) == []
        labels = [b["label"] for b in file_service.backups.list_backups()]
        assert labels.count("corrupted") == 1
        assert json.loads(file_service.notebooks_file.read_text()) == []


class TestUnsafeIds:
    """Both backends answer the same way for ids that cannot be stored."""

    @pytest.fixture(params=["local", "host"])
    async def backend(self, request, local_backend, host_backend, anyio_backend):
        return local_backend if request.param == "local" else host_backend

    @pytest.mark.anyio
    @pytest.mark.parametrize("entity_id", ["a/b", "../etc", ""])
    async def test_read_one_unknown(self, backend, entity_id):
        assert await backend.read_one(EntityKind.DOCUMENTS, entity_id) is None

    @pytest.mark.anyio
    @pytest.mark.parametrize("entity_id", ["a/b", "../etc"])
    async def test_delete_one_is_a_no_op(self, backend, entity_id):
        await backend.write_all(EntityKind.DOCUMENTS, [Document(id="keep")])
        assert await backend.delete_one(EntityKind.DOCUMENTS, entity_id) is None
        assert [d.id for d in await backend.read_all(EntityKind.DOCUMENTS)] == ["keep"]
