"""Tests for the NoteStore facade."""

import asyncio
import json
from pathlib import Path

import pytest

from notestore.exceptions import InvalidEntityError, SnapshotFormatError
from notestore.lifecycle import LifecycleGuard
from notestore.models.schema import Collection, Document, EntityKind, LabelColorMap
from notestore.services.migration import MigrationState
from notestore.store import NoteStore
from tests.fakes import TEST_DEBOUNCE, SlowQuotaBackend, UnreachableFileService


class TestInitialize:
    @pytest.mark.anyio
    async def test_uses_host_when_available(self, host_store):
        assert host_store.backend.name == "host"
        assert host_store.migration.state is MigrationState.DONE

    @pytest.mark.anyio
    async def test_local_when_host_disabled(self, local_store):
        assert local_store.backend.name == "local"

    @pytest.mark.anyio
    async def test_falls_back_when_host_unreachable(self, test_config, memory_kv, tmp_path):
        store = NoteStore(
            kv_store=memory_kv,
            file_service=UnreachableFileService(tmp_path),
            host_enabled=True,
            debounce_seconds=TEST_DEBOUNCE,
        )
        await store.initialize()
        try:
            assert store.backend.name == "local"
            await store.write_now(Document(id="ok"))
            assert await store.read_one(EntityKind.DOCUMENTS, "ok") is not None
        finally:
            await store.close()

    @pytest.mark.anyio
    async def test_migrates_legacy_data_on_startup(self, test_config, memory_kv, file_service):
        memory_kv.set_item("notestore_notes", json.dumps([{"id": "old", "title": "Legacy"}]))
        async with NoteStore(
            kv_store=memory_kv,
            file_service=file_service,
            host_enabled=True,
            key_prefix="notestore_",
        ) as store:
            assert store.backend.name == "host"
            doc = await store.read_one(EntityKind.DOCUMENTS, "old")
            assert doc.title == "Legacy"
            assert memory_kv.get_item("notestore_notes") is None

    @pytest.mark.anyio
    async def test_failed_migration_stays_on_local(self, test_config, memory_kv, file_service):
        memory_kv.set_item("notestore_notes", "{corrupt")
        async with NoteStore(
            kv_store=memory_kv,
            file_service=file_service,
            host_enabled=True,
            key_prefix="notestore_",
        ) as store:
            assert store.backend.name == "local"
            assert store.migration_error is not None
            assert store.migration.state is MigrationState.NOT_CHECKED

    @pytest.mark.anyio
    async def test_requires_initialize(self, memory_kv):
        store = NoteStore(kv_store=memory_kv, host_enabled=False)
        with pytest.raises(RuntimeError):
            await store.read_all(EntityKind.DOCUMENTS)


class TestWritePath:
    @pytest.mark.anyio
    async def test_enqueue_round_trip(self, host_store):
        doc = Document(id="e1", title="Edited")
        await host_store.enqueue(doc)
        stored = await host_store.read_one(EntityKind.DOCUMENTS, "e1")
        assert stored.title == "Edited"

    @pytest.mark.anyio
    async def test_has_pending_write(self, local_store):
        local_store.enqueue(Document(id="p1"))
        assert local_store.has_pending_write("p1")
        await local_store.flush_all()
        assert not local_store.has_pending_write("p1")

    @pytest.mark.anyio
    async def test_enqueue_rejects_missing_id(self, local_store):
        with pytest.raises(InvalidEntityError):
            local_store.enqueue({"title": "nope"})

    @pytest.mark.anyio
    async def test_cached_reflects_reads_and_writes(self, local_store):
        local_store.enqueue(Document(id="c1", title="cached"))
        assert [d.title for d in local_store.cached(EntityKind.DOCUMENTS)] == ["cached"]
        await local_store.flush_all()
        await local_store.read_all("documents")
        assert [d.id for d in local_store.cached("documents")] == ["c1"]

    @pytest.mark.anyio
    async def test_cache_holds_stamped_copy_after_debounced_write(self, local_store):
        doc = Document(id="c2", title="stamp me", updated_at="2020-01-01T00:00:00+00:00")
        written = await local_store.enqueue(doc)

        assert written.updated_at > doc.updated_at
        [cached] = local_store.cached(EntityKind.DOCUMENTS)
        assert cached.updated_at == written.updated_at

    @pytest.mark.anyio
    async def test_cache_keeps_newer_pending_edit(self, local_store):
        first = local_store.enqueue(Document(id="c3", title="first"))
        await asyncio.sleep(TEST_DEBOUNCE * 1.5)
        local_store.enqueue(Document(id="c3", title="second"))
        await first
        assert [d.title for d in local_store.cached(EntityKind.DOCUMENTS)] == ["second"]

    @pytest.mark.anyio
    async def test_unknown_kind(self, local_store):
        with pytest.raises(InvalidEntityError):
            await local_store.read_all("widgets")

    @pytest.mark.anyio
    async def test_close_flushes(self, test_config, memory_kv):
        store = NoteStore(kv_store=memory_kv, host_enabled=False, debounce_seconds=10.0)
        await store.initialize()
        store.enqueue(Document(id="late", title="not lost"))
        report = await store.close()
        assert report.written_ids == ["late"]
        assert "late" in memory_kv.get_item("notestore_notes")


class TestDeleteAndTrash:
    @pytest.mark.anyio
    async def test_trash_and_restore(self, local_store):
        await local_store.write_now(Document(id="t1", title="bin me"))

        trashed = await local_store.trash_document("t1")
        assert trashed.trashed is True
        assert (await local_store.read_one(EntityKind.DOCUMENTS, "t1")).trashed is True

        restored = await local_store.restore_document("t1")
        assert restored.trashed is False
        assert restored.trashed_at is None

    @pytest.mark.anyio
    async def test_trash_uses_latest_pending_state(self, local_store):
        await local_store.write_now(Document(id="t2", title="old"))
        local_store.enqueue(Document(id="t2", title="newer"))
        trashed = await local_store.trash_document("t2")
        assert trashed.title == "newer"
        assert trashed.trashed is True

    @pytest.mark.anyio
    async def test_trash_missing_document(self, local_store):
        with pytest.raises(InvalidEntityError):
            await local_store.trash_document("nothing")

    @pytest.mark.anyio
    async def test_permanent_delete_discards_pending_write(self, local_store):
        await local_store.write_now(Document(id="d1"))
        local_store.enqueue(Document(id="d1", title="edited after"))

        await local_store.delete_one(EntityKind.DOCUMENTS, "d1")
        await asyncio.sleep(TEST_DEBOUNCE * 2)

        assert await local_store.read_one(EntityKind.DOCUMENTS, "d1") is None
        assert not local_store.has_pending_write("d1")

    @pytest.mark.anyio
    async def test_delete_clears_failure_of_running_write(self, test_config, local_backend):
        store = NoteStore(
            backend=SlowQuotaBackend(local_backend, delay=0.2), debounce_seconds=0.01
        )
        await store.initialize()
        guard = LifecycleGuard(store)
        try:
            store.enqueue(Document(id="gone"))
            await asyncio.sleep(0.05)
            assert store.has_pending_write("gone")

            await store.delete_one(EntityKind.DOCUMENTS, "gone")

            assert store.failed_writes() == []
            assert not guard.should_warn_before_close()
        finally:
            await store.close()

    @pytest.mark.anyio
    async def test_host_delete_returns_backup(self, host_store):
        await host_store.write_now(Document(id="d2", title="recoverable"))
        backup = await host_store.delete_one(EntityKind.DOCUMENTS, "d2")
        assert json.loads(Path(backup).read_text())["title"] == "recoverable"

    @pytest.mark.anyio
    async def test_empty_trash(self, host_store):
        await host_store.write_now(Document(id="keep"))
        await host_store.write_now(Document(id="drop", trashed=True))
        assert await host_store.empty_trash() == ["drop"]
        assert [d.id for d in await host_store.read_all(EntityKind.DOCUMENTS)] == ["keep"]


class TestPreferences:
    @pytest.mark.anyio
    async def test_merge_and_replace(self, local_store):
        await local_store.save_preferences({"theme": "dark", "fontSize": 14})
        merged = await local_store.save_preferences({"fontSize": 16})
        assert merged.values == {"theme": "dark", "fontSize": 16}

        replaced = await local_store.save_preferences({"lang": "en"}, merge=False)
        assert (await local_store.read_one(EntityKind.PREFERENCES)).values == {"lang": "en"}
        assert replaced.values == {"lang": "en"}


class TestSnapshots:
    @pytest.mark.anyio
    async def test_export_includes_pending_edits(self, local_store):
        await local_store.write_all(EntityKind.COLLECTIONS, [Collection(id="nb", name="Work")])
        await local_store.write_all(EntityKind.LABEL_COLORS, [LabelColorMap(colors={"x": "red"})])
        local_store.enqueue(Document(id="s1", title="unsaved"))

        snapshot = json.loads(await local_store.export_snapshot())

        assert snapshot["version"] == "2.0"
        assert "exportedAt" in snapshot
        assert [d["title"] for d in snapshot["documents"]] == ["unsaved"]
        assert snapshot["collections"][0]["name"] == "Work"
        assert snapshot["labelColors"] == {"x": "red"}
        assert snapshot["preferences"] == {}

    @pytest.mark.anyio
    async def test_export_then_import_into_other_backend(self, local_store, host_store):
        await local_store.write_now(Document(id="m1", title="moved", labels={"a"}))
        await local_store.save_preferences({"theme": "light"})
        blob = await local_store.export_snapshot()

        counts = await host_store.import_snapshot(blob)

        assert counts["documents"] == 1
        moved = await host_store.read_one(EntityKind.DOCUMENTS, "m1")
        assert moved.title == "moved"
        assert moved.labels == {"a"}
        assert (await host_store.read_one(EntityKind.PREFERENCES)).values == {"theme": "light"}

    @pytest.mark.anyio
    async def test_import_accepts_legacy_field_names(self, local_store):
        await local_store.import_snapshot({
            "notes": [{"id": "l1", "title": "legacy"}],
            "notebooks": [{"id": "nb", "name": "Old"}],
            "settings": {"theme": "dark"},
            "tagColors": {"t": "blue"},
        })
        assert (await local_store.read_one(EntityKind.DOCUMENTS, "l1")).title == "legacy"
        assert (await local_store.read_one(EntityKind.LABEL_COLORS)).colors == {"t": "blue"}

    @pytest.mark.anyio
    async def test_import_replaces_documents(self, local_store):
        await local_store.write_now(Document(id="before"))
        await local_store.import_snapshot({"documents": [{"id": "after"}]})
        assert [d.id for d in await local_store.read_all(EntityKind.DOCUMENTS)] == ["after"]

    @pytest.mark.anyio
    @pytest.mark.parametrize("blob", [
        "not json",
        "[1, 2, 3]",
        json.dumps({"collections": []}),
        json.dumps({"documents": {"id": "x"}}),
        json.dumps({"documents": [{"title": "no id"}]}),
    ])
    async def test_invalid_snapshot(self, local_store, blob):
        await local_store.write_now(Document(id="survivor"))
        with pytest.raises(SnapshotFormatError):
            await local_store.import_snapshot(blob)
        assert await local_store.read_one(EntityKind.DOCUMENTS, "survivor") is not None


class TestStats:
    @pytest.mark.anyio
    async def test_local_stats(self, local_store):
        await local_store.write_now(Document(id="a"))
        await local_store.write_now(Document(id="b", trashed=True))
        local_store.enqueue(Document(id="c"))

        stats = await local_store.storage_stats()

        assert stats["backend"] == "local"
        assert stats["documents"] == 2
        assert stats["trashed_documents"] == 1
        assert stats["pending_writes"] == 1
        assert stats["failed_writes"] == 0
        assert stats["kv_usage_bytes"] > 0

    @pytest.mark.anyio
    async def test_host_stats_list_directories(self, host_store, file_service):
        stats = await host_store.storage_stats()
        assert stats["backend"] == "host"
        assert stats["directories"]["backups"] == str(file_service.backup_dir)
        assert stats["migration_state"] == "done"
