"""Tests for the JSON file store and its file operations."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiofiles.os
import pytest

from session_mirror.exceptions import StorageIOError
from session_mirror.local import FileMirrorStore, normalize_models
from session_mirror.local.file_ops import (
    LEGACY_STATE_FILE,
    migrate_legacy_state_file,
    read_json,
    write_json_atomic,
)
from session_mirror.protocol import ModelPreference, ModelRecord, SessionRecord, SessionStatus


class TestFileOps:
    """Tests for the low-level JSON helpers."""

    async def test_read_missing_file(self, temp_dir: Path) -> None:
        assert await read_json(temp_dir / "absent.json") is None

    async def test_read_empty_file(self, temp_dir: Path) -> None:
        path = temp_dir / "empty.json"
        path.write_text("  \n")

        with pytest.raises(StorageIOError) as exc_info:
            await read_json(path)

        assert exc_info.value.operation == "parse_json"

    async def test_read_corrupt_file(self, temp_dir: Path) -> None:
        path = temp_dir / "corrupt.json"
        path.write_text("{not json")

        with pytest.raises(StorageIOError) as exc_info:
            await read_json(path)

        assert exc_info.value.operation == "parse_json"

    async def test_read_rejects_non_object(self, temp_dir: Path) -> None:
        path = temp_dir / "list.json"
        path.write_text("[1, 2]")

        with pytest.raises(StorageIOError):
            await read_json(path)

    async def test_atomic_write_leaves_no_temp_files(self, temp_dir: Path) -> None:
        path = temp_dir / "nested" / "state.json"

        await write_json_atomic(path, {"created": datetime(2024, 1, 2, tzinfo=UTC)})

        assert json.loads(path.read_text()) == {"created": "2024-01-02T00:00:00+00:00"}
        assert [p.name for p in path.parent.iterdir()] == ["state.json"]

    async def test_failed_write_keeps_previous_content(self, temp_dir: Path) -> None:
        path = temp_dir / "state.json"
        await write_json_atomic(path, {"version": 1})

        with pytest.raises(StorageIOError):
            await write_json_atomic(path, {"bad": object()})

        assert json.loads(path.read_text()) == {"version": 1}
        assert [p.name for p in temp_dir.iterdir()] == ["state.json"]

    async def test_cancelled_write_removes_temp_file(
        self, temp_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        path = temp_dir / "state.json"
        await write_json_atomic(path, {"version": 1})

        async def cancelled_rename(src, dst):
            raise asyncio.CancelledError()

        monkeypatch.setattr(aiofiles.os, "rename", cancelled_rename)

        with pytest.raises(asyncio.CancelledError):
            await write_json_atomic(path, {"version": 2})

        assert json.loads(path.read_text()) == {"version": 1}
        assert [p.name for p in temp_dir.iterdir()] == ["state.json"]

    def test_migrates_legacy_file(self, temp_dir: Path) -> None:
        legacy = temp_dir / LEGACY_STATE_FILE
        legacy.write_text('{"sessions": {}}')
        target = temp_dir / "mirror-state.json"

        assert migrate_legacy_state_file(target, "mirror-state.json") is True
        assert target.exists()
        assert not legacy.exists()

    def test_migration_skips_custom_path(self, temp_dir: Path) -> None:
        (temp_dir / LEGACY_STATE_FILE).write_text("{}")

        assert migrate_legacy_state_file(temp_dir / "custom.json", "mirror-state.json") is False
        assert (temp_dir / LEGACY_STATE_FILE).exists()

    def test_migration_never_overwrites(self, temp_dir: Path) -> None:
        (temp_dir / LEGACY_STATE_FILE).write_text('{"old": true}')
        target = temp_dir / "mirror-state.json"
        target.write_text('{"new": true}')

        assert migrate_legacy_state_file(target, "mirror-state.json") is False
        assert json.loads(target.read_text()) == {"new": True}


class TestNormalizeModels:
    """Tests for re-keying stored model tables."""

    def test_composite_keys_are_kept(self):
        models, changed = normalize_models(
            {"openai/gpt-4.1": {"id": "gpt-4.1", "providerID": "openai", "number": 2}}
        )

        assert changed is False
        assert models["openai/gpt-4.1"].number == 2

    def test_provider_derived_from_key_suffix(self):
        models, changed = normalize_models(
            {"openrouter/meta/llama-3": {"id": "meta/llama-3", "number": 4}}
        )

        record = models["openrouter/meta/llama-3"]
        assert record.provider_id == "openrouter"
        assert record.id == "meta/llama-3"
        assert changed is False

    def test_provider_derived_from_last_slash(self):
        models, _ = normalize_models({"deepseek/deepseek-chat": {"number": 1}})

        record = models["deepseek/deepseek-chat"]
        assert (record.provider_id, record.id) == ("deepseek", "deepseek-chat")

    def test_bare_key_is_rekeyed(self):
        models, changed = normalize_models(
            {"gpt-4.1": {"id": "gpt-4.1", "providerID": "openai", "number": 3}}
        )

        assert changed is True
        assert list(models) == ["openai/gpt-4.1"]

    def test_duplicate_keeps_numbered_entry(self):
        models, changed = normalize_models(
            {
                "gpt-4.1": {"id": "gpt-4.1", "providerID": "openai", "number": 0},
                "openai/gpt-4.1": {"id": "gpt-4.1", "providerID": "openai", "number": 6},
            }
        )

        assert changed is True
        assert models["openai/gpt-4.1"].number == 6


class TestFileMirrorStore:
    """Tests for FileMirrorStore."""

    async def test_open_missing_file(self, store: FileMirrorStore) -> None:
        assert await store.list_sessions() == []
        assert await store.list_models() == []

    async def test_every_table_survives_reopen(self, store: FileMirrorStore, state_path: Path) -> None:
        await store.put_session(SessionRecord(session_id="ses-1", owner_user_id=1, name="One", message_count=3))
        await store.put_user_session(1, "ses-1")
        await store.put_model(ModelRecord(id="gpt-4.1", provider_id="openai", name="GPT", number=5))
        await store.put_user_last_model(1, "openai", "gpt-4.1")

        reopened = await FileMirrorStore.open(state_path)

        record = await reopened.get_session("ses-1")
        assert (record.owner_user_id, record.name, record.message_count) == (1, "One", 3)
        assert await reopened.get_user_session(1) == "ses-1"
        assert (await reopened.get_model("openai", "gpt-4.1")).number == 5
        assert await reopened.get_user_last_model(1) == ModelPreference("openai", "gpt-4.1")

    async def test_document_layout(self, store: FileMirrorStore, state_path: Path) -> None:
        await store.put_session(SessionRecord(session_id="ses-1", owner_user_id=1))
        await store.put_user_session(1, "ses-1")
        await store.put_model(ModelRecord(id="gpt-4.1", provider_id="openai", number=5))
        await store.put_user_last_model(1, "openai", "gpt-4.1")

        data = json.loads(state_path.read_text())

        assert set(data) == {"user_sessions", "sessions", "models", "user_last_models"}
        assert data["user_sessions"] == {"1": "ses-1"}
        assert "status" not in data["sessions"]["ses-1"]
        assert data["models"]["openai/gpt-4.1"]["providerID"] == "openai"
        assert data["user_last_models"]["1"] == {"providerID": "openai", "modelID": "gpt-4.1"}

    async def test_status_is_not_persisted(self, store: FileMirrorStore, state_path: Path) -> None:
        record = SessionRecord(session_id="ses-1", owner_user_id=1)
        record.refresh_status(1)
        await store.put_session(record)

        reopened = await FileMirrorStore.open(state_path)

        assert (await reopened.get_session("ses-1")).status is SessionStatus.OTHER

    async def test_returned_records_are_copies(self, store: FileMirrorStore) -> None:
        await store.put_session(SessionRecord(session_id="ses-1", name="Original"))

        record = await store.get_session("ses-1")
        record.name = "Changed"

        assert (await store.get_session("ses-1")).name == "Original"

    async def test_delete_session_drops_mappings(self, store: FileMirrorStore) -> None:
        await store.put_session(SessionRecord(session_id="ses-1"))
        await store.put_user_session(1, "ses-1")
        await store.put_user_session(2, "ses-1")
        await store.put_user_session(3, "ses-2")

        await store.delete_session("ses-1")

        assert await store.get_session("ses-1") is None
        assert await store.get_user_session(1) is None
        assert await store.get_user_session(2) is None
        assert await store.get_user_session(3) == "ses-2"

    async def test_delete_user_session(self, store: FileMirrorStore) -> None:
        await store.put_user_session(1, "ses-1")

        await store.delete_user_session(1)
        await store.delete_user_session(1)

        assert await store.get_user_session(1) is None

    async def test_cleanup_inactive(self, store: FileMirrorStore) -> None:
        stale = SessionRecord(session_id="ses-stale", last_used_at=datetime.now(UTC) - timedelta(hours=3))
        await store.put_session(stale)
        await store.put_session(SessionRecord(session_id="ses-fresh"))
        await store.put_user_session(1, "ses-stale")

        removed = await store.cleanup_inactive(timedelta(hours=1))

        assert removed == ["ses-stale"]
        assert [record.session_id for record in await store.list_sessions()] == ["ses-fresh"]
        assert await store.get_user_session(1) is None

    async def test_models_keyed_by_provider_and_id(self, store: FileMirrorStore) -> None:
        await store.put_model(ModelRecord(id="shared", provider_id="a", number=1))
        await store.put_model(ModelRecord(id="shared", provider_id="b", number=2))

        assert (await store.get_model("a", "shared")).number == 1
        assert (await store.get_model("b", "shared")).number == 2

        await store.delete_model("a", "shared")

        assert await store.get_model("a", "shared") is None
        assert len(await store.list_models()) == 1

    async def test_put_model_without_id(self, store: FileMirrorStore) -> None:
        with pytest.raises(StorageIOError):
            await store.put_model(ModelRecord(id=""))

    async def test_legacy_models_are_normalized_on_load(self, state_path: Path) -> None:
        state_path.write_text(
            json.dumps({"models": {"gpt-4.1": {"id": "gpt-4.1", "providerID": "openai", "number": 2}}})
        )

        store = await FileMirrorStore.open(state_path)
        await store.close()

        data = json.loads(state_path.read_text())
        assert list(data["models"]) == ["openai/gpt-4.1"]

    async def test_legacy_state_file_is_loaded(self, temp_dir: Path) -> None:
        (temp_dir / LEGACY_STATE_FILE).write_text(
            json.dumps({"user_sessions": {"7": "ses-legacy"}, "sessions": {"ses-legacy": {"owner_user_id": 7}}})
        )

        store = await FileMirrorStore.open(temp_dir / "mirror-state.json")

        assert await store.get_user_session(7) == "ses-legacy"
        assert (await store.get_session("ses-legacy")).owner_user_id == 7

    async def test_legacy_session_fields_are_read(self, temp_dir: Path) -> None:
        (temp_dir / LEGACY_STATE_FILE).write_text(
            json.dumps(
                {
                    "user_sessions": {"42": "ses-1"},
                    "sessions": {
                        "ses-1": {
                            "SessionID": "ses-1",
                            "UserID": 42,
                            "Name": "My chat",
                            "CreatedAt": "2024-03-01T10:00:00.123456789Z",
                            "LastUsedAt": "2024-03-02T11:30:00+02:00",
                            "MessageCount": 12,
                            "ProviderID": "openai",
                            "ModelID": "gpt-4.1",
                            "Status": "owned",
                        }
                    },
                }
            )
        )

        store = await FileMirrorStore.open(temp_dir / "mirror-state.json")
        record = await store.get_session("ses-1")

        assert record.owner_user_id == 42
        assert record.name == "My chat"
        assert record.created_at == datetime(2024, 3, 1, 10, 0, 0, 123456, tzinfo=UTC)
        assert record.last_used_at == datetime(2024, 3, 2, 9, 30, tzinfo=UTC)
        assert record.message_count == 12
        assert (record.provider_id, record.model_id) == ("openai", "gpt-4.1")
        assert record.status_for(7) is SessionStatus.OTHER

        await store.put_user_session(7, "ses-2")
        reloaded = await FileMirrorStore.open(temp_dir / "mirror-state.json")

        assert (await reloaded.get_session("ses-1")).owner_user_id == 42

    async def test_corrupt_state_file(self, state_path: Path) -> None:
        state_path.write_text("{broken")

        with pytest.raises(StorageIOError):
            await FileMirrorStore.open(state_path)

    async def test_empty_state_file_is_an_error(self, state_path: Path) -> None:
        state_path.write_text("")

        with pytest.raises(StorageIOError):
            await FileMirrorStore.open(state_path)

    async def test_failed_write_is_retried_on_close(
        self, store: FileMirrorStore, state_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        from session_mirror.local import store as store_module

        async def failing_write(path, data):
            raise StorageIOError("write_json", str(path))

        real_write = store_module.write_json_atomic
        monkeypatch.setattr(store_module, "write_json_atomic", failing_write)

        with pytest.raises(StorageIOError):
            await store.put_user_session(1, "ses-1")
        assert not state_path.exists()

        monkeypatch.setattr(store_module, "write_json_atomic", real_write)
        await store.close()

        assert json.loads(state_path.read_text())["user_sessions"] == {"1": "ses-1"}
