"""Tests for issue_pipeline/engine/state_store.py."""

import asyncio
import json

import pytest

from issue_pipeline.engine.state_store import StateStore
from issue_pipeline.enums import LifecycleState
from issue_pipeline.exceptions import NotFoundError, PreconditionFailed, StoreCorrupt


@pytest.mark.asyncio
async def test_empty_store(store):
    """Test that a missing state file reads as an empty store."""
    assert await store.list() == []
    assert await store.exists(1) is False
    assert not store.path.exists()


@pytest.mark.asyncio
async def test_apply_creates_and_reads_back(store, state_path):
    """Test creating a record and reading it from disk."""
    record = await store.apply(42, {"state": LifecycleState.CREATED, "title": "Login fails"})

    assert record.number == 42
    assert record.state is LifecycleState.CREATED

    document = json.loads(state_path.read_text())
    assert document["issues"]["42"] == {"state": "created", "title": "Login fails"}
    assert (await store.get(42)).title == "Login fails"


@pytest.mark.asyncio
async def test_apply_merges_fields(store):
    """Test that apply leaves unnamed fields untouched."""
    await store.apply(42, {"state": "created", "title": "Login fails", "branch": "issue-42"})
    record = await store.apply(42, {"state": "assigned", "assigned_worker": "W1"})

    assert record.title == "Login fails"
    assert record.branch == "issue-42"
    assert record.assigned_worker == "W1"


@pytest.mark.asyncio
async def test_apply_writes_only_named_fields(store, state_path):
    """Test that apply never fills in defaults for fields nobody set."""
    await store.apply(7, {"state": "created", "title": "Crash", "legacy_note": "from shell tool"})
    await store.apply(7, {"state": "assigned", "assigned_worker": "W1"})

    document = json.loads(state_path.read_text())
    assert document["issues"]["7"] == {
        "state": "assigned",
        "title": "Crash",
        "legacy_note": "from shell tool",
        "assigned_worker": "W1",
    }


@pytest.mark.asyncio
async def test_apply_none_removes_field(store):
    """Test that a None value removes the field."""
    await store.apply(42, {"state": "closed", "close_reason": "dup"})
    record = await store.apply(42, {"close_reason": None})
    assert record.close_reason is None
    assert "close_reason" not in (await store.get(42)).to_dict()


@pytest.mark.asyncio
async def test_guard_aborts_without_writing(store, state_path):
    """Test that a raising guard leaves the document unchanged."""
    await store.apply(42, {"state": "created"})
    before = state_path.read_bytes()

    def refuse(current):
        raise PreconditionFailed("assign", expected=["created"], actual="assigned", issue=42)

    with pytest.raises(PreconditionFailed):
        await store.apply(42, {"state": "assigned"}, guard=refuse)

    assert state_path.read_bytes() == before


@pytest.mark.asyncio
async def test_guard_sees_current_record(store):
    """Test that the guard receives None for new records and the record otherwise."""
    seen = []
    await store.apply(1, {"state": "created"}, guard=seen.append)
    await store.apply(1, {"state": "assigned"}, guard=seen.append)

    assert seen[0] is None
    assert seen[1].state is LifecycleState.CREATED


@pytest.mark.asyncio
async def test_get_missing(store):
    """Test that an unknown issue raises NotFoundError."""
    with pytest.raises(NotFoundError):
        await store.get(7)


@pytest.mark.asyncio
async def test_list_keeps_insertion_order(store):
    """Test that records list in order of first write."""
    for number in (5, 2, 9):
        await store.apply(number, {"state": "created"})
    await store.apply(2, {"state": "assigned"})

    assert [r.number for r in await store.list()] == [5, 2, 9]


@pytest.mark.asyncio
async def test_unknown_fields_survive(store, state_path):
    """Test that fields unknown to this version are written back unchanged."""
    state_path.write_text(json.dumps({"issues": {"3": {"state": "created", "labels_synced": True}}}))

    await store.apply(3, {"state": "assigned"})

    document = json.loads(state_path.read_text())
    assert document["issues"]["3"]["labels_synced"] is True


@pytest.mark.asyncio
async def test_no_temp_file_left(store, state_path):
    """Test that the atomic write leaves no temporary file behind."""
    await store.apply(1, {"state": "created"})
    assert not state_path.with_suffix(".tmp").exists()


@pytest.mark.asyncio
async def test_concurrent_applies_are_serialized(store):
    """Test that concurrent updates to different issues all persist."""
    await asyncio.gather(*(store.apply(n, {"state": "created"}) for n in range(1, 21)))
    assert len(await store.list()) == 20


@pytest.mark.asyncio
async def test_two_store_instances_share_file(state_path):
    """Test that separate store objects on one file see each other's writes."""
    first = StateStore(state_path)
    second = StateStore(state_path)

    await first.apply(1, {"state": "created"})
    await second.apply(2, {"state": "created"})

    assert [r.number for r in await first.list()] == [1, 2]


# =============================================================================
# Corruption
# =============================================================================


class TestCorruption:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "content",
        [
            "",
            "   \n",
            "{not json",
            "[1, 2]",
            '{"issues": []}',
            '{"issues": {}, "workers": "none"}',
        ],
    )
    async def test_unparsable_document(self, store, state_path, content):
        """Should raise StoreCorrupt instead of treating the store as empty."""
        state_path.write_text(content)

        with pytest.raises(StoreCorrupt) as exc_info:
            await store.list()

        assert exc_info.value.exit_code == 6
        assert exc_info.value.path == str(state_path)

    @pytest.mark.asyncio
    async def test_invalid_record(self, store, state_path):
        """Should raise StoreCorrupt for a record with an unknown state."""
        state_path.write_text(json.dumps({"issues": {"4": {"state": "exploded"}}}))

        with pytest.raises(StoreCorrupt):
            await store.get(4)

    @pytest.mark.asyncio
    async def test_apply_refuses_corrupt_store(self, store, state_path):
        """Should not overwrite a corrupt document."""
        state_path.write_text("{not json")

        with pytest.raises(StoreCorrupt):
            await store.apply(1, {"state": "created"})

        assert state_path.read_text() == "{not json"


# =============================================================================
# Worker flags
# =============================================================================


class TestWorkerFlags:
    @pytest.mark.asyncio
    async def test_pause_and_resume(self, store):
        """Should report changes and expose paused ids in snapshots."""
        assert await store.set_worker_paused("W1", True) is True
        assert (await store.snapshot()).paused_workers == {"W1"}

        assert await store.set_worker_paused("W1", True) is False
        assert await store.set_worker_paused("W1", False) is True
        assert (await store.snapshot()).paused_workers == set()

    @pytest.mark.asyncio
    async def test_resume_unpaused_does_not_write(self, store, state_path):
        """Should not create the state file for a no-op resume."""
        assert await store.set_worker_paused("W1", False) is False
        assert not state_path.exists()

    @pytest.mark.asyncio
    async def test_flags_do_not_touch_issues(self, store):
        """Should keep issue records intact when flags change."""
        await store.apply(1, {"state": "assigned", "assigned_worker": "W1"})
        await store.set_worker_paused("W1", True)

        record = await store.get(1)
        assert record.assigned_worker == "W1"
        assert record.state is LifecycleState.ASSIGNED
