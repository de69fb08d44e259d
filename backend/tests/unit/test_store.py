import asyncio
import json
from datetime import datetime, timezone

import pytest

from chatcore.domain.chat.errors import Forbidden, InvalidArgument, NotFound
from chatcore.domain.chat.repository import ConversationRepository
from chatcore.domain.chat.service import append_message
from chatcore.domain.chat.store import ConversationStore


async def _private(chat, a="alice", b="bob"):
    conversation, _ = await chat.directory.create_conversation(a, [b], "private")
    return conversation


@pytest.mark.asyncio
async def test_append_assigns_sequence_and_marks_sender_read(chat):
    conversation = await _private(chat)

    message = await chat.store.append(conversation.id, "alice", "  hello  ")

    assert message.sequence == 1
    assert message.content == "hello"
    assert message.sender_id == "alice"
    assert set(message.read_by) == {"alice"}
    assert message.read_by["alice"] == message.timestamp

    stored = await chat.store.load(conversation.id)
    assert stored.last_seq == 1
    assert stored.last_message.sender_id == "alice"
    assert stored.last_message.snippet == "hello"
    assert stored.updated_at == message.timestamp


@pytest.mark.asyncio
async def test_concurrent_appends_are_gapless(chat):
    conversation = await _private(chat)

    results = await asyncio.gather(
        *[
            chat.store.append(conversation.id, "alice" if i % 2 else "bob", f"msg {i}")
            for i in range(40)
        ]
    )

    assert sorted(m.sequence for m in results) == list(range(1, 41))
    window = await chat.repository.slice_messages(conversation.id, 0, 40)
    assert [m.sequence for m in window] == list(range(1, 41))
    stored = await chat.store.load(conversation.id)
    assert stored.last_message.sequence == 40


@pytest.mark.asyncio
async def test_sequences_are_independent_across_conversations(chat):
    first = await _private(chat, "alice", "bob")
    second = await _private(chat, "alice", "carol")

    await chat.store.append(first.id, "alice", "one")
    await chat.store.append(first.id, "bob", "two")
    other = await chat.store.append(second.id, "carol", "three")

    assert other.sequence == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("content", ["", "   ", "\n\t", None, 42])
async def test_append_rejects_blank_content(chat, content):
    conversation = await _private(chat)

    with pytest.raises(InvalidArgument):
        await chat.store.append(conversation.id, "alice", content)

    assert (await chat.store.load(conversation.id)).last_seq == 0


@pytest.mark.asyncio
async def test_append_rejects_too_long_content(chat, monkeypatch):
    conversation = await _private(chat)
    monkeypatch.setattr("chatcore.domain.chat.store.settings.message_max_length", 5)

    with pytest.raises(InvalidArgument) as excinfo:
        await chat.store.append(conversation.id, "alice", "too long")
    assert excinfo.value.detail == "content_too_long"


@pytest.mark.asyncio
async def test_append_by_non_member_is_forbidden(chat):
    conversation = await _private(chat)

    with pytest.raises(Forbidden):
        await chat.store.append(conversation.id, "carol", "let me in")

    assert (await chat.store.load(conversation.id)).last_seq == 0


@pytest.mark.asyncio
async def test_append_to_missing_conversation_is_not_found(chat):
    with pytest.raises(NotFound):
        await chat.store.append("missing", "alice", "hello")


@pytest.mark.asyncio
async def test_commit_hook_sees_sequence_order(chat):
    conversation = await _private(chat)
    seen = []

    await asyncio.gather(
        *[
            chat.store.append(conversation.id, "alice", f"m{i}", on_commit=lambda m: seen.append(m.sequence))
            for i in range(10)
        ]
    )

    assert seen == list(range(1, 11))


@pytest.mark.asyncio
async def test_failing_commit_hook_does_not_undo_append(chat):
    conversation = await _private(chat)

    def boom(_message):
        raise RuntimeError("hook failed")

    message = await chat.store.append(conversation.id, "alice", "kept", on_commit=boom)

    assert message.sequence == 1
    assert (await chat.store.load(conversation.id)).last_seq == 1


@pytest.mark.asyncio
async def test_attachments_are_normalised(chat):
    conversation = await _private(chat)

    message = await chat.store.append(
        conversation.id,
        "alice",
        "see attached",
        [{"url": "https://cdn.example/a.png", "filename": "a.png", "mimeType": "image/png", "sizeBytes": 10}],
    )

    assert len(message.attachments) == 1
    assert message.attachments[0].kind == "image"
    assert message.to_dict()["attachments"][0]["mimeType"] == "image/png"


@pytest.mark.asyncio
async def test_mark_read_is_idempotent(chat):
    conversation = await _private(chat)
    for i in range(3):
        await chat.store.append(conversation.id, "alice", f"m{i}")

    first = await chat.store.mark_read(conversation.id, "bob", 2)
    window = await chat.repository.slice_messages(conversation.id, 0, 3)
    read_at = [m.read_by.get("bob") for m in window]

    second = await chat.store.mark_read(conversation.id, "bob", 2)
    again = await chat.repository.slice_messages(conversation.id, 0, 3)

    assert first.marked == 2
    assert second.marked == 0
    assert read_at[0] is not None and read_at[1] is not None and read_at[2] is None
    assert [m.read_by.get("bob") for m in again] == read_at


@pytest.mark.asyncio
async def test_mark_read_clamps_to_log_length(chat):
    conversation = await _private(chat)
    await chat.store.append(conversation.id, "alice", "only one")

    receipt = await chat.store.mark_read(conversation.id, "bob", 99)

    assert receipt.up_to_sequence == 1
    assert receipt.marked == 1


@pytest.mark.asyncio
async def test_mark_read_hook_only_fires_when_something_changed(chat):
    conversation = await _private(chat)
    await chat.store.append(conversation.id, "alice", "hi")
    receipts = []

    await chat.store.mark_read(conversation.id, "bob", 1, on_commit=receipts.append)
    await chat.store.mark_read(conversation.id, "bob", 1, on_commit=receipts.append)

    assert [r.user_id for r in receipts] == ["bob"]


@pytest.mark.asyncio
@pytest.mark.parametrize("value", [-1, "3", 1.5, True, None])
async def test_mark_read_rejects_invalid_sequence(chat, value):
    conversation = await _private(chat)

    with pytest.raises(InvalidArgument):
        await chat.store.mark_read(conversation.id, "bob", value)


@pytest.mark.asyncio
async def test_mark_read_by_non_member_is_forbidden(chat):
    conversation = await _private(chat)

    with pytest.raises(Forbidden):
        await chat.store.mark_read(conversation.id, "carol", 1)


class GatedRepository(ConversationRepository):
    """Blocks appends until released, to exercise stalls and cancellation."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.finished = asyncio.Event()
        self.gated_ids: set[str] = set()

    async def append_message(self, conversation_id, **kwargs):
        if conversation_id in self.gated_ids:
            self.started.set()
            await self.release.wait()
        result = await super().append_message(conversation_id, **kwargs)
        if conversation_id in self.gated_ids:
            self.finished.set()
        return result


@pytest.mark.asyncio
async def test_stalled_conversation_does_not_block_others(chat):
    repo = GatedRepository()
    store = ConversationStore(repo)
    slow, _ = await repo.insert_conversation(
        kind="private", participants={"alice", "bob"}, display_name=None, created_at=_now()
    )
    fast, _ = await repo.insert_conversation(
        kind="private", participants={"alice", "carol"}, display_name=None, created_at=_now()
    )
    repo.gated_ids.add(slow.id)

    stalled = asyncio.create_task(store.append(slow.id, "alice", "waiting"))
    await repo.started.wait()

    message = await asyncio.wait_for(store.append(fast.id, "alice", "through"), timeout=1)
    assert message.sequence == 1

    repo.release.set()
    assert (await stalled).sequence == 1


@pytest.mark.asyncio
async def test_cancelled_caller_still_persists_append(chat):
    repo = GatedRepository()
    store = ConversationStore(repo)
    conversation, _ = await repo.insert_conversation(
        kind="private", participants={"alice", "bob"}, display_name=None, created_at=_now()
    )
    repo.gated_ids.add(conversation.id)
    delivered = []

    task = asyncio.create_task(store.append(conversation.id, "alice", "survives", on_commit=delivered.append))
    await repo.started.wait()
    task.cancel()
    repo.release.set()
    await asyncio.wait_for(repo.finished.wait(), timeout=1)
    await asyncio.sleep(0)

    with pytest.raises(asyncio.CancelledError):
        await task
    stored = await store.load(conversation.id)
    assert stored.last_seq == 1
    assert [m.content for m in delivered] == ["survives"]


async def _wait_for_result(redis, name):
    for _ in range(100):
        raw = await redis.get(name)
        if raw and json.loads(raw).get("result"):
            return json.loads(raw)
        await asyncio.sleep(0.01)
    raise AssertionError(f"{name} never completed")


@pytest.mark.asyncio
async def test_cancelled_idempotent_send_can_be_retried(chat, fake_redis):
    repo = GatedRepository()
    store = ConversationStore(repo)
    conversation, _ = await repo.insert_conversation(
        kind="private", participants={"alice", "bob"}, display_name=None, created_at=_now()
    )
    repo.gated_ids.add(conversation.id)

    task = asyncio.create_task(append_message(store, "alice", conversation.id, "hi", idempotency_key="k1"))
    await repo.started.wait()
    task.cancel()
    repo.release.set()

    with pytest.raises(asyncio.CancelledError):
        await task
    record = await _wait_for_result(fake_redis, "idem:chat.send:alice:k1")

    message, replayed = await append_message(store, "alice", conversation.id, "hi", idempotency_key="k1")
    assert replayed is True
    assert message.id == record["result"]
    assert message.sequence == 1
    assert (await store.load(conversation.id)).last_seq == 1


def _now():
    return datetime.now(timezone.utc)
