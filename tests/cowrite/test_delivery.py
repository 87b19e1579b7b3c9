"""Tests for the blocking wait/notify delivery protocol."""

import asyncio

import pytest

from cowrite.delivery import CommentDelivery, DeliveryKind
from cowrite.events import StoreEvent
from cowrite.models import Comment
from cowrite.store import CommentStore

FILE = "/project/doc.md"


@pytest.fixture
def store() -> CommentStore:
    return CommentStore()


@pytest.fixture
def delivery(store) -> CommentDelivery:
    return CommentDelivery(store, default_timeout=1.0)


def add(store: CommentStore, body: str = "Fix this") -> Comment:
    return store.add(FILE, 10, 5, "hello", body)


def listeners(store: CommentStore) -> int:
    return store.events.listener_count(StoreEvent.NEW_COMMENT) + store.events.listener_count(
        StoreEvent.COMMENT_REOPENED
    )


async def settle() -> None:
    # Let a waiting task subscribe before the test mutates the store
    for _ in range(5):
        await asyncio.sleep(0)


# ============================================================================
# Backlog
# ============================================================================


@pytest.mark.asyncio
async def test_existing_pending_comment_returned_immediately(store, delivery):
    comment = add(store)

    result = await delivery.wait_for_comment(timeout=5)

    assert result.kind == DeliveryKind.NEW_COMMENT
    assert result.comment.id == comment.id
    assert result.delivered


@pytest.mark.asyncio
async def test_same_comment_not_redelivered(store, delivery):
    add(store)
    await delivery.wait_for_comment(timeout=5)

    result = await delivery.wait_for_comment(timeout=0.05)

    assert result.kind == DeliveryKind.TIMEOUT
    assert result.pending_count == 1
    assert not result.delivered


@pytest.mark.asyncio
async def test_backlog_delivered_in_offset_order(store, delivery):
    late = store.add(FILE, 40, 1, "z", "late")
    early = store.add(FILE, 2, 1, "a", "early")

    first = await delivery.wait_for_comment(timeout=1)
    second = await delivery.wait_for_comment(timeout=1)

    assert [first.comment.id, second.comment.id] == [early.id, late.id]


@pytest.mark.asyncio
async def test_backlog_follow_up_when_replies_grew(store, delivery):
    comment = add(store)
    await delivery.wait_for_comment(timeout=1)
    store.add_reply(comment.id, "agent", "Done")
    store.add_reply(comment.id, "user", "Not quite")

    result = await delivery.wait_for_comment(timeout=1)

    assert result.kind == DeliveryKind.FOLLOW_UP
    assert result.comment.id == comment.id
    assert result.follow_up == "Not quite"


@pytest.mark.asyncio
async def test_answered_comments_not_in_backlog(store, delivery):
    comment = add(store)
    store.add_reply(comment.id, "agent", "Done")

    result = await delivery.wait_for_comment(timeout=0.05)

    assert result.kind == DeliveryKind.TIMEOUT
    assert result.pending_count == 0


def test_next_backlog_does_not_block(store, delivery):
    assert delivery.next_backlog() is None
    comment = add(store)

    result = delivery.next_backlog()

    assert result.comment.id == comment.id
    assert delivery.was_delivered(comment.id)
    assert delivery.next_backlog() is None


def test_reset_forgets_deliveries(store, delivery):
    comment = add(store)
    delivery.next_backlog()

    delivery.reset()

    assert not delivery.was_delivered(comment.id)
    assert delivery.next_backlog().comment.id == comment.id


# ============================================================================
# Blocking
# ============================================================================


@pytest.mark.asyncio
async def test_blocked_wait_wakes_on_new_comment(store, delivery):
    task = asyncio.create_task(delivery.wait_for_comment(timeout=5))
    await settle()
    assert not task.done()

    comment = add(store)
    result = await asyncio.wait_for(task, 1)

    assert result.kind == DeliveryKind.NEW_COMMENT
    assert result.comment.id == comment.id
    assert listeners(store) == 0


@pytest.mark.asyncio
async def test_blocked_wait_wakes_on_comment_from_another_thread(store, delivery):
    task = asyncio.create_task(delivery.wait_for_comment(timeout=5))
    await settle()

    comment = await asyncio.to_thread(add, store)
    result = await asyncio.wait_for(task, 1)

    assert result.comment.id == comment.id


@pytest.mark.asyncio
async def test_blocked_wait_wakes_on_user_follow_up(store, delivery):
    comment = add(store)
    await delivery.wait_for_comment(timeout=1)
    store.add_reply(comment.id, "agent", "Done")

    task = asyncio.create_task(delivery.wait_for_comment(timeout=5))
    await settle()
    store.add_reply(comment.id, "user", "Make it shorter")
    result = await asyncio.wait_for(task, 1)

    assert result.kind == DeliveryKind.FOLLOW_UP
    assert result.follow_up == "Make it shorter"
    assert result.comment.status.value == "pending"


@pytest.mark.asyncio
async def test_blocked_wait_wakes_on_reopen(store, delivery):
    comment = add(store)
    await delivery.wait_for_comment(timeout=1)
    store.resolve(comment.id)

    task = asyncio.create_task(delivery.wait_for_comment(timeout=5))
    await settle()
    store.reopen(comment.id)
    result = await asyncio.wait_for(task, 1)

    assert result.kind == DeliveryKind.FOLLOW_UP
    assert result.comment.id == comment.id
    assert result.follow_up is None


@pytest.mark.asyncio
async def test_second_comment_left_for_next_call(store, delivery):
    task = asyncio.create_task(delivery.wait_for_comment(timeout=5))
    await settle()

    first = add(store, "one")
    second = add(store, "two")
    result = await asyncio.wait_for(task, 1)
    following = await delivery.wait_for_comment(timeout=1)

    assert result.comment.id == first.id
    assert following.comment.id == second.id


@pytest.mark.asyncio
async def test_comment_found_by_reload_is_delivered(tmp_path):
    from cowrite.storage import write_comments

    path = tmp_path / ".cowrite-comments.json"
    store = CommentStore(path)
    delivery = CommentDelivery(store)
    external = Comment(file=FILE, offset=0, length=3, selected_text="abc", comment="from the editor")

    task = asyncio.create_task(delivery.wait_for_comment(timeout=5))
    await settle()
    write_comments(path, [external])
    store.reload()
    result = await asyncio.wait_for(task, 1)

    assert result.kind == DeliveryKind.NEW_COMMENT
    assert result.comment.id == external.id


@pytest.mark.asyncio
async def test_each_consumer_tracks_its_own_deliveries(store):
    first = CommentDelivery(store)
    second = CommentDelivery(store)
    comment = add(store)

    assert (await first.wait_for_comment(timeout=1)).comment.id == comment.id
    assert (await second.wait_for_comment(timeout=1)).comment.id == comment.id


# ============================================================================
# Timeout and cancellation
# ============================================================================


@pytest.mark.asyncio
async def test_timeout_removes_listeners(store, delivery):
    result = await delivery.wait_for_comment(timeout=0.05)

    assert result.kind == DeliveryKind.TIMEOUT
    assert result.pending_count == 0
    assert listeners(store) == 0


@pytest.mark.asyncio
async def test_default_timeout_used(store):
    delivery = CommentDelivery(store, default_timeout=0.05)
    result = await asyncio.wait_for(delivery.wait_for_comment(), 1)
    assert result.kind == DeliveryKind.TIMEOUT


@pytest.mark.asyncio
async def test_cancel_event_ends_wait(store, delivery):
    cancel = asyncio.Event()
    task = asyncio.create_task(delivery.wait_for_comment(timeout=5, cancel=cancel))
    await settle()

    cancel.set()
    result = await asyncio.wait_for(task, 1)

    assert result.kind == DeliveryKind.CANCELLED
    assert listeners(store) == 0


@pytest.mark.asyncio
async def test_comment_after_cancel_goes_to_next_call(store, delivery):
    cancel = asyncio.Event()
    cancel.set()
    result = await delivery.wait_for_comment(timeout=5, cancel=cancel)
    assert result.kind == DeliveryKind.CANCELLED

    comment = add(store)
    following = await delivery.wait_for_comment(timeout=1)

    assert following.comment.id == comment.id


@pytest.mark.asyncio
async def test_task_cancellation_propagates_and_cleans_up(store, delivery):
    task = asyncio.create_task(delivery.wait_for_comment(timeout=5))
    await settle()

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert listeners(store) == 0
    comment = add(store)
    assert not delivery.was_delivered(comment.id)
