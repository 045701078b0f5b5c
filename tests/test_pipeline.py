import asyncio
from unittest.mock import MagicMock

import pytest

from conftest import FakeTransport, settle, wait_for

from feedsync.errors import NetworkError, PermissionDeniedError, ValidationError
from feedsync.models import DeliveryState
from feedsync.pipeline import OptimisticSendPipeline
from feedsync.retry_queue import RetryQueue


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def callbacks():
    return MagicMock()


@pytest.fixture
def pipeline(transport, store, scheduler, callbacks):
    async def resend(content, attempt):
        return await instance.send(content, attempt)

    queue = RetryQueue(store, scheduler, resend)
    instance = OptimisticSendPipeline(
        "team-1", "alice", transport, store, queue,
        max_attempts=3,
        max_content_length=20,
        on_confirmed=callbacks.confirmed,
        on_terminal_failure=callbacks.terminal,
    )
    return instance


class TestValidation:

    @pytest.mark.parametrize("content", [None, "", "   \n\t"])
    def test_empty_content_is_ignored(self, pipeline, content):
        assert pipeline.validate_content(content) is None

    def test_content_is_trimmed(self, pipeline):
        assert pipeline.validate_content("  hi  ") == "hi"

    def test_over_length_content_is_rejected(self, pipeline):
        with pytest.raises(ValidationError):
            pipeline.validate_content("x" * 21)


@pytest.mark.asyncio
async def test_placeholder_visible_while_send_in_flight(pipeline, transport, store, callbacks):
    transport.send_gate = asyncio.Event()
    send = asyncio.create_task(pipeline.send("hello"))
    await settle()

    assert len(store) == 1
    placeholder = store.messages[0]
    assert placeholder.is_optimistic
    assert placeholder.id.startswith("temp-")
    assert pipeline.in_flight == 1

    transport.send_gate.set()
    temp_id = await send

    assert temp_id == placeholder.id
    assert temp_id not in store
    assert pipeline.in_flight == 0
    confirmed_temp_id, canonical = callbacks.confirmed.call_args[0]
    assert confirmed_temp_id == temp_id
    assert canonical.content == "hello"


@pytest.mark.asyncio
async def test_accepted_send_without_record_is_not_retried(pipeline, transport, store, scheduler, callbacks):
    transport.unreadable_ack = True
    temp_id = await pipeline.send("hello")

    assert temp_id not in store
    assert store.messages == []
    assert scheduler.pending_count == 0
    assert transport.send_calls == ["hello"]
    callbacks.confirmed.assert_called_once_with(temp_id, None)
    callbacks.terminal.assert_not_called()


@pytest.mark.asyncio
async def test_terminal_error_skips_retry_queue(pipeline, transport, store, callbacks):
    transport.send_errors.append(PermissionDeniedError("not a member"))
    temp_id = await pipeline.send("hello")

    record = store.get(temp_id)
    assert record.is_failed
    assert record.error == "not a member"
    assert len(pipeline.retry_queue) == 0
    callbacks.terminal.assert_called_once()


@pytest.mark.asyncio
async def test_unknown_exception_is_treated_as_transient(pipeline, transport, store):
    transport.send_errors.append(RuntimeError("socket exploded"))
    temp_id = await pipeline.send("hello")
    assert store.get(temp_id).is_failed
    assert temp_id in pipeline.retry_queue


@pytest.mark.asyncio
async def test_retry_me_ends_failed_after_three_retries(pipeline, transport, store, scheduler, callbacks):
    transport.always_fail_with = NetworkError("offline")

    await pipeline.send("retry-me")
    await wait_for(lambda: callbacks.terminal.called)
    await settle()

    assert transport.send_calls == ["retry-me"] * 4
    assert len(store) == 1
    record = store.messages[0]
    assert record.delivery_state is DeliveryState.FAILED
    assert record.retry_attempt == 3
    assert record.content == "retry-me"
    assert len(pipeline.retry_queue) == 0
    assert scheduler.pending_count == 0


@pytest.mark.asyncio
async def test_manual_retry_resets_attempt_counter(pipeline, transport, store, callbacks):
    transport.always_fail_with = NetworkError("offline")
    await pipeline.send("retry-me")
    await wait_for(lambda: callbacks.terminal.called)
    failed_id = store.messages[0].id

    transport.always_fail_with = None
    transport.send_errors.append(NetworkError("still flaky"))
    new_id = await pipeline.retry_failed(failed_id)

    assert failed_id not in store
    record = store.get(new_id)
    assert record.is_failed
    assert record.retry_attempt == 0
    assert pipeline.retry_queue.get(new_id).attempt == 1


@pytest.mark.asyncio
async def test_manual_retry_racing_scheduled_retry_sends_once(pipeline, transport, store):
    transport.send_errors.append(NetworkError("blip"))
    failed_id = await pipeline.send("hello")
    assert failed_id in pipeline.retry_queue

    await pipeline.retry_failed(failed_id)
    await asyncio.sleep(0.05)

    assert transport.send_calls == ["hello", "hello"]
    assert len(store) == 0


@pytest.mark.asyncio
async def test_retry_failed_ignores_non_failed_records(pipeline, transport):
    temp_id = await pipeline.send("hello")
    assert await pipeline.retry_failed(temp_id) is None
    assert await pipeline.retry_failed("nope") is None


@pytest.mark.asyncio
async def test_dismiss_drops_record_and_queue_item(pipeline, transport, store, scheduler):
    transport.send_errors.append(NetworkError("blip"))
    failed_id = await pipeline.send("hello")

    assert pipeline.dismiss(failed_id) is True
    assert failed_id not in store
    assert failed_id not in pipeline.retry_queue
    assert scheduler.pending_count == 0
    assert pipeline.dismiss(failed_id) is False


@pytest.mark.asyncio
async def test_send_into_closed_store_returns_none(pipeline, transport, store):
    store.close()
    assert await pipeline.send("hello") is None
    assert transport.send_calls == []
