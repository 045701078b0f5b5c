import json
from datetime import datetime, timezone

import pytest

from feedsync.models import (
    DeliveryState,
    EventType,
    FeedEvent,
    Message,
    MessageKind,
    TEMP_ID_PREFIX,
    is_temp_id,
    parse_timestamp,
)


class TestParseTimestamp:

    def test_iso_with_z_suffix(self):
        parsed = parse_timestamp("2024-01-01T12:00:00Z")
        assert parsed == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_naive_iso_is_treated_as_utc(self):
        assert parse_timestamp("2024-01-01T12:00:00").tzinfo is timezone.utc

    def test_epoch_seconds_and_milliseconds_agree(self):
        assert parse_timestamp(1704110400) == parse_timestamp(1704110400000)

    @pytest.mark.parametrize("value", [None, "", [], True])
    def test_rejects_unusable_values(self, value):
        with pytest.raises(ValueError):
            parse_timestamp(value)


class TestMessage:

    def test_from_dict_user_message(self):
        message = Message.from_dict({
            "id": 42,
            "content": "hi",
            "author_id": "alice",
            "created_at": "2024-01-01T12:00:00Z",
        })
        assert message.id == "42"
        assert message.kind is MessageKind.USER
        assert message.delivery_state is DeliveryState.CONFIRMED
        assert message.author_id == "alice"
        assert message.system_type is None

    def test_from_dict_system_message_parses_json_data(self):
        message = Message.from_dict({
            "id": "m1",
            "content": "Task created",
            "type": "task_created",
            "author_id": "system",
            "created_at": "2024-01-01T12:00:00Z",
            "system_data": json.dumps({"task_id": "t1"}),
        })
        assert message.kind is MessageKind.SYSTEM
        assert message.system_type == "task_created"
        assert message.system_data == {"task_id": "t1"}
        assert message.author_id is None

    def test_unparseable_system_data_becomes_none(self):
        message = Message.from_dict({
            "id": "m1",
            "type": "poll_created",
            "created_at": "2024-01-01T12:00:00Z",
            "system_data": "{not json",
        })
        assert message.system_data is None

    def test_unknown_type_is_accepted_as_system(self, caplog):
        message = Message.from_dict({"id": "m1", "type": "mystery", "created_at": 0})
        assert message.kind is MessageKind.SYSTEM
        assert message.system_type == "mystery"
        assert "Unknown message type" in caplog.text

    def test_from_dict_requires_id(self):
        with pytest.raises(ValueError):
            Message.from_dict({"content": "x", "created_at": 0})

    def test_optimistic_uses_temp_namespace(self):
        message = Message.optimistic("hello", "alice", attempt=2)
        assert message.id.startswith(TEMP_ID_PREFIX)
        assert is_temp_id(message.id)
        assert message.is_optimistic
        assert message.retry_attempt == 2

    def test_optimistic_ids_are_unique(self):
        ids = {Message.optimistic("x", "alice").id for _ in range(50)}
        assert len(ids) == 50

    def test_with_state_returns_copy(self):
        message = Message.optimistic("x", "alice")
        failed = message.with_state(DeliveryState.FAILED, error="boom")
        assert failed.is_failed and failed.error == "boom"
        assert message.is_optimistic


class TestFeedEvent:

    def test_message_event(self):
        event = FeedEvent.from_dict({
            "event_type": "update",
            "payload": {"id": "m1", "content": "edited", "created_at": 0},
        })
        assert event.event_type is EventType.UPDATE
        assert event.payload.content == "edited"

    def test_typing_event_requires_participant(self):
        with pytest.raises(ValueError):
            FeedEvent.from_dict({"event_type": "typing_start"})

    def test_message_event_requires_payload(self):
        with pytest.raises(ValueError):
            FeedEvent.from_dict({"event_type": "create"})

    def test_unknown_event_type(self):
        with pytest.raises(ValueError):
            FeedEvent.from_dict({"event_type": "explode"})
