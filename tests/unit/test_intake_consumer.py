import json
from unittest import mock

from blob_ingestion.domain.commands import IngestBlob
from blob_ingestion.entrypoints import redis_eventconsumer
from blob_ingestion.service_layer.dispatcher import CapacityExceeded, DispatcherClosed


def _message(**overrides):
    body = {
        "event_id": "e1",
        "event_type": "blob.created",
        "object_key": "invoice.pdf",
        "container": "in",
        "size": 1024,
    }
    body.update(overrides)
    return json.dumps(body).encode("utf-8")


def test_valid_message_is_handed_to_the_bus():
    bus = mock.Mock()
    bus.handle.return_value = "item-1"

    status = redis_eventconsumer.handle_message(_message(), bus)

    assert status == redis_eventconsumer.ACCEPTED
    command = bus.handle.call_args[0][0]
    assert isinstance(command, IngestBlob)
    assert command.event.object_key == "invoice.pdf"


def test_malformed_message_is_rejected():
    bus = mock.Mock()

    status = redis_eventconsumer.handle_message(b"not json", bus)

    assert status == redis_eventconsumer.REJECTED
    bus.handle.assert_not_called()


def test_non_creation_message_is_ignored():
    bus = mock.Mock()

    status = redis_eventconsumer.handle_message(_message(event_type="blob.deleted"), bus)

    assert status == redis_eventconsumer.IGNORED
    bus.handle.assert_not_called()


def test_message_filtered_by_handler_is_ignored():
    bus = mock.Mock()
    bus.handle.return_value = None

    assert redis_eventconsumer.handle_message(_message(), bus) == redis_eventconsumer.IGNORED


def test_full_dispatcher_defers_message():
    bus = mock.Mock()
    bus.handle.side_effect = CapacityExceeded("intake queue is full (1 events)")

    assert redis_eventconsumer.handle_message(_message(), bus) == redis_eventconsumer.DEFERRED


def test_closed_dispatcher_defers_message():
    bus = mock.Mock()
    bus.handle.side_effect = DispatcherClosed("dispatcher is not accepting events")

    assert redis_eventconsumer.handle_message(_message(), bus) == redis_eventconsumer.DEFERRED
