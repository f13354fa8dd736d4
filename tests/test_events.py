"""
Test suite for domain events, the dispatcher and notification sinks
"""

import pytest
import asyncio
import json
from datetime import datetime, timezone

import httpx

from caisse_ledger.errors import NotificationError
from caisse_ledger.events import (
    DispatcherSink, DomainEvent, EventDispatcher, EventPayload,
    HttpNotificationSink, NotificationSink, Notifier,
)


# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)


class TestEventPayload:
    """Test EventPayload functionality"""

    def test_event_payload_serialization(self):
        timestamp = datetime(2024, 1, 1, 12, tzinfo=timezone.utc)
        event = EventPayload(
            event_type=DomainEvent.INSTALLMENT_PAID,
            contract_id="ci-1",
            payload={"month_index": 0, "amount": "10000"},
            timestamp=timestamp,
        )

        data = event.to_dict()
        assert data['event_type'] == "installment.paid"
        assert data['timestamp'] == timestamp.isoformat()

        restored = EventPayload.from_dict(data)
        assert restored.event_type == DomainEvent.INSTALLMENT_PAID
        assert restored.timestamp == timestamp
        assert restored.event_id == event.event_id

    def test_event_ids_are_unique(self):
        first = EventPayload(DomainEvent.REFUND_PAID, "ci-1", {})
        second = EventPayload(DomainEvent.REFUND_PAID, "ci-1", {})
        assert first.event_id != second.event_id


class TestEventDispatcher:
    """Test EventDispatcher functionality"""

    def test_subscribe_and_publish(self):
        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe(DomainEvent.ADVANCE_REQUESTED, received.append)

        dispatcher.publish(EventPayload(DomainEvent.ADVANCE_REQUESTED, "ci-1", {}))
        dispatcher.publish(EventPayload(DomainEvent.ADVANCE_REPAID, "ci-1", {}))

        assert [e.event_type for e in received] == [DomainEvent.ADVANCE_REQUESTED]

    def test_global_handler_receives_all_events(self):
        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe_all(received.append)

        dispatcher.publish(EventPayload(DomainEvent.CONTRACT_ACTIVATED, "ci-1", {}))
        dispatcher.publish(EventPayload(DomainEvent.CONTRACT_DEFAULTED, "ci-1", {}))
        assert len(received) == 2

    def test_handler_exceptions_dont_break_publisher(self):
        dispatcher = EventDispatcher()
        received = []

        def broken(event):
            raise RuntimeError("handler bug")

        dispatcher.subscribe(DomainEvent.REFUND_REQUESTED, broken)
        dispatcher.subscribe(DomainEvent.REFUND_REQUESTED, received.append)
        dispatcher.publish(EventPayload(DomainEvent.REFUND_REQUESTED, "ci-1", {}))
        assert len(received) == 1

    def test_unsubscribe_and_counts(self):
        dispatcher = EventDispatcher()
        handler = lambda event: None
        dispatcher.subscribe(DomainEvent.REFUND_PAID, handler)
        dispatcher.subscribe_all(handler)
        assert dispatcher.get_handler_count(DomainEvent.REFUND_PAID) == 1
        assert dispatcher.get_handler_count() == 2

        dispatcher.unsubscribe(DomainEvent.REFUND_PAID, handler)
        dispatcher.unsubscribe(DomainEvent.REFUND_PAID, handler)
        assert dispatcher.get_handler_count(DomainEvent.REFUND_PAID) == 0

        dispatcher.clear()
        assert dispatcher.get_handler_count() == 0


class TestHttpNotificationSink:
    """Webhook delivery through httpx"""

    @pytest.mark.asyncio
    async def test_posts_event_json(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sink = HttpNotificationSink("https://hooks.example.test/ledger", api_key="secret",
                                    client=client)
        event = EventPayload(DomainEvent.INSTALLMENT_PAID, "ci-1", {"month_index": 2})
        await sink.emit(event)
        await sink.close()

        assert len(requests) == 1
        assert requests[0].headers["Authorization"] == "Bearer secret"
        body = json.loads(requests[0].content)
        assert body['event_type'] == "installment.paid"
        assert body['payload'] == {"month_index": 2}

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        sink = HttpNotificationSink("https://hooks.example.test/ledger", client=client)

        with pytest.raises(NotificationError) as exc_info:
            await sink.emit(EventPayload(DomainEvent.REFUND_PAID, "ci-1", {}))
        assert exc_info.value.context['status_code'] == 503
        await sink.close()

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sink = HttpNotificationSink("https://hooks.example.test/ledger", client=client)

        with pytest.raises(NotificationError):
            await sink.emit(EventPayload(DomainEvent.REFUND_PAID, "ci-1", {}))
        await sink.close()


class HangingSink(NotificationSink):
    async def emit(self, event):
        await asyncio.sleep(5)


class BrokenSink(NotificationSink):
    async def emit(self, event):
        raise NotificationError("webhook down")


class TestNotifier:
    """Emission failures never reach the caller"""

    @pytest.mark.asyncio
    async def test_delivers_through_dispatcher(self):
        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe_all(received.append)
        notifier = Notifier(DispatcherSink(dispatcher))

        event = await notifier.emit(DomainEvent.CONTRACT_ACTIVATED, "ci-1", {"installments": 12})
        assert received == [event]

    @pytest.mark.asyncio
    async def test_timeout_is_swallowed(self):
        notifier = Notifier(HangingSink(), timeout=0.01)
        event = await notifier.emit(DomainEvent.REFUND_PAID, "ci-1")
        assert event.event_type == DomainEvent.REFUND_PAID

    @pytest.mark.asyncio
    async def test_sink_failure_is_swallowed(self):
        notifier = Notifier(BrokenSink())
        event = await notifier.emit(DomainEvent.REFUND_PAID, "ci-1", {"request_id": "r-1"})
        assert event.payload == {"request_id": "r-1"}

    @pytest.mark.asyncio
    async def test_without_sink(self):
        event = await Notifier().emit(DomainEvent.ADVANCE_REPAID, "ci-1")
        assert event.payload == {}

    @pytest.mark.asyncio
    async def test_emit_all_keeps_order(self):
        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe_all(received.append)
        notifier = Notifier(DispatcherSink(dispatcher))

        await notifier.emit_all([
            (DomainEvent.ADVANCE_REPAID, "ci-1", {}),
            (DomainEvent.INSTALLMENT_PAID, "ci-1", {}),
            (DomainEvent.CONTRACT_FULLY_PAID, "ci-1", {}),
        ])
        assert [e.event_type for e in received] == [
            DomainEvent.ADVANCE_REPAID, DomainEvent.INSTALLMENT_PAID, DomainEvent.CONTRACT_FULLY_PAID,
        ]
