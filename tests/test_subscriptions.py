"""Tests for SUBSCRIBE requests, the notification listener and subscription renewal."""

import asyncio
from typing import List

import aiohttp
import pytest

from wemo_switch.discovery import DeviceRecord
from wemo_switch.exceptions import NetworkError, SubscriptionError
from wemo_switch.state import SwitchState
from wemo_switch.subscriptions import (
    Notification,
    SubscriptionManager,
    build_subscribe_request,
    send_subscribe,
)

from conftest import FakeEventService, get_free_port


def make_manager(callback_port: int, **kwargs) -> SubscriptionManager:
    return SubscriptionManager(
        callback_port=callback_port,
        listen_address="127.0.0.1",
        local_ip_resolver=lambda: "127.0.0.1",
        **kwargs,
    )


async def notify(callback_port: int, host: str, body: str) -> int:
    async with aiohttp.ClientSession() as session:
        async with session.request(
            "NOTIFY",
            f"http://127.0.0.1:{callback_port}/",
            params={"from": host},
            data=body,
            headers={"Content-Type": 'text/xml; charset="utf-8"', "NT": "upnp:event", "NTS": "upnp:propchange"},
        ) as response:
            await response.read()
            return response.status


def test_subscribe_request_format():
    assert build_subscribe_request("192.168.1.4:49153", "192.168.1.10", 3000, 60) == (
        b"SUBSCRIBE /upnp/event/basicevent1 HTTP/1.1\r\n"
        b"CALLBACK: <http://192.168.1.10:3000/?from=192.168.1.4:49153>\r\n"
        b"NT: upnp:event\r\n"
        b"TIMEOUT: Second-60\r\n"
        b"Host: 192.168.1.4:49153\r\n"
        b"\r\n"
    )


class TestSendSubscribe:

    @pytest.mark.asyncio
    async def test_returns_sid(self, event_service):
        sid = await send_subscribe(event_service.host_key, "127.0.0.1", 3000, 60, 1.0)
        assert sid == "uuid:fake-sid-1"
        assert event_service.requests == [build_subscribe_request(event_service.host_key, "127.0.0.1", 3000, 60)]

    @pytest.mark.asyncio
    async def test_rejected(self, event_service):
        event_service.status = "HTTP/1.1 412 Precondition Failed"
        with pytest.raises(SubscriptionError):
            await send_subscribe(event_service.host_key, "127.0.0.1", 3000, 60, 1.0)

    @pytest.mark.asyncio
    async def test_unreachable(self):
        with pytest.raises(NetworkError):
            await send_subscribe(f"127.0.0.1:{get_free_port()}", "127.0.0.1", 3000, 60, 1.0)

    @pytest.mark.asyncio
    async def test_bad_host(self):
        with pytest.raises(SubscriptionError):
            await send_subscribe("127.0.0.1", "127.0.0.1", 3000, 60, 1.0)

    @pytest.mark.asyncio
    async def test_port_out_of_range(self):
        with pytest.raises(SubscriptionError):
            await send_subscribe("127.0.0.1:70000", "127.0.0.1", 3000, 60, 1.0)


class TestSubscriptionManager:

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, callback_port):
        subs = make_manager(callback_port)
        await subs.start_server()
        await subs.start_server()
        assert subs.is_running
        await subs.stop_server()
        await subs.stop_server()
        assert not subs.is_running

    @pytest.mark.asyncio
    async def test_port_in_use(self, callback_port):
        async with make_manager(callback_port):
            with pytest.raises(NetworkError):
                await make_manager(callback_port).start_server()

    @pytest.mark.asyncio
    async def test_notification_dispatched_to_callback(self, callback_port, event_service, state_bodies):
        received: List[Notification] = []
        async with make_manager(callback_port) as subs:
            await subs.subscribe(event_service.host_key, received.append)
            assert event_service.requests[0] == build_subscribe_request(
                event_service.host_key, "127.0.0.1", callback_port, 60)
            assert await notify(callback_port, event_service.host_key, state_bodies["on"]) == 200
            assert await notify(callback_port, event_service.host_key, state_bodies["insight"]) == 200
        assert [n.state for n in received] == [SwitchState.ON, SwitchState.from_code(2)]
        assert all(n.subscription_key == event_service.host_key for n in received)

    @pytest.mark.asyncio
    async def test_coroutine_callback(self, callback_port, event_service, state_bodies):
        received: List[Notification] = []

        async def on_notification(notification: Notification) -> None:
            received.append(notification)

        async with make_manager(callback_port) as subs:
            await subs.subscribe(event_service.host_key, on_notification)
            await notify(callback_port, event_service.host_key, state_bodies["off"])
        assert [n.state for n in received] == [SwitchState.OFF]

    @pytest.mark.asyncio
    async def test_unsubscribed_host_gets_ok_without_callback(self, callback_port, event_service, state_bodies):
        received: List[Notification] = []
        async with make_manager(callback_port) as subs:
            await subs.subscribe(event_service.host_key, received.append)
            assert await notify(callback_port, "10.9.9.9:49153", state_bodies["on"]) == 200
        assert received == []

    @pytest.mark.asyncio
    async def test_ignores_bodies_without_binary_state(self, callback_port, event_service, state_bodies):
        received: List[Notification] = []
        async with make_manager(callback_port) as subs:
            await subs.subscribe(event_service.host_key, received.append)
            assert await notify(callback_port, event_service.host_key, state_bodies["other"]) == 200
            assert await notify(callback_port, event_service.host_key, "<BinaryState>x</BinaryState>") == 200
        assert received == []

    @pytest.mark.asyncio
    async def test_failing_callback_still_answers_ok(self, callback_port, event_service, state_bodies):
        def on_notification(notification: Notification) -> None:
            raise RuntimeError("callback failure")

        async with make_manager(callback_port) as subs:
            await subs.subscribe(event_service.host_key, on_notification)
            assert await notify(callback_port, event_service.host_key, state_bodies["on"]) == 200

    @pytest.mark.asyncio
    async def test_failed_subscribe_registers_nothing(self, callback_port, event_service):
        event_service.status = "HTTP/1.1 500 Internal Server Error"
        async with make_manager(callback_port) as subs:
            with pytest.raises(SubscriptionError):
                await subs.subscribe(event_service.host_key)
            assert subs.subscriptions() == []

    @pytest.mark.asyncio
    async def test_subscribe_all_reports_each_host(self, callback_port, event_service):
        bad_port = get_free_port()
        records = [
            DeviceRecord("GOOD", "127.0.0.1", event_service.port, "http://127.0.0.1/setup.xml"),
            DeviceRecord("BAD", "127.0.0.1", bad_port, "http://127.0.0.1/setup.xml"),
        ]
        async with make_manager(callback_port) as subs:
            results = await subs.subscribe_all(records)
            assert results[event_service.host_key] is None
            assert isinstance(results[f"127.0.0.1:{bad_port}"], NetworkError)
            assert subs.subscriptions() == [event_service.host_key]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, callback_port, event_service):
        subs = make_manager(callback_port)
        await subs.subscribe(event_service.host_key)
        assert subs.get_subscription(event_service.host_key).sid == "uuid:fake-sid-1"
        assert subs.unsubscribe(event_service.host_key)
        assert not subs.unsubscribe(event_service.host_key)
        assert subs.subscriptions() == []

    @pytest.mark.asyncio
    async def test_renewal_failure_is_isolated(self, callback_port, event_service):
        other = FakeEventService()
        other.server = await asyncio.start_server(other.handle, "127.0.0.1", 0)
        try:
            subs = make_manager(callback_port)
            await subs.subscribe(event_service.host_key)
            await subs.subscribe(other.host_key)
            other.status = "HTTP/1.1 412 Precondition Failed"
            event_service.sid = "uuid:fake-sid-2"
            results = await subs.renew_all()
            assert results[event_service.host_key] is None
            assert isinstance(results[other.host_key], SubscriptionError)
            assert sorted(subs.subscriptions()) == sorted([event_service.host_key, other.host_key])
            assert subs.get_subscription(event_service.host_key).sid == "uuid:fake-sid-2"
            assert len(event_service.requests) == 2
        finally:
            other.server.close()
            await other.server.wait_closed()

    @pytest.mark.asyncio
    async def test_renewal_task_resubscribes(self, callback_port, event_service):
        async with make_manager(callback_port, renewal_interval=0.1) as subs:
            await subs.subscribe(event_service.host_key)
            await asyncio.sleep(0.35)
        assert len(event_service.requests) >= 3

    @pytest.mark.asyncio
    async def test_notifications_are_counted(self, callback_port, event_service, state_bodies):
        async with make_manager(callback_port) as subs:
            await subs.subscribe(event_service.host_key)
            assert subs.get_subscription(event_service.host_key).notification_count == 0
            await notify(callback_port, event_service.host_key, state_bodies["on"])
            await notify(callback_port, event_service.host_key, state_bodies["off"])
            await notify(callback_port, event_service.host_key, state_bodies["other"])
            assert subs.get_subscription(event_service.host_key).notification_count == 2

    @pytest.mark.asyncio
    async def test_out_of_range_port_is_rejected(self, callback_port):
        subs = make_manager(callback_port)
        with pytest.raises(SubscriptionError):
            await subs.subscribe("127.0.0.1:70000")
        assert subs.subscriptions() == []

    @pytest.mark.asyncio
    async def test_subscribe_all_survives_bad_host(self, callback_port, event_service):
        records = [
            DeviceRecord("BAD", "127.0.0.1", 70000, "http://127.0.0.1:70000/setup.xml"),
            DeviceRecord("GOOD", "127.0.0.1", event_service.port, "http://127.0.0.1/setup.xml"),
        ]
        subs = make_manager(callback_port)
        results = await subs.subscribe_all(records)
        assert isinstance(results["127.0.0.1:70000"], SubscriptionError)
        assert results[event_service.host_key] is None

    @pytest.mark.asyncio
    async def test_no_dispatch_once_stopping(self, callback_port, event_service, state_bodies):
        received: List[Notification] = []
        stopping = asyncio.Event()

        async def slow_to_cancel() -> None:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                stopping.set()
                await asyncio.sleep(0.3)
                raise

        subs = make_manager(callback_port)
        subs._run_renewal_task = slow_to_cancel
        await subs.start_server()
        await subs.subscribe(event_service.host_key, received.append)
        stop_task = asyncio.create_task(subs.stop_server())
        await stopping.wait()
        # The listener is still up while the renewal task winds down
        assert await notify(callback_port, event_service.host_key, state_bodies["on"]) == 200
        await stop_task
        assert received == []
        assert subs.get_subscription(event_service.host_key).notification_count == 0

    @pytest.mark.asyncio
    async def test_renewal_loop_survives_resolver_failure(self, callback_port, event_service):
        calls = []

        def flaky_resolver() -> str:
            calls.append(1)
            if len(calls) == 2:
                raise RuntimeError("interface went away")
            return "127.0.0.1"

        subs = SubscriptionManager(
            callback_port=callback_port,
            listen_address="127.0.0.1",
            renewal_interval=0.1,
            local_ip_resolver=flaky_resolver,
        )
        async with subs:
            await subs.subscribe(event_service.host_key)
            await asyncio.sleep(0.45)
        # The initial subscribe plus at least two renewals after the failed pass
        assert len(calls) >= 4
        assert len(event_service.requests) >= 3
