#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
SubscriptionManager -- manages WeMo device event notifications:

  1. Sends UPnP SUBSCRIBE requests asking devices to push state changes to a local callback URL
  2. Runs an HTTP listener (aiohttp) that receives those notifications and dispatches them to
     per-device callbacks
  3. Runs a background task that periodically renews every subscription, since subscriptions
     silently lapse after their TTL

You should only ever need one of these objects.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
import time

from aiohttp import web

from .internal_types import *
from .pkg_logging import logger
from .constants import (
    BASIC_EVENT_EVENT_PATH,
    CALLBACK_TIMEOUT,
    DEFAULT_CALLBACK_PORT,
    DEFAULT_SUBSCRIPTION_TTL,
    RENEWAL_INTERVAL,
    SUBSCRIBE_REQUEST_TIMEOUT,
)
from .exceptions import (
    WemoError,
    NetworkError,
    ParsingError,
    SubscriptionError,
    WemoTimeoutError,
)
from .discovery import DeviceRecord
from .state import SwitchState, has_binary_state, parse_binary_state
from .util import get_local_ip, parse_host_and_port, split_bytes_at_lf_or_crlf

class Notification:
    """A state change pushed by a subscribed device."""

    subscription_key: str
    """The "ip:port" host key of the subscription"""

    state: SwitchState

    def __init__(self, subscription_key: str, state: SwitchState):
        self.subscription_key = subscription_key
        self.state = state

    def __str__(self) -> str:
        return f"Notification({self.subscription_key}: {self.state})"

    def __repr__(self) -> str:
        return str(self)

NotificationCallback = Callable[[Notification], Union[None, Awaitable[None]]]
"""A handler for notifications. May be a plain function (run in the default executor)
   or a coroutine function."""

class Subscription:
    host_key: str
    """The "ip:port" of the subscribed device"""

    callback: Optional[NotificationCallback]

    sid: Optional[str] = None
    """The SID header returned by the device for the most recent SUBSCRIBE, if any"""

    subscribed_at: float
    """time.monotonic() at the most recent successful SUBSCRIBE"""

    notification_count: int
    """The number of state notifications accepted for this subscription"""

    def __init__(self, host_key: str, callback: Optional[NotificationCallback]=None, sid: Optional[str]=None):
        self.host_key = host_key
        self.callback = callback
        self.sid = sid
        self.subscribed_at = time.monotonic()
        self.notification_count = 0

    def __str__(self) -> str:
        return f"Subscription({self.host_key}, sid={self.sid})"

def build_subscribe_request(host: str, local_ip: str, callback_port: int, subscription_ttl: int) -> bytes:
    """The SUBSCRIBE request asking `host` to send basic events to our callback listener."""
    callback_url = f"http://{local_ip}:{callback_port}/?from={host}"
    return (
        f"SUBSCRIBE {BASIC_EVENT_EVENT_PATH} HTTP/1.1\r\n"
        f"CALLBACK: <{callback_url}>\r\n"
        "NT: upnp:event\r\n"
        f"TIMEOUT: Second-{subscription_ttl}\r\n"
        f"Host: {host}\r\n"
        "\r\n"
      ).encode('utf-8')

async def send_subscribe(
        host: str,
        local_ip: str,
        callback_port: int,
        subscription_ttl: int,
        timeout: float=SUBSCRIBE_REQUEST_TIMEOUT,
      ) -> Optional[str]:
    """Send one SUBSCRIBE request to `host` ("ip:port") and read the response headers.

    Returns the SID header of the response, if any. Raises NetworkError if the device cannot be
    reached, WemoTimeoutError if it does not answer within `timeout` seconds, and SubscriptionError
    if it answers with a non-2xx status.
    """
    try:
        ip_address, port = parse_host_and_port(host)
    except ParsingError as e:
        raise SubscriptionError(f"Subscription host must be 'ip:port': {host!r}") from e
    if port is None:
        raise SubscriptionError(f"Subscription host must be 'ip:port': {host!r}")
    data = build_subscribe_request(host, local_ip, callback_port, subscription_ttl)

    async def exchange() -> bytes:
        reader, writer = await asyncio.open_connection(ip_address, port)
        try:
            writer.write(data)
            await writer.drain()
            return await reader.readuntil(b'\r\n\r\n')
        finally:
            writer.close()

    logger.debug(f"Sending SUBSCRIBE to {host}")
    try:
        response = await asyncio.wait_for(exchange(), timeout)
    except asyncio.TimeoutError as e:
        raise WemoTimeoutError(f"Timed out subscribing to {host}") from e
    except (asyncio.IncompleteReadError, asyncio.LimitOverrunError) as e:
        raise SubscriptionError(f"{host} closed the connection without answering SUBSCRIBE") from e
    except OSError as e:
        raise NetworkError(f"Unable to subscribe to {host}: {e}") from e

    lines = split_bytes_at_lf_or_crlf(response)
    status_line = lines[0].decode('utf-8', errors='replace')
    parts = status_line.split(None, 2)
    if len(parts) < 2 or not parts[0].upper().startswith('HTTP/') or not parts[1].startswith('2'):
        raise SubscriptionError(f"{host} rejected SUBSCRIBE: {status_line!r}")
    sid: Optional[str] = None
    for line in lines[1:]:
        name, sep, value = line.decode('utf-8', errors='replace').partition(':')
        if len(sep) != 0 and name.strip().lower() == 'sid':
            sid = value.strip()
    logger.debug(f"Subscribed to {host}, sid={sid}")
    return sid

class SubscriptionManager(AsyncContextManager['SubscriptionManager']):
    """
    Manages push notifications from any number of WeMo devices.

    The subscription table is shared by the public API, the inbound listener and the renewal
    task; it is guarded by a single lock that is never held across an await. The listener
    never adds or removes entries; it only counts notifications on existing ones.

    Usage:
        async with SubscriptionManager(callback_port=3000, subscription_ttl=60) as subs:
            await subs.subscribe("192.168.1.4:49153", print)
            ...
    """

    callback_port: int
    """The port the inbound HTTP listener binds to, and that devices are told to call back."""

    subscription_ttl: int
    """The TTL in seconds requested for each subscription."""

    renewal_interval: float
    """The period at which all subscriptions are renewed."""

    listen_address: str
    request_timeout: float
    callback_timeout: float
    local_ip_resolver: Callable[[], str]

    _subscriptions: Dict[str, Subscription]
    _table_lock: threading.Lock
    _runner: Optional[web.AppRunner] = None
    _renewal_task: Optional[asyncio.Task[None]] = None
    _accepting: bool = False

    def __init__(
            self,
            callback_port: int=DEFAULT_CALLBACK_PORT,
            subscription_ttl: int=DEFAULT_SUBSCRIPTION_TTL,
            renewal_interval: float=RENEWAL_INTERVAL,
            listen_address: str="0.0.0.0",
            request_timeout: float=SUBSCRIBE_REQUEST_TIMEOUT,
            callback_timeout: float=CALLBACK_TIMEOUT,
            local_ip_resolver: Callable[[], str]=get_local_ip,
          ) -> None:
        self.callback_port = callback_port
        self.subscription_ttl = subscription_ttl
        self.renewal_interval = renewal_interval
        self.listen_address = listen_address
        self.request_timeout = request_timeout
        self.callback_timeout = callback_timeout
        self.local_ip_resolver = local_ip_resolver
        self._subscriptions = {}
        self._table_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    async def _send_subscribe(self, host: str) -> Optional[str]:
        local_ip = self.local_ip_resolver()
        return await send_subscribe(host, local_ip, self.callback_port, self.subscription_ttl, self.request_timeout)

    async def subscribe(self, host: str, callback: Optional[NotificationCallback]=None) -> None:
        """Subscribe to push notifications from the device at `host` ("ip:port").

        This should be done after start_server() to avoid missing notifications. If the
        SUBSCRIBE request fails, the error is raised and nothing is registered.
        """
        sid = await self._send_subscribe(host)
        with self._table_lock:
            self._subscriptions[host] = Subscription(host, callback, sid)
        logger.info(f"Subscribed to {host}")

    async def subscribe_all(
            self,
            records: Iterable[DeviceRecord],
            callback: Optional[NotificationCallback]=None,
          ) -> Dict[str, Optional[WemoError]]:
        """Subscribe to every device in `records` (e.g., DeviceSearch results).

        Returns a dict mapping each host key to None on success or to the error that
        prevented that subscription. One failure does not stop the others.
        """
        results: Dict[str, Optional[WemoError]] = {}
        for record in records:
            try:
                await self.subscribe(record.host_key, callback)
                results[record.host_key] = None
            except WemoError as e:
                logger.warning(f"Unable to subscribe to {record.host_key}: {e}")
                results[record.host_key] = e
        return results

    def unsubscribe(self, host: str) -> bool:
        """Stop dispatching notifications for `host`. No UNSUBSCRIBE is sent; the device's
        subscription simply lapses. Returns True if there was a subscription."""
        with self._table_lock:
            removed = self._subscriptions.pop(host, None)
        return removed is not None

    def subscriptions(self) -> List[str]:
        """The host keys of all current subscriptions."""
        with self._table_lock:
            return list(self._subscriptions.keys())

    def get_subscription(self, host: str) -> Optional[Subscription]:
        with self._table_lock:
            return self._subscriptions.get(host)

    async def start_server(self) -> None:
        """Start the HTTP listener and the renewal task. Does nothing if already started."""
        if self._runner is not None:
            return
        app = web.Application()
        app.router.add_route('*', '/', self._handle_notification)
        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.listen_address, self.callback_port)
        try:
            await site.start()
        except OSError as e:
            await runner.cleanup()
            raise NetworkError(f"Unable to listen on {self.listen_address}:{self.callback_port}: {e}") from e
        self._runner = runner
        self._accepting = True
        logger.info(f"Notification listener started on {self.listen_address}:{self.callback_port}")
        if self._renewal_task is None:
            self._renewal_task = asyncio.create_task(self._run_renewal_task())

    async def stop_server(self) -> None:
        """Stop the renewal task and the HTTP listener. Does nothing if not started.

        Callbacks already running may finish, but no new notifications are dispatched.
        """
        self._accepting = False
        if self._renewal_task is not None:
            self._renewal_task.cancel()
            try:
                await self._renewal_task
            except asyncio.CancelledError:
                pass
            except BaseException as e:
                logger.warning(f"Exception while cancelling renewal task: {e}")
            self._renewal_task = None
        if self._runner is not None:
            runner = self._runner
            self._runner = None
            await runner.cleanup()
            logger.info("Notification listener stopped")

    async def renew_all(self) -> Dict[str, Optional[WemoError]]:
        """Re-send SUBSCRIBE for every subscription.

        Each host is renewed independently; a failure is logged and recorded in the result
        (host key -> error, or None on success) and does not affect the other hosts.
        """
        with self._table_lock:
            hosts = list(self._subscriptions.keys())
        results: Dict[str, Optional[WemoError]] = {}
        for host in hosts:
            logger.debug(f"Renewing subscription to {host}")
            try:
                sid = await self._send_subscribe(host)
                with self._table_lock:
                    subscription = self._subscriptions.get(host)
                    if subscription is not None:
                        subscription.sid = sid
                        subscription.subscribed_at = time.monotonic()
                results[host] = None
            except WemoError as e:
                logger.warning(f"Unable to renew subscription to {host}: {e}")
                results[host] = e
        return results

    async def _run_renewal_task(self) -> None:
        logger.debug(f"Subscription renewal task starting, renewing every {self.renewal_interval} seconds")
        try:
            while True:
                await asyncio.sleep(self.renewal_interval)
                try:
                    await self.renew_all()
                except Exception as e:
                    logger.warning(f"Subscription renewal pass failed; will retry in {self.renewal_interval} seconds: {e}")
        except asyncio.CancelledError:
            logger.debug("Subscription renewal task cancelled; exiting")
            raise

    async def _handle_notification(self, request: web.Request) -> web.Response:
        # Always answer 200; devices drop subscriptions that get error responses
        try:
            host = request.query.get('from')
            body = await request.text()
            if host is None or not has_binary_state(body):
                logger.debug(f"Ignoring notification without BinaryState (from={host})")
                return web.Response(status=200)
            try:
                state = parse_binary_state(body)
            except WemoError as e:
                logger.debug(f"Ignoring unparseable notification from {host}: {e}")
                return web.Response(status=200)
            if not self._accepting:
                return web.Response(status=200)
            callback: Optional[NotificationCallback] = None
            with self._table_lock:
                subscription = self._subscriptions.get(host)
                if subscription is not None:
                    subscription.notification_count += 1
                    callback = subscription.callback
            if subscription is None:
                logger.debug(f"Notification from unsubscribed host {host}: {state}")
            elif callback is not None:
                await self._dispatch(callback, Notification(host, state))
        except Exception as e:
            logger.warning(f"Error handling notification: {e}")
        return web.Response(status=200)

    async def _dispatch(self, callback: NotificationCallback, notification: Notification) -> None:
        try:
            if inspect.iscoroutinefunction(callback):
                await asyncio.wait_for(callback(notification), self.callback_timeout)
            else:
                loop = asyncio.get_running_loop()
                result = await asyncio.wait_for(loop.run_in_executor(None, callback, notification), self.callback_timeout)
                if inspect.isawaitable(result):
                    logger.warning("Notification callback returned an awaitable from a worker thread; ignored")
        except asyncio.TimeoutError:
            logger.warning(f"Notification callback for {notification.subscription_key} did not finish within {self.callback_timeout}s")
        except Exception as e:
            logger.warning(f"Notification callback for {notification.subscription_key} raised: {e}")

    async def __aenter__(self) -> SubscriptionManager:
        await self.start_server()
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        await self.stop_server()
        return False
