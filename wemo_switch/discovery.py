# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
DeviceSearch -- An SSDP client that can:

  1. Send an M-SEARCH request for Belkin devices to the SSDP multicast address (239.255.255.250:1900),
     resending it periodically to compensate for lost datagrams and slow responders
  2. Receive and parse responses from WeMo devices into DeviceRecord's
  3. Collect results within a configurable timeout period, optionally ending early when a
     particular device (by serial number or IP address) is found
"""

from __future__ import annotations

import asyncio
from asyncio import Future
import re
import socket
from dataclasses import dataclass
from urllib.parse import urlsplit

from .internal_types import *
from .pkg_logging import logger
from .constants import (
    SSDP_MULTICAST_ADDRESS,
    SSDP_PORT,
    SSDP_SEARCH_TARGET,
    SSDP_MX,
    RESEND_INTERVAL,
    DEFAULT_SEARCH_TIMEOUT,
)
from .exceptions import WemoError, NetworkError
from .ssdp_message import SsdpMessage
from .util import parse_ipv4

@dataclass(frozen=True)
class DeviceRecord:
    """A WeMo device as described by one SSDP search response."""

    serial_number: SerialNumber
    """The device's unique serial number, from the USN header"""

    ip_address: str
    """The device's IPv4 address, from the LOCATION header"""

    port: int
    """The device's HTTP port, from the LOCATION header"""

    setup_url: str
    """The full LOCATION URL; e.g., "http://192.168.1.4:49153/setup.xml" """

    @property
    def host_key(self) -> str:
        """The "ip:port" string used to identify the device's event subscription."""
        return f"{self.ip_address}:{self.port}"

_usn_re = re.compile(r'^uuid:(?P<model>Lightswitch|Insight|Socket)-\d+_\d+-(?P<serial>[^:]+)::', re.IGNORECASE)

def parse_search_response(data: bytes) -> Optional[DeviceRecord]:
    """Parse the WeMo SSDP response headers.

    The location header, `LOCATION: http://192.168.1.4:49153/setup.xml`, gives the ip address
    and port. The USN header, `USN: uuid:Insight-1_0-12345ABCDE::upnp:rootdevice`, contains
    the serial number `12345ABCDE`.

    Returns None if either header is missing or malformed, or if the LOCATION host is not an
    IPv4 address.
    """
    try:
        message = SsdpMessage(raw_data=data)
    except (WemoError, ValueError) as e:
        logger.debug(f"Unparseable SSDP datagram: {e}")
        return None

    location = message.hdr_location
    usn = message.hdr_usn
    if location is None or usn is None:
        return None

    m = _usn_re.match(usn)
    if m is None:
        return None
    serial_number = m.group('serial')

    try:
        url = urlsplit(location)
        host = url.hostname
        port = url.port
    except ValueError:
        return None
    if host is None:
        return None
    try:
        ip_address = parse_ipv4(host)
    except WemoError:
        return None
    if port is None:
        port = 443 if url.scheme == 'https' else 80

    return DeviceRecord(
        serial_number=serial_number,
        ip_address=ip_address,
        port=port,
        setup_url=location,
      )

def build_search_request(multicast_address: str=SSDP_MULTICAST_ADDRESS, multicast_port: int=SSDP_PORT) -> bytes:
    """The M-SEARCH datagram for all Belkin devices."""
    return (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {multicast_address}:{multicast_port}\r\n"
        f"ST:{SSDP_SEARCH_TARGET}\r\n"
        "MAN:\"ssdp:discover\"\r\n"
        f"MX:{SSDP_MX}\r\n"
        "\r\n"
      ).encode('utf-8')

class _SsdpSearchProtocol(asyncio.DatagramProtocol):
    """An adapter between the asyncio transport and a running DeviceSearch."""
    device_search: DeviceSearch

    def __init__(self, device_search: DeviceSearch):
        self.device_search = device_search

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        """Called when some datagram is received."""
        self.device_search.datagram_received(addr, data)

    def error_received(self, exc: Exception):
        """Called when a send or receive operation raises an OSError.

        (Other than BlockingIOError or InterruptedError.)
        """
        # ICMP errors from stray hosts must not end the search
        logger.debug(f"Ignoring error on SSDP search socket: {exc}")

class DeviceSearch:
    """
    Uses SSDP to discover WeMo devices on the local network.

    Found devices are keyed by serial number and persist across calls to search() until
    reset() is called; a device seen again replaces its earlier record.

    Usage:
        search = DeviceSearch()
        devices = await search.search(timeout=3.0)
        for serial, record in devices.items():
            print(serial, record.ip_address, record.port)
    """

    multicast_address: str = SSDP_MULTICAST_ADDRESS
    """The address search requests are sent to."""

    multicast_port: int = SSDP_PORT
    """The port search requests are sent to."""

    bind_address: str = "0.0.0.0"
    """The local address the ephemeral search socket binds to."""

    resend_interval: float = RESEND_INTERVAL
    """The interval (in seconds) at which the search request is resent during a search."""

    _found_devices: Dict[SerialNumber, DeviceRecord]
    _target_serial: Optional[SerialNumber] = None
    _target_ip_address: Optional[str] = None
    _expected_count: Optional[int] = None
    _target_found: Optional[Future[DeviceRecord]] = None
    _search_lock: Optional[asyncio.Lock] = None

    def __init__(
            self,
            multicast_address: str=SSDP_MULTICAST_ADDRESS,
            multicast_port: int=SSDP_PORT,
            bind_address: str="0.0.0.0",
            resend_interval: float=RESEND_INTERVAL,
          ) -> None:
        self.multicast_address = multicast_address
        self.multicast_port = multicast_port
        self.bind_address = bind_address
        self.resend_interval = resend_interval
        self._found_devices = {}

    @property
    def results(self) -> Dict[SerialNumber, DeviceRecord]:
        """A copy of all of the devices found so far."""
        return dict(self._found_devices)

    def has_results(self) -> bool:
        """Whether any devices have been found."""
        return len(self._found_devices) != 0

    def reset(self) -> None:
        """Forget all found devices and any search target."""
        self._found_devices = {}
        self._target_serial = None
        self._target_ip_address = None
        self._expected_count = None

    async def search(
            self,
            timeout: float=DEFAULT_SEARCH_TIMEOUT,
            expected_count: Optional[int]=None,
          ) -> Dict[SerialNumber, DeviceRecord]:
        """Search for all devices on the network for `timeout` seconds.

        If expected_count is given, the search ends as soon as at least that many devices
        are known (counting those found by earlier searches).

        Returns a copy of all devices found so far, including those found by earlier searches.
        Raises NetworkError if the search socket cannot be created.
        """
        await self._run_search(timeout, expected_count=expected_count)
        return self.results

    async def search_for_serial(self, target: SerialNumber, timeout: float=DEFAULT_SEARCH_TIMEOUT) -> Optional[DeviceRecord]:
        """Search for a particular device by serial number. Exits early when the target device is found."""
        await self._run_search(timeout, target_serial=target)
        return self._found_devices.get(target)

    async def search_for_ip(self, target: str, timeout: float=DEFAULT_SEARCH_TIMEOUT) -> Optional[DeviceRecord]:
        """Search for a particular device by IP address. Exits early when the target device is found."""
        target = parse_ipv4(target)
        await self._run_search(timeout, target_ip_address=target)
        for record in self._found_devices.values():
            if record.ip_address == target:
                return record
        return None

    def _create_socket(self) -> socket.socket:
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as e:
            raise NetworkError(f"Unable to create SSDP search socket: {e}") from e
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.bind_address, 0))
        except OSError as e:
            sock.close()
            raise NetworkError(f"Unable to bind SSDP search socket to {self.bind_address}: {e}") from e
        return sock

    async def _run_search(
            self,
            timeout: float,
            target_serial: Optional[SerialNumber]=None,
            target_ip_address: Optional[str]=None,
            expected_count: Optional[int]=None,
          ) -> None:
        if self._search_lock is None:
            self._search_lock = asyncio.Lock()
        async with self._search_lock:
            # The target belongs to the search holding the lock; it is cleared before release
            self._target_serial = target_serial
            self._target_ip_address = target_ip_address
            self._expected_count = expected_count
            try:
                await self._run_locked_search(timeout)
            finally:
                self._target_serial = None
                self._target_ip_address = None
                self._expected_count = None

    async def _run_locked_search(self, timeout: float) -> None:
        if timeout <= 0.0:
            return
        if self._expected_count is not None and len(self._found_devices) >= self._expected_count:
            logger.debug(f"Already know {len(self._found_devices)} devices; not searching")
            return
        loop = asyncio.get_running_loop()
        sock = self._create_socket()
        try:
            untyped_transport, _ = await loop.create_datagram_endpoint(
                lambda: _SsdpSearchProtocol(self),
                sock=sock
              )
        except OSError as e:
            sock.close()
            raise NetworkError(f"Unable to start SSDP search: {e}") from e
        transport: asyncio.DatagramTransport = untyped_transport # type: ignore[assignment]
        logger.debug(f"SSDP search started on {sock.getsockname()}, timeout={timeout}")
        self._target_found = loop.create_future()
        resend_task = asyncio.create_task(self._run_resend_task(transport))
        try:
            try:
                record = await asyncio.wait_for(self._target_found, timeout)
                logger.debug(f"SSDP search found target {record}; ending search early")
            except asyncio.TimeoutError:
                logger.debug(f"SSDP search completed after {timeout} seconds")
        finally:
            self._target_found = None
            resend_task.cancel()
            try:
                await resend_task
            except asyncio.CancelledError:
                pass
            except BaseException as e:
                logger.debug(f"SSDP resend task exited with exception: {e}")
            transport.close()

    def _send_search(self, transport: asyncio.DatagramTransport) -> None:
        data = build_search_request(SSDP_MULTICAST_ADDRESS, SSDP_PORT)
        logger.debug(f"Sending M-SEARCH to {self.multicast_address}:{self.multicast_port}")
        transport.sendto(data, (self.multicast_address, self.multicast_port))

    async def _run_resend_task(self, transport: asyncio.DatagramTransport) -> None:
        while not transport.is_closing():
            self._send_search(transport)
            await asyncio.sleep(self.resend_interval)

    def datagram_received(self, addr: HostAndPort, data: bytes) -> None:
        """Called by the transport for every datagram received during a search."""
        record = parse_search_response(data)
        if record is None:
            logger.debug(f"Discarding non-WeMo datagram from {addr}: {data[:200]!r}")
            return
        logger.debug(f"Found {record} (from {addr})")
        self._found_devices[record.serial_number] = record
        target_found = self._target_found
        if target_found is None or target_found.done():
            return
        if self._target_serial is not None:
            if record.serial_number == self._target_serial:
                target_found.set_result(record)
        elif self._target_ip_address is not None:
            if record.ip_address == self._target_ip_address:
                target_found.set_result(record)
        elif self._expected_count is not None:
            if len(self._found_devices) >= self._expected_count:
                target_found.set_result(record)
