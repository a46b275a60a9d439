#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Switch -- control of a single WeMo switch.

A Switch remembers the last known address of its device. Every control operation
has a "_with_retry" variant that, if a short first attempt fails, relocates the
device via SSDP (by serial number if known, otherwise by last known IP address)
and tries exactly once more, all within the caller's time budget.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from urllib.parse import urlsplit

from .internal_types import *
from .pkg_logging import logger
from .constants import (
    BASIC_EVENT_CONTROL_PATH,
    DEFAULT_CONTROL_TIMEOUT,
    FIRST_ATTEMPT_TIMEOUT,
    LOCK_TIMEOUT,
    SETUP_PATH,
)
from .exceptions import (
    WemoError,
    LockError,
    NetworkError,
    ParsingError,
    ProtocolError,
    WemoTimeoutError,
)
from .discovery import DeviceRecord, DeviceSearch
from .soap import SoapClient, SoapRequest
from .state import SwitchState, parse_binary_state
from .util import parse_ipv4

_T = TypeVar('_T')

class DeviceIdentity:
    """How a Switch is identified on the network. See StaticIp and Dynamic."""

    @property
    def is_static(self) -> bool:
        return False

@dataclass(frozen=True)
class StaticIp(DeviceIdentity):
    """A device with a fixed IP address. Relocation may change its port, never its IP."""
    ip_address: str

    @property
    def is_static(self) -> bool:
        return True

@dataclass(frozen=True)
class Dynamic(DeviceIdentity):
    """A device whose IP address and port may both change (e.g., DHCP)."""
    pass

SearchFactory = Callable[[], DeviceSearch]
"""Creates the DeviceSearch used for relocation."""

class Switch:
    """Represents a WeMo Switch device."""

    identity: DeviceIdentity
    """Whether the IP address is fixed or may be updated by relocation."""

    serial_number: Optional[SerialNumber]
    """The device's unique serial number, if known. Used for relocation in preference to the IP address."""

    search_factory: SearchFactory

    _address: Tuple[Optional[str], Optional[int]]
    """The cached (ip_address, port). Replaced as a unit, only under _address_lock."""

    _address_lock: threading.Lock

    def __init__(
            self,
            identity: DeviceIdentity,
            ip_address: Optional[str]=None,
            port: Optional[int]=None,
            serial_number: Optional[SerialNumber]=None,
            search_factory: SearchFactory=DeviceSearch,
          ):
        if isinstance(identity, StaticIp):
            static_ip = parse_ipv4(identity.ip_address)
            if ip_address is not None and parse_ipv4(ip_address) != static_ip:
                raise ValueError(f"ip_address {ip_address} conflicts with static IP {static_ip}")
            ip_address = static_ip
        elif ip_address is not None:
            ip_address = parse_ipv4(ip_address)
        self.identity = identity
        self.serial_number = serial_number
        self.search_factory = search_factory
        self._address = (ip_address, port)
        self._address_lock = threading.Lock()

    @classmethod
    def from_static_ip(
            cls,
            ip_address: str,
            port: Optional[int]=None,
            serial_number: Optional[SerialNumber]=None,
            search_factory: SearchFactory=DeviceSearch,
          ) -> Switch:
        """A Switch whose IP address never changes. If port is None, it is found by relocation."""
        return cls(StaticIp(parse_ipv4(ip_address)), port=port, serial_number=serial_number, search_factory=search_factory)

    @classmethod
    def from_ip_and_port(cls, ip_address: str, port: int, search_factory: SearchFactory=DeviceSearch) -> Switch:
        return cls(Dynamic(), ip_address=ip_address, port=port, search_factory=search_factory)

    @classmethod
    def from_url(cls, url: str, search_factory: SearchFactory=DeviceSearch) -> Switch:
        """A Switch at a URL such as "http://192.168.1.4:49153/". Raises ParsingError if the host is not IPv4."""
        try:
            parts = urlsplit(url)
            host = parts.hostname
            port = parts.port
        except ValueError as e:
            raise ParsingError(f"Invalid URL {url!r}: {e}") from e
        if host is None:
            raise ParsingError(f"URL has no host: {url!r}")
        return cls(Dynamic(), ip_address=host, port=port, search_factory=search_factory)

    @classmethod
    def from_device_record(cls, record: DeviceRecord, search_factory: SearchFactory=DeviceSearch) -> Switch:
        return cls(
            Dynamic(),
            ip_address=record.ip_address,
            port=record.port,
            serial_number=record.serial_number,
            search_factory=search_factory,
          )

    @contextmanager
    def _guard(self) -> Iterator[None]:
        if not self._address_lock.acquire(timeout=LOCK_TIMEOUT):
            raise LockError(f"Unable to acquire address guard for {self.serial_number or 'switch'}")
        try:
            yield
        finally:
            self._address_lock.release()

    def address(self) -> Tuple[Optional[str], Optional[int]]:
        """The currently known (ip_address, port). Either may be None if not yet known."""
        with self._guard():
            return self._address

    @property
    def ip_address(self) -> Optional[str]:
        """The currently known IP address."""
        return self.address()[0]

    @property
    def port(self) -> Optional[int]:
        """The currently known port."""
        return self.address()[1]

    def update_address(self, ip_address: str, port: int) -> None:
        """Records a new address for the device. The IP address of a StaticIp switch is kept."""
        with self._guard():
            old_ip, old_port = self._address
            new_ip = old_ip if self.identity.is_static else ip_address
            self._address = (new_ip, port)
        logger.debug(f"Switch address updated from {old_ip}:{old_port} to {new_ip}:{port}")

    def host_key(self) -> str:
        """The "ip:port" string of the current address."""
        ip_address, port = self._require_address()
        return f"{ip_address}:{port}"

    def base_url(self) -> str:
        ip_address, port = self.address()
        if port is None:
            return f"http://{ip_address}"
        return f"http://{ip_address}:{port}"

    def setup_url(self) -> str:
        """The device description ("setup") URL."""
        return self.base_url() + SETUP_PATH

    def basic_event_url(self) -> str:
        """The basic event control URL."""
        return self.base_url() + BASIC_EVENT_CONTROL_PATH

    def _require_address(self) -> Tuple[str, int]:
        ip_address, port = self.address()
        if ip_address is None or port is None:
            raise NetworkError(f"Address of {self} is not known; relocation required")
        return (ip_address, port)

    async def _call(self, request: SoapRequest, timeout: float) -> str:
        start = time.monotonic()
        ip_address, port = self._require_address()
        client = await SoapClient.connect(ip_address, port, timeout)
        remaining = timeout - (time.monotonic() - start)
        response = await client.post(request, remaining)
        return response.text

    async def get_state(self, timeout: float=DEFAULT_CONTROL_TIMEOUT) -> SwitchState:
        """Get the current state of the device."""
        request = SoapRequest.for_action("GetBinaryState", {"BinaryState": 1})
        body = await self._call(request, timeout)
        return parse_binary_state(body)

    async def set_state(self, state: SwitchState, timeout: float=DEFAULT_CONTROL_TIMEOUT) -> SwitchState:
        """Set the state of the device. Returns the requested state."""
        if not state.is_known():
            raise ProtocolError(f"Cannot set a switch to {state!r}")
        request = SoapRequest.for_action("SetBinaryState", {"BinaryState": state.code})
        await self._call(request, timeout)
        return state

    async def turn_on(self, timeout: float=DEFAULT_CONTROL_TIMEOUT) -> SwitchState:
        """Turn the device on."""
        logger.info(f"Turning on: {self}")
        return await self.set_state(SwitchState.ON, timeout)

    async def turn_off(self, timeout: float=DEFAULT_CONTROL_TIMEOUT) -> SwitchState:
        """Turn the device off."""
        logger.info(f"Turning off: {self}")
        return await self.set_state(SwitchState.OFF, timeout)

    async def toggle(self, timeout: float=DEFAULT_CONTROL_TIMEOUT) -> SwitchState:
        """Toggle the device on or off. Returns the new state."""
        start = time.monotonic()
        current = await self.get_state(timeout)
        remaining = self._remaining_after_read(start, timeout)
        return await self.set_state(self._toggled(current), remaining)

    async def get_state_with_retry(self, timeout: float=DEFAULT_CONTROL_TIMEOUT) -> SwitchState:
        return await self._with_retry("get state", self.get_state, timeout)

    async def set_state_with_retry(self, state: SwitchState, timeout: float=DEFAULT_CONTROL_TIMEOUT) -> SwitchState:
        if not state.is_known():
            raise ProtocolError(f"Cannot set a switch to {state!r}")
        return await self._with_retry(f"set state to {state}", lambda t: self.set_state(state, t), timeout)

    async def turn_on_with_retry(self, timeout: float=DEFAULT_CONTROL_TIMEOUT) -> SwitchState:
        logger.info(f"Turning on with retry: {self}")
        return await self.set_state_with_retry(SwitchState.ON, timeout)

    async def turn_off_with_retry(self, timeout: float=DEFAULT_CONTROL_TIMEOUT) -> SwitchState:
        logger.info(f"Turning off with retry: {self}")
        return await self.set_state_with_retry(SwitchState.OFF, timeout)

    async def toggle_with_retry(self, timeout: float=DEFAULT_CONTROL_TIMEOUT) -> SwitchState:
        start = time.monotonic()
        current = await self.get_state_with_retry(timeout)
        remaining = self._remaining_after_read(start, timeout)
        return await self.set_state_with_retry(self._toggled(current), remaining)

    def _remaining_after_read(self, start: float, timeout: float) -> float:
        remaining = timeout - (time.monotonic() - start)
        if remaining <= 0.0:
            raise WemoTimeoutError(f"Reading the state of {self} used the whole {timeout}s budget")
        return remaining

    def _toggled(self, current: SwitchState) -> SwitchState:
        if not current.is_known():
            raise ProtocolError(f"Cannot toggle {self} from {current!r}")
        return current.inverted()

    async def _with_retry(
            self,
            description: str,
            operation: Callable[[float], Awaitable[_T]],
            timeout: float,
          ) -> _T:
        """Attempt once with a short budget; on failure relocate, then retry exactly once.

        The total time spent is bounded by `timeout` (plus at most one in-flight network operation).
        """
        start = time.monotonic()
        try:
            return await operation(min(FIRST_ATTEMPT_TIMEOUT, timeout))
        except LockError:
            raise
        except WemoError as e:
            logger.debug(f"First attempt to {description} on {self} failed: {e!r}")

        remaining = timeout - (time.monotonic() - start)
        if remaining <= 0.0:
            raise WemoTimeoutError(f"Timed out trying to {description} on {self}")

        await self.relocate(remaining)

        remaining = timeout - (time.monotonic() - start)
        if remaining <= 0.0:
            raise WemoTimeoutError(f"No time left to {description} on {self} after relocation")
        return await operation(remaining)

    async def relocate(self, timeout: float) -> DeviceRecord:
        """Find the switch on the network via SSDP and update its cached address.

        Searches by serial number if known (the same device even if DHCP has moved it),
        otherwise by the last known IP address. Raises WemoTimeoutError if the device is
        not found within `timeout` seconds.
        """
        search = self.search_factory()
        record: Optional[DeviceRecord]
        if self.serial_number is not None:
            logger.debug(f"Relocating {self} by serial number {self.serial_number}")
            record = await search.search_for_serial(self.serial_number, timeout)
        else:
            ip_address = self.ip_address
            if ip_address is None:
                raise NetworkError(f"Cannot relocate {self}: neither serial number nor IP address is known")
            logger.debug(f"Relocating {self} by IP address")
            record = await search.search_for_ip(ip_address, timeout)
        if record is None:
            raise WemoTimeoutError(f"Unable to relocate {self} within {timeout:.3f}s")
        self.update_address(record.ip_address, record.port)
        return record

    def __str__(self) -> str:
        return f"Switch<{self.base_url()}>"

    def __repr__(self) -> str:
        return f"Switch(identity={self.identity!r}, address={self.address()!r}, serial_number={self.serial_number!r})"
