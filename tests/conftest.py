"""Pytest fixtures: loopback stand-ins for WeMo devices.

Everything here listens on 127.0.0.1 only, so the tests never touch the real LAN.
"""

from __future__ import annotations

import asyncio
import re
import socket
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio


def make_search_response(serial: str, ip: str, port: int, model: str = "Socket") -> bytes:
    """An SSDP search response as sent by a WeMo device."""
    return (
        "HTTP/1.1 200 OK\r\n"
        "CACHE-CONTROL: max-age=86400\r\n"
        f"LOCATION: http://{ip}:{port}/setup.xml\r\n"
        "SERVER: Unspecified, UPnP/1.0, Unspecified\r\n"
        "ST: urn:Belkin:device:controllee:1\r\n"
        f"USN: uuid:{model}-1_0-{serial}::urn:Belkin:device:controllee:1\r\n"
        "\r\n"
    ).encode("utf-8")


def get_free_port() -> int:
    """A TCP port on 127.0.0.1 that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


# ============================================================================
# SSDP responder
# ============================================================================

class SsdpResponder(asyncio.DatagramProtocol):
    """Answers every M-SEARCH with the configured responses after `delay` seconds."""

    def __init__(self, delay: float = 0.05):
        self.delay = delay
        self.responses: List[bytes] = []
        self.requests: List[bytes] = []
        self.transport: Optional[asyncio.DatagramTransport] = None

    @property
    def port(self) -> int:
        assert self.transport is not None
        return self.transport.get_extra_info("sockname")[1]

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        self.requests.append(data)
        if data.startswith(b"M-SEARCH"):
            asyncio.get_running_loop().call_later(self.delay, self._respond, addr)

    def _respond(self, addr: Tuple[str, int]) -> None:
        if self.transport is None or self.transport.is_closing():
            return
        for response in self.responses:
            self.transport.sendto(response, addr)


@pytest_asyncio.fixture
async def ssdp_responder():
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        SsdpResponder, local_addr=("127.0.0.1", 0)
    )
    yield protocol
    transport.close()


# ============================================================================
# SOAP device
# ============================================================================

_content_length_re = re.compile(rb"content-length:\s*([0-9]+)", re.IGNORECASE)


class FakeSoapDevice:
    """A TCP server that answers GetBinaryState/SetBinaryState like a WeMo device.

    Set `mode` to "ok", "silent" (never answer), "empty" (close without answering)
    or "error" (HTTP 500).
    """

    def __init__(self):
        self.state_value = "0"
        self.mode = "ok"
        self.requests: List[bytes] = []
        self.server: Optional[asyncio.AbstractServer] = None

    @property
    def port(self) -> int:
        assert self.server is not None
        return self.server.sockets[0].getsockname()[1]

    @property
    def actions(self) -> List[str]:
        result = []
        for request in self.requests:
            m = re.search(rb'SOAPACTION: "[^#]*#(\w+)"', request)
            result.append(m.group(1).decode() if m else "")
        return result

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            headers = await reader.readuntil(b"\r\n\r\n")
            m = _content_length_re.search(headers)
            body = await reader.readexactly(int(m.group(1))) if m else b""
            request = headers + body
            self.requests.append(request)
            if self.mode == "silent":
                await reader.read()
                return
            if self.mode == "empty":
                return
            if self.mode == "error":
                writer.write(b"HTTP/1.1 500 Internal Server Error\r\nContent-Length: 0\r\n\r\n")
                await writer.drain()
                return
            if b"#SetBinaryState" in request:
                m = re.search(rb"<BinaryState>([^<]*)</BinaryState>", body)
                assert m is not None
                self.state_value = m.group(1).decode()
                action = "SetBinaryState"
            else:
                action = "GetBinaryState"
            payload = (
                '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"><s:Body>'
                f'<u:{action}Response xmlns:u="urn:Belkin:service:basicevent:1">'
                f"<BinaryState>{self.state_value}</BinaryState>"
                f"</u:{action}Response></s:Body></s:Envelope>"
            ).encode("utf-8")
            writer.write(
                b"HTTP/1.1 200 OK\r\nContent-Type: text/xml; charset=\"utf-8\"\r\n"
                + f"Content-Length: {len(payload)}\r\n\r\n".encode("utf-8")
                + payload
            )
            await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


@pytest_asyncio.fixture
async def soap_device():
    device = FakeSoapDevice()
    device.server = await asyncio.start_server(device.handle, "127.0.0.1", 0)
    yield device
    device.server.close()
    await device.server.wait_closed()


# ============================================================================
# SUBSCRIBE endpoint
# ============================================================================

class FakeEventService:
    """A TCP server that answers UPnP SUBSCRIBE requests.

    `status` is the HTTP status line to answer with.
    """

    def __init__(self):
        self.status = "HTTP/1.1 200 OK"
        self.sid = "uuid:fake-sid-1"
        self.requests: List[bytes] = []
        self.server: Optional[asyncio.AbstractServer] = None

    @property
    def port(self) -> int:
        assert self.server is not None
        return self.server.sockets[0].getsockname()[1]

    @property
    def host_key(self) -> str:
        return f"127.0.0.1:{self.port}"

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            request = await reader.readuntil(b"\r\n\r\n")
            self.requests.append(request)
            writer.write(f"{self.status}\r\nSID: {self.sid}\r\nTIMEOUT: Second-60\r\n\r\n".encode("utf-8"))
            await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


@pytest_asyncio.fixture
async def event_service():
    service = FakeEventService()
    service.server = await asyncio.start_server(service.handle, "127.0.0.1", 0)
    yield service
    service.server.close()
    await service.server.wait_closed()


@pytest.fixture
def callback_port() -> int:
    return get_free_port()


@pytest.fixture
def state_bodies() -> Dict[str, str]:
    """Notification bodies as sent by devices."""
    return {
        "on": '<e:propertyset xmlns:e="urn:schemas-upnp-org:event-1-0"><e:property><BinaryState>1</BinaryState></e:property></e:propertyset>',
        "off": '<e:propertyset xmlns:e="urn:schemas-upnp-org:event-1-0"><e:property><BinaryState>0</BinaryState></e:property></e:propertyset>',
        "insight": '<e:propertyset xmlns:e="urn:schemas-upnp-org:event-1-0"><e:property><BinaryState>2|999|1</BinaryState></e:property></e:propertyset>',
        "other": '<e:propertyset xmlns:e="urn:schemas-upnp-org:event-1-0"><e:property><SignalStrength>80</SignalStrength></e:property></e:propertyset>',
    }


@pytest.fixture
def search_response():
    """Builds SSDP search responses; see make_search_response()."""
    return make_search_response
