#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
SoapClient -- A minimal HTTP client for SOAP control requests to a WeMo device.

Each client owns one TCP connection and carries exactly one request/response:
the request is written in full, then the response is read until the device
closes the connection.
"""

from __future__ import annotations

import asyncio
import re

from .internal_types import *
from .pkg_logging import logger
from .constants import BASIC_EVENT_CONTROL_PATH, BASIC_EVENT_SERVICE
from .exceptions import (
    WemoError,
    BadResponseError,
    NetworkError,
    WemoTimeoutError,
    ProtocolError,
)
from .util import CaseInsensitiveDict, parse_http_message

READ_CHUNK_SIZE = 8192

_status_line_re = re.compile(r'^HTTP/(?P<version>[0-9]+\.[0-9]+) +(?P<status_code>[0-9]{3})(?: +(?P<reason>.*))?$')

SOAP_ENVELOPE_TEMPLATE = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"'
    ' s:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">'
    '<s:Body>'
    '<u:{action} xmlns:u="{service}">'
    '{arguments}'
    '</u:{action}>'
    '</s:Body>'
    '</s:Envelope>'
  )

class SoapRequest:
    """A SOAP request to a WeMo device."""

    request_path: str
    """The HTTP request path; e.g., "/upnp/control/basicevent1" """

    soap_action: str
    """The SOAPACTION header value (without quotes); e.g., "urn:Belkin:service:basicevent:1#GetBinaryState" """

    http_post_payload: str
    """The XML SOAP envelope sent as the POST body"""

    def __init__(self, request_path: str, soap_action: str, http_post_payload: str):
        self.request_path = request_path
        self.soap_action = soap_action
        self.http_post_payload = http_post_payload

    @classmethod
    def for_action(
            cls,
            action: str,
            arguments: Optional[Mapping[str, Union[str, int]]]=None,
            service: str=BASIC_EVENT_SERVICE,
            request_path: str=BASIC_EVENT_CONTROL_PATH,
          ) -> SoapRequest:
        """Builds a request for a SOAP action with simple scalar arguments."""
        args_xml = ''.join(f"<{k}>{v}</{k}>" for k, v in (arguments or {}).items())
        payload = SOAP_ENVELOPE_TEMPLATE.format(action=action, service=service, arguments=args_xml)
        return cls(request_path, f"{service}#{action}", payload)

    def encode(self, host: Optional[str]=None) -> bytes:
        """The complete HTTP POST request as bytes."""
        body = self.http_post_payload.encode('utf-8')
        header = (
            f"POST {self.request_path} HTTP/1.1\r\n"
            + (f"Host: {host}\r\n" if host is not None else "")
            + 'Content-Type: text/xml; charset="utf-8"\r\n'
            "Accept:\r\n"
            f"SOAPACTION: \"{self.soap_action}\"\r\n"
            f"Content-Length: {len(body)}\r\n"
            "\r\n"
          )
        return header.encode('utf-8') + body

    def __str__(self) -> str:
        return f"SoapRequest({self.soap_action} -> {self.request_path})"

class SoapResponse:
    """The parsed HTTP response to a SoapRequest."""

    status_code: int
    reason: str
    headers: CaseInsensitiveDict[str]
    body: bytes
    raw: bytes

    def __init__(self, status_code: int, reason: str, headers: CaseInsensitiveDict[str], body: bytes, raw: bytes):
        self.status_code = status_code
        self.reason = reason
        self.headers = headers
        self.body = body
        self.raw = raw

    @property
    def text(self) -> str:
        return self.body.decode('utf-8', errors='replace')

    @classmethod
    def parse(cls, raw: bytes) -> SoapResponse:
        """Parse a raw HTTP response. Raises BadResponseError if it is empty or not HTTP."""
        if len(raw) == 0:
            raise BadResponseError("Device closed the connection without responding")
        try:
            statement_line, headers, body = parse_http_message(raw)
        except WemoError as e:
            raise BadResponseError(f"Unparseable HTTP response: {e}") from e
        m = _status_line_re.match(statement_line.strip())
        if m is None:
            raise BadResponseError(f"Invalid HTTP status line: {statement_line!r}")
        return cls(int(m.group('status_code')), m.group('reason') or '', headers, body, raw)

    def __str__(self) -> str:
        return f"SoapResponse({self.status_code} {self.reason}, body={self.body!r})"

class SoapClient:
    """An HTTP client for making one SOAP request over one TCP connection.

    Usage:
        client = await SoapClient.connect("192.168.1.4", 49153, timeout=1.0)
        response = await client.post(request, timeout=1.0)
    """

    ip_address: str
    port: int
    _reader: asyncio.StreamReader
    _writer: asyncio.StreamWriter
    _used: bool = False

    def __init__(self, ip_address: str, port: int, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.ip_address = ip_address
        self.port = port
        self._reader = reader
        self._writer = writer

    @classmethod
    async def connect(cls, ip_address: str, port: int, timeout: float) -> SoapClient:
        """Open the TCP connection to the device.

        Raises NetworkError if the connection fails, WemoTimeoutError if it does not complete
        within `timeout` seconds.
        """
        if timeout <= 0.0:
            raise WemoTimeoutError(f"No time left to connect to {ip_address}:{port}")
        try:
            reader, writer = await asyncio.wait_for(asyncio.open_connection(ip_address, port), timeout)
        except asyncio.TimeoutError as e:
            raise WemoTimeoutError(f"Timed out connecting to {ip_address}:{port}") from e
        except OSError as e:
            raise NetworkError(f"Unable to connect to {ip_address}:{port}: {e}") from e
        return cls(ip_address, port, reader, writer)

    async def post(self, request: SoapRequest, timeout: float) -> SoapResponse:
        """Send the request and read the response until the device closes the connection.

        The connection is closed before returning. Raises WemoTimeoutError if the exchange is not
        complete within `timeout` seconds, NetworkError on socket errors, BadResponseError for an
        empty or non-HTTP response, and ProtocolError for a non-2xx HTTP status.
        """
        if self._used:
            raise ProtocolError("SoapClient carries exactly one request")
        self._used = True
        try:
            if timeout <= 0.0:
                raise WemoTimeoutError(f"No time left for {request}")
            try:
                raw = await asyncio.wait_for(self._exchange(request), timeout)
            except asyncio.TimeoutError as e:
                raise WemoTimeoutError(f"Timed out waiting for {request} on {self.ip_address}:{self.port}") from e
            except OSError as e:
                raise NetworkError(f"Error during {request} on {self.ip_address}:{self.port}: {e}") from e
        finally:
            self.close()
        logger.debug(f"Received from {self.ip_address}:{self.port}: {raw!r}")
        response = SoapResponse.parse(raw)
        if not 200 <= response.status_code < 300:
            raise ProtocolError(f"Device returned HTTP {response.status_code} {response.reason} for {request}")
        return response

    async def _exchange(self, request: SoapRequest) -> bytes:
        data = request.encode(host=f"{self.ip_address}:{self.port}")
        logger.debug(f"Sending {request} to {self.ip_address}:{self.port}")
        self._writer.write(data)
        await self._writer.drain()
        raw = b''
        while True:
            chunk = await self._reader.read(READ_CHUNK_SIZE)
            if len(chunk) == 0:
                break
            raw += chunk
            # Some firmware keeps the connection open; stop once Content-Length is satisfied
            if _is_complete(raw):
                break
        return raw

    def close(self) -> None:
        if not self._writer.is_closing():
            self._writer.close()

_content_length_re = re.compile(rb'^content-length:\s*([0-9]+)\s*$', re.IGNORECASE | re.MULTILINE)

def _is_complete(raw: bytes) -> bool:
    """Whether raw holds a full response according to its Content-Length header."""
    headers, sep, body = raw.partition(b'\r\n\r\n')
    if len(sep) == 0:
        return False
    m = _content_length_re.search(headers)
    if m is None:
        return False
    return len(body) >= int(m.group(1))
