#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Abstraction of the HTTP-like datagrams used by SSDP discovery.
"""

from __future__ import annotations

from .internal_types import *

from .util import (
    CaseInsensitiveDict,
    parse_http_message,
)

class SsdpMessage:
    """Wrapper for a raw SSDP datagram.

    This class provides parsing and formatting of the HTTP-like packets and a
    case-insensitive view of the headers. Unlike HTTP proper, header values are
    kept verbatim (surrounding whitespace stripped); no unquoting is done.
    """

    _raw_data: bytes
    """The raw UDP datagram contents"""

    _statement_line: str
    """The first line of the datagram; e.g., "HTTP/1.1 200 OK" or "M-SEARCH * HTTP/1.1" """

    _headers: CaseInsensitiveDict[str]
    """The headers, in insertion order."""

    _body: bytes
    """The body of the datagram, if any. If there is no body, b'' is returned."""

    def __init__(
            self,
            statement: Optional[str]=None,
            headers: Optional[Mapping[str, str]]=None,
            body: Optional[bytes]=None,
            raw_data: Optional[bytes]=None,
          ):
        if raw_data is None:
            if statement is None:
                raise ValueError("Either statement or raw_data must be provided")
            self._statement_line = statement
            self._headers = CaseInsensitiveDict(headers or {})
            self._body = b'' if body is None else body
            self._rebuild_raw_data()
        else:
            if not (statement is None and headers is None and body is None):
                raise ValueError("If raw_data is provided, statement, headers, and body must be None")
            self._raw_data = raw_data
            # Raises ParsingError if the statement line is not UTF-8
            self._statement_line, self._headers, self._body = parse_http_message(raw_data)

    def __str__(self) -> str:
        return f"SsdpMessage('{self._statement_line}', headers={dict(self._headers)}, body={self._body!r})"

    def __repr__(self) -> str:
        return str(self)

    @property
    def raw_data(self) -> bytes:
        """The raw UDP datagram contents"""
        return self._raw_data

    @property
    def statement_line(self) -> str:
        return self._statement_line

    @property
    def headers(self) -> CaseInsensitiveDict[str]:
        """The headers as a CaseInsensitiveDict[str]. Do not modify."""
        return self._headers

    @property
    def body(self) -> bytes:
        return self._body

    def get(self, name: str, default: Optional[str]=None) -> Optional[str]:
        return self._headers.get(name, default)

    @property
    def is_response(self) -> bool:
        """True if the statement line is an HTTP status line (e.g., "HTTP/1.1 200 OK")."""
        return self._statement_line.upper().startswith("HTTP/")

    @property
    def hdr_location(self) -> Optional[str]:
        """Returns the "LOCATION" header, or None if absent."""
        return self._headers.get("LOCATION")

    @property
    def hdr_usn(self) -> Optional[str]:
        """Returns the "USN" (unique service name) header, or None if absent."""
        return self._headers.get("USN")

    @property
    def hdr_st(self) -> Optional[str]:
        """Returns the "ST" (search target) header, or None if absent."""
        return self._headers.get("ST")

    def _rebuild_raw_data(self) -> None:
        raw_data = self._statement_line.encode('utf-8') + b'\r\n'
        for k, v in self._headers.items():
            raw_data += f"{k}: {v}\r\n".encode('utf-8')
        raw_data += b'\r\n'
        raw_data += self._body
        self._raw_data = raw_data
