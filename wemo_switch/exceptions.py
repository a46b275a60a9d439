#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Exceptions defined by this package.

Every public operation either returns its result or raises exactly one subclass of WemoError.
Low-level exceptions (OSError, asyncio.TimeoutError, ValueError, ...) are chained with
"raise ... from" and never escape on their own.
"""

from __future__ import annotations

from enum import Enum

class ErrorKind(Enum):
    """The category of a WemoError."""
    BAD_RESPONSE = "bad_response"
    NETWORK = "network"
    TIMEOUT = "timeout"
    PROTOCOL = "protocol"
    PARSING = "parsing"
    NO_LOCAL_IP = "no_local_ip"
    LOCK = "lock"
    SUBSCRIPTION = "subscription"

class WemoError(Exception):
    """Base class for all error exceptions defined by this package."""
    kind: ErrorKind = ErrorKind.PROTOCOL

class BadResponseError(WemoError):
    """There was trouble understanding the device's response."""
    kind = ErrorKind.BAD_RESPONSE

class NetworkError(WemoError):
    """A socket-level error occurred, or the device address is not known."""
    kind = ErrorKind.NETWORK

class WemoTimeoutError(WemoError, TimeoutError):
    """The caller's time budget was exhausted before the operation completed."""
    kind = ErrorKind.TIMEOUT

class ProtocolError(WemoError):
    """The device reported a failure, or a message had an unexpected shape."""
    kind = ErrorKind.PROTOCOL

class ParsingError(WemoError):
    """A value received from the device could not be parsed."""
    kind = ErrorKind.PARSING

class NoLocalIpError(WemoError):
    """No usable local IPv4 address could be found for callbacks."""
    kind = ErrorKind.NO_LOCAL_IP

class LockError(WemoError):
    """A synchronization guard could not be acquired."""
    kind = ErrorKind.LOCK

class SubscriptionError(WemoError):
    """A device rejected an event subscription request."""
    kind = ErrorKind.SUBSCRIPTION
