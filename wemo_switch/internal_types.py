#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Type hints used throughout this package. Modules import this with "from .internal_types import *".
"""

from __future__ import annotations

from typing import (
    TYPE_CHECKING,
    Any,
    AsyncContextManager,
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Callable,
    ClassVar,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    Type,
    TypeVar,
    Union,
    cast,
)

from types import TracebackType

from typing_extensions import Self

Jsonable = Union[str, int, float, bool, None, Dict[str, Any], List[Any]]
"""A value that can be serialized with json.dumps()"""

JsonableDict = Dict[str, Jsonable]
"""A dict that can be serialized with json.dumps()"""

HostAndPort = Tuple[str, int]
"""An (ip_address, port) tuple as used by socket addresses"""

SerialNumber = str
"""A device's unique serial number, as advertised in its SSDP USN header"""
