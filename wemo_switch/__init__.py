# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Package wemo_switch discovers, controls and monitors Belkin WeMo switches and smart plugs.

Devices are found with SSDP (UDP multicast M-SEARCH to 239.255.255.250:1900), controlled
with SOAP requests over HTTP (GetBinaryState/SetBinaryState on the basic event service),
and monitored with UPnP event subscriptions, which the devices answer by calling back an
HTTP listener run by this package.

Because devices frequently change address (DHCP, reboots), every control operation has a
"_with_retry" variant that relocates the device by serial number or IP address and retries
once, without exceeding the caller's time budget.
"""

from .version import __version__

from .internal_types import Jsonable, JsonableDict, HostAndPort, SerialNumber

from .exceptions import (
    ErrorKind,
    WemoError,
    BadResponseError,
    NetworkError,
    WemoTimeoutError,
    ProtocolError,
    ParsingError,
    NoLocalIpError,
    LockError,
    SubscriptionError,
)

from .state import SwitchState, SwitchStateKind, parse_binary_state
from .ssdp_message import SsdpMessage
from .discovery import DeviceSearch, DeviceRecord, parse_search_response
from .soap import SoapClient, SoapRequest, SoapResponse
from .switch import Switch, DeviceIdentity, StaticIp, Dynamic
from .subscriptions import SubscriptionManager, Subscription, Notification, NotificationCallback
from .util import CaseInsensitiveDict, find_tag_value, get_local_ip
from .constants import SSDP_MULTICAST_ADDRESS, SSDP_PORT, DEFAULT_SEARCH_TIMEOUT, DEFAULT_CONTROL_TIMEOUT

__all__ = [
    '__version__',
    'Jsonable', 'JsonableDict', 'HostAndPort', 'SerialNumber',
    'ErrorKind', 'WemoError', 'BadResponseError', 'NetworkError', 'WemoTimeoutError', 'ProtocolError',
    'ParsingError', 'NoLocalIpError', 'LockError', 'SubscriptionError',
    'SwitchState', 'SwitchStateKind', 'parse_binary_state',
    'SsdpMessage',
    'DeviceSearch', 'DeviceRecord', 'parse_search_response',
    'SoapClient', 'SoapRequest', 'SoapResponse',
    'Switch', 'DeviceIdentity', 'StaticIp', 'Dynamic',
    'SubscriptionManager', 'Subscription', 'Notification', 'NotificationCallback',
    'CaseInsensitiveDict', 'find_tag_value', 'get_local_ip',
    'SSDP_MULTICAST_ADDRESS', 'SSDP_PORT', 'DEFAULT_SEARCH_TIMEOUT', 'DEFAULT_CONTROL_TIMEOUT',
]
