# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Constants used by this package. Times are in seconds."""

SSDP_MULTICAST_ADDRESS = "239.255.255.250"
"""The multicast address used by SSDP for UDP multicast."""

SSDP_PORT = 1900
"""The port number used by SSDP for UDP multicast."""

SSDP_SEARCH_TARGET = "urn:Belkin:device:*"
"""The ST header sent with M-SEARCH requests; matches all Belkin devices."""

SSDP_MX = 5
"""The MX header sent with M-SEARCH requests."""

RESEND_INTERVAL = 0.3
"""Within a single search, the M-SEARCH request is resent at this interval until the search times out."""

DEFAULT_SEARCH_TIMEOUT = 3.0
"""The default amount of time to wait for search responses to come in."""

FIRST_ATTEMPT_TIMEOUT = 0.3
"""The budget for the first attempt of a "_with_retry" control operation, before relocating the device."""

DEFAULT_CONTROL_TIMEOUT = 5.0
"""The default total time budget for a control operation."""

LOCK_TIMEOUT = 1.0
"""Maximum time to wait for a switch's address guard."""

BASIC_EVENT_SERVICE = "urn:Belkin:service:basicevent:1"
"""The SOAP action namespace of the basic event service."""

BASIC_EVENT_CONTROL_PATH = "/upnp/control/basicevent1"
"""The request path for basic event SOAP control requests."""

BASIC_EVENT_EVENT_PATH = "/upnp/event/basicevent1"
"""The request path for basic event subscriptions."""

SETUP_PATH = "/setup.xml"
"""The path of the device description document."""

DEFAULT_CALLBACK_PORT = 3000
"""The default port the subscription callback listener binds to."""

DEFAULT_SUBSCRIPTION_TTL = 60
"""The default subscription TTL, in seconds, requested from devices."""

RENEWAL_INTERVAL = 30.0
"""The period at which all subscriptions are renewed. Independent of the TTL."""

SUBSCRIBE_REQUEST_TIMEOUT = 1.0
"""The time allowed for sending a SUBSCRIBE request and reading the status line of the reply."""

CALLBACK_TIMEOUT = 5.0
"""The time a notification callback may run before the listener gives up waiting for it."""
