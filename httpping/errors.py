"""Exception types and the fixed failure causes reported on Measurements."""

from __future__ import annotations

# Failure causes carried by failed Measurements.
SERVER_ERROR = "Server-side error"
BODY_READ_ERROR = "I/O error while reading payload"
HTTP2_NOT_SUPPORTED = "HTTP/2 not supported by server"
HTTP3_NOT_SUPPORTED = "HTTP/3 not supported by server"


class HttpPingError(Exception):
    """Base class for every error raised by httpping."""


class ConfigurationError(HttpPingError):
    """The configuration cannot be used (bad URL, bad DNS server address)."""


class ResolutionError(HttpPingError):
    """A hostname could not be turned into an address."""


class TransportError(HttpPingError):
    """A connection could not be set up with the requested protocol."""
