from __future__ import annotations


class MonitorError(Exception):
    pass


class NetworkError(MonitorError):
    """Upstream unreachable, timed out or answered with an RPC error."""


class ParseError(MonitorError):
    """Upstream record or response that does not have the expected shape."""


class InvalidAddressError(MonitorError, ValueError):
    pass


class ConfigurationError(MonitorError, ValueError):
    pass
