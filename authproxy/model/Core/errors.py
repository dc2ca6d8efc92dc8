"""
Exception types raised across AuthProxy.
"""


class AuthProxyError(Exception):
    """Base class for every error raised by AuthProxy."""


class ConfigError(AuthProxyError):
    """Invalid or missing configuration value. Fatal at startup."""


class BadRequest(AuthProxyError):
    """The client sent something that is not a parseable HTTP request."""

    def __init__(self, message, status=400):
        super().__init__(message)
        self.status = status


class HijackNotSupported(AuthProxyError):
    """The response writer cannot hand over the raw client socket."""


class ListenerError(AuthProxyError):
    """A listener failed to bind or its serve loop died."""
