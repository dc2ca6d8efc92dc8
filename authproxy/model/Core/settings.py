"""
Environment configuration for AuthProxy.

Everything is read once at startup through Settings.from_env(). Invalid values
raise ConfigError so the process can exit before any listener opens.
"""

import os
import re
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigError

DEBUG_DEFAULT = False
LISTEN_ADDR_DEFAULT = "0.0.0.0"
PORT_PROXY_DEFAULT = 31280
PORT_PROBES_DEFAULT = 31281
SHUTDOWN_TIMEOUT_DEFAULT = "5s"
READINESS_URL_DEFAULT = "https://cloudflare.com/cdn-cgi/trace"
READINESS_TIMEOUT_DEFAULT = "5s"
DIAL_TIMEOUT_DEFAULT = "10s"
UPSTREAM_TIMEOUT_DEFAULT = "60s"
PROXY_REALM_DEFAULT = "Restricted"
LOG_FORMAT_DEFAULT = "text"

LOG_FORMATS = ("text", "rich")

_TRUE_VALUES = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_VALUES = {"0", "f", "F", "FALSE", "false", "False"}

# Seconds per duration unit
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_bool(value: str) -> bool:
    """Parse a boolean the way Go's strconv.ParseBool does."""
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigError(f"invalid boolean value {value!r}")


def parse_duration(value: str) -> float:
    """
    Parse a Go style duration string ("5s", "1m30s", "250ms") into seconds.

    Args:
        value (str): Duration string. A bare "0" is accepted, any other number
            needs a unit.

    Returns:
        float: The duration in seconds.
    """
    text = value.strip()
    if not text:
        raise ConfigError("invalid duration ''")

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return 0.0

    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if not match:
            raise ConfigError(f"invalid duration {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0:
        raise ConfigError(f"invalid duration {value!r}")
    return sign * total


def parse_port(value: str, name: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise ConfigError(f"invalid {name} {value!r}") from None
    if not 0 < port < 65536:
        raise ConfigError(f"{name} out of range: {port}")
    return port


def get_env(environ: Mapping[str, str], key: str, default: Optional[str] = None) -> Optional[str]:
    """Return the variable, or the default when it is unset or empty."""
    value = environ.get(key, "")
    if value == "" and default is not None:
        return default
    return value


@dataclass(frozen=True)
class Settings:
    """
    Process wide configuration.

    Attributes:
        username (str): Proxy username, required
        password (str): Proxy password, required
        debug (bool): Enable DEBUG level logging
        listen_addr (str): Bind address of both listeners
        port_proxy (int): Proxy listener port
        port_probes (int): Probe listener port
        shutdown_timeout (float): Shared graceful shutdown bound in seconds
        readiness_url (str): Target of the readiness GET
        readiness_timeout (float): Timeout of the readiness GET in seconds
        dial_timeout (float): CONNECT dial timeout in seconds
        upstream_timeout (float): Forwarded request timeout in seconds
        realm (str): Realm named in the Proxy-Authenticate challenge
        log_format (str): "text" or "rich"
        log_file (str): Optional path of a rotating log file
    """

    username: str
    password: str
    debug: bool = DEBUG_DEFAULT
    listen_addr: str = LISTEN_ADDR_DEFAULT
    port_proxy: int = PORT_PROXY_DEFAULT
    port_probes: int = PORT_PROBES_DEFAULT
    shutdown_timeout: float = 5.0
    readiness_url: str = READINESS_URL_DEFAULT
    readiness_timeout: float = 5.0
    dial_timeout: float = 10.0
    upstream_timeout: float = 60.0
    realm: str = PROXY_REALM_DEFAULT
    log_format: str = LOG_FORMAT_DEFAULT
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        if environ is None:
            environ = os.environ

        username = get_env(environ, "USERNAME")
        password = get_env(environ, "PASSWORD")
        if not username or not password:
            raise ConfigError("USERNAME and PASSWORD must both be set")

        log_format = get_env(environ, "LOG_FORMAT", LOG_FORMAT_DEFAULT).lower()
        if log_format not in LOG_FORMATS:
            raise ConfigError(f"invalid LOG_FORMAT {log_format!r}, expected one of {LOG_FORMATS}")

        shutdown_timeout = parse_duration(get_env(environ, "SHUTDOWN_TIMEOUT", SHUTDOWN_TIMEOUT_DEFAULT))
        if shutdown_timeout < 0:
            raise ConfigError("SHUTDOWN_TIMEOUT must not be negative")

        timeouts = {}
        for key, default in (
            ("READINESS_TIMEOUT", READINESS_TIMEOUT_DEFAULT),
            ("DIAL_TIMEOUT", DIAL_TIMEOUT_DEFAULT),
            ("UPSTREAM_TIMEOUT", UPSTREAM_TIMEOUT_DEFAULT),
        ):
            timeouts[key] = parse_duration(get_env(environ, key, default))
            if timeouts[key] <= 0:
                raise ConfigError(f"{key} must be positive")

        return cls(
            username=username,
            password=password,
            debug=parse_bool(get_env(environ, "DEBUG", str(DEBUG_DEFAULT).lower())),
            listen_addr=get_env(environ, "LISTEN_ADDR", LISTEN_ADDR_DEFAULT),
            port_proxy=parse_port(get_env(environ, "PORT_PROXY", str(PORT_PROXY_DEFAULT)), "PORT_PROXY"),
            port_probes=parse_port(get_env(environ, "PORT_PROBES", str(PORT_PROBES_DEFAULT)), "PORT_PROBES"),
            shutdown_timeout=shutdown_timeout,
            readiness_url=get_env(environ, "READINESS_URL", READINESS_URL_DEFAULT),
            readiness_timeout=timeouts["READINESS_TIMEOUT"],
            dial_timeout=timeouts["DIAL_TIMEOUT"],
            upstream_timeout=timeouts["UPSTREAM_TIMEOUT"],
            realm=get_env(environ, "PROXY_REALM", PROXY_REALM_DEFAULT),
            log_format=log_format,
            log_file=get_env(environ, "LOG_FILE") or None,
        )
