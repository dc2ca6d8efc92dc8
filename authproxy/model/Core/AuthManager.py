import base64
import binascii
import hmac
import logging
from dataclasses import dataclass
from http import HTTPStatus

from .header import HTTPRequest, ResponseWriter, http_error
from .logger import fields

BASIC_PREFIX = "Basic "


@dataclass(frozen=True)
class Credentials:
    """The single username/password pair the proxy accepts."""

    username: str
    password: str

    def matches(self, username: bytes, password: bytes) -> bool:
        # Both comparisons always run
        user_ok = hmac.compare_digest(username, self.username.encode("utf-8"))
        pass_ok = hmac.compare_digest(password, self.password.encode("utf-8"))
        return user_ok and pass_ok


def check_basic_auth(
    w: ResponseWriter,
    r: HTTPRequest,
    creds: Credentials,
    logger: logging.Logger,
    realm: str = "Restricted",
) -> bool:
    """
    Check the Proxy-Authorization header of a request.

    On rejection the error response is already written to w and the caller
    must not write anything else.

    Args:
        w (ResponseWriter): Writer for the rejection response
        r (HTTPRequest): The inbound request
        creds (Credentials): Accepted credentials
        logger (Logger): Process logger
        realm (str): Realm named in the challenge

    Returns:
        bool: True when the credentials match
    """
    auth = r.headers.get("Proxy-Authorization", "")
    if not auth:
        logger.debug("No Proxy-Authorization header found %s", fields(**r.log_fields()))
        w.set_header("Proxy-Authenticate", f'Basic realm="{realm}"')
        http_error(w, "Proxy Authentication Required", HTTPStatus.PROXY_AUTHENTICATION_REQUIRED)
        return False

    # Expected format: "Basic base64(username:password)"
    if not auth.startswith(BASIC_PREFIX):
        logger.debug("Invalid Proxy-Authorization header %s", fields(**r.log_fields()))
        http_error(w, "Unauthorized", HTTPStatus.UNAUTHORIZED)
        return False

    try:
        payload = base64.b64decode(auth[len(BASIC_PREFIX):], validate=True)
    except (binascii.Error, ValueError):
        logger.debug("Failed to decode Proxy-Authorization header %s", fields(**r.log_fields()))
        http_error(w, "Unauthorized", HTTPStatus.UNAUTHORIZED)
        return False

    parts = payload.split(b":", 1)
    if len(parts) != 2 or not creds.matches(parts[0], parts[1]):
        logger.debug("Invalid credentials %s", fields(**r.log_fields()))
        http_error(w, "Unauthorized", HTTPStatus.UNAUTHORIZED)
        return False

    logger.debug("Credentials accepted %s", fields(**r.log_fields()))
    return True
