"""
Credential Decoding.

This module is responsible for:
- Turning the opaque encoded secrets found in configuration into clear text.
- Providing the inverse operation for tooling and tests.

Secrets prefixed with `PW:` carry a base64 encoded UTF-8 value, anything
else is taken as plain text.
"""
import base64
import binascii
import logging
from typing import Callable

from mqtt_link.exceptions import PasswordError

logger = logging.getLogger(__name__)

ENCODED_PREFIX = "PW:"

# Any callable turning an encoded secret into clear text can stand in for decode_password
PasswordDecoder = Callable[[str], str]


def decode_password(value: str) -> str:
    """
    Decodes a possibly encoded secret.

    Raises PasswordError if the value carries the encoded prefix
    but is not valid base64 / UTF-8.
    """
    if value is None:
        raise PasswordError("Cannot decode a missing password")
    if not value.startswith(ENCODED_PREFIX):
        return value

    encoded = value[len(ENCODED_PREFIX):]
    try:
        return base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise PasswordError(f"Malformed encoded password: {e}") from e


def encode_password(value: str) -> str:
    """Encodes a clear text secret so that decode_password() gives it back."""
    return ENCODED_PREFIX + base64.b64encode(value.encode("utf-8")).decode("ascii")
