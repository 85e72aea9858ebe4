"""
Connect Options.

This module is responsible for:
- Defining the immutable ConnectOptions value handed to the protocol clients.
- Building it exactly once per connection from a ConnectionConfig.

A failed build leaves nothing behind: no partial options are ever cached.
"""
import codecs
import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from types import MappingProxyType
from typing import Mapping, Optional

from mqtt_link.connection.config import ConnectionConfig, LastWill, ProtocolVersion, validate_qos
from mqtt_link.connection.ssl_properties import apply_ssl_properties
from mqtt_link.exceptions import ConfigurationError
from mqtt_link.security import PasswordDecoder, decode_password

logger = logging.getLogger(__name__)

NOT_CONFIGURED = -1


@dataclass(frozen=True)
class WillOptions:
    topic: str
    payload: bytes
    qos: int
    retained: bool


@dataclass(frozen=True)
class ConnectOptions:
    """What the protocol clients need to connect. None means library default."""
    protocol_version: ProtocolVersion
    clean_session: bool
    username: Optional[str] = None
    password: Optional[str] = None
    connection_timeout: Optional[int] = None
    keep_alive_interval: Optional[int] = None
    ssl_properties: Optional[Mapping[str, str]] = None
    will: Optional[WillOptions] = None
    automatic_reconnect: bool = True


def time_interval_to_seconds(interval: Optional[timedelta]) -> int:
    """Whole seconds of the interval, or -1 when it is not configured."""
    if interval is None:
        return NOT_CONFIGURED
    return int(interval.total_seconds())


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def _validate_will(last_will: LastWill):
    if _is_blank(last_will.topic):
        raise ConfigurationError("Last will topic is required")
    if "+" in last_will.topic or "#" in last_will.topic:
        raise ConfigurationError(f"Last will topic cannot contain wildcards: {last_will.topic}")
    validate_qos(last_will.qos, "Last will qos")


def _encode_will_payload(payload: Optional[str], encoding: str) -> bytes:
    try:
        codecs.lookup(encoding)
    except LookupError as e:
        raise ConfigurationError(f"Unknown last will payload encoding: {encoding}") from e
    if payload is None:
        return b""
    try:
        return payload.encode(encoding)
    except UnicodeError as e:
        raise ConfigurationError(f"Last will payload cannot be encoded as {encoding}: {e}") from e


class ConnectOptionsBuilder:
    """
    Builds the ConnectOptions of one connection, at most once.

    Protocol clients share the options object, so it is never rebuilt
    even if the configuration changes afterwards.
    """
    config: ConnectionConfig
    decoder: PasswordDecoder
    _options: Optional[ConnectOptions]

    def __init__(self, config: ConnectionConfig, decoder: PasswordDecoder = decode_password):
        self.config = config
        self.decoder = decoder
        self._options = None
        self._lock = threading.RLock()

    @property
    def options(self) -> Optional[ConnectOptions]:
        """The memoized options, None until build() succeeded."""
        return self._options

    def build(self) -> ConnectOptions:
        """
        Returns the memoized options, building them on the first call.

        Raises ConfigurationError (or PasswordError) on a bad secret,
        a bad SSL property or a bad last will encoding.
        """
        with self._lock:
            if self._options is None:
                self._options = self._build()
                logger.debug(f"Connect options built for {self.config.server_uri}")
            return self._options

    def _build(self) -> ConnectOptions:
        config = self.config
        username = password = None
        if not _is_blank(config.username) and not _is_blank(config.password):
            username = config.username
            password = self.decoder(config.password)

        connection_timeout = time_interval_to_seconds(config.connection_timeout)
        keep_alive_interval = time_interval_to_seconds(config.keep_alive_interval)

        ssl_properties = apply_ssl_properties(config.ssl_properties, {}, self.decoder)

        will = None
        if config.last_will is not None:
            last_will = config.last_will
            _validate_will(last_will)
            will = WillOptions(
                topic=last_will.topic,
                payload=_encode_will_payload(last_will.payload, last_will.payload_encoding),
                qos=last_will.qos,
                retained=last_will.retained,
            )

        return ConnectOptions(
            protocol_version=config.protocol_version,
            clean_session=config.clean_session,
            username=username,
            password=password,
            connection_timeout=connection_timeout if connection_timeout > NOT_CONFIGURED else None,
            keep_alive_interval=keep_alive_interval if keep_alive_interval > NOT_CONFIGURED else None,
            ssl_properties=MappingProxyType(dict(ssl_properties)) if ssl_properties else None,
            will=will,
            automatic_reconnect=True,
        )
