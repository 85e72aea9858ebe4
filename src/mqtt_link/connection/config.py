"""
Connection Configuration Models.

Defines the values the host populates before a connection is initialised:
the broker address, credentials, protocol settings, TLS properties and
the optional last will.
"""
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import List, Optional, Tuple

from mqtt_link.exceptions import ConfigurationError

QOS_DEFAULT = 1
RETAINED_DEFAULT = False
CLEAN_SESSION_DEFAULT = True
DEFAULT_ENCODING = "UTF-8"
PERSISTENCE_LOCATION = ".interlok-mqtt"


def validate_qos(qos: int, what: str = "qos") -> int:
    if qos not in (0, 1, 2):
        raise ConfigurationError(f"{what} must be 0, 1 or 2, not {qos!r}")
    return qos


class ProtocolVersion(str, Enum):
    V3_1 = "V3_1"
    V3_1_1 = "V3_1_1"
    DEFAULT = "DEFAULT"


@dataclass
class LastWill:
    """The message the broker publishes on our behalf if the connection drops."""
    topic: str
    payload: Optional[str] = None
    qos: int = QOS_DEFAULT
    retained: bool = RETAINED_DEFAULT
    payload_encoding: str = DEFAULT_ENCODING


@dataclass
class ConnectionConfig:
    """
    Everything needed to build connect options and protocol clients.

    Mutable on purpose: the host fills it in before init. Once the connect
    options are built, later changes have no effect on them.
    """
    server_uri: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None  # may be an encoded secret, see mqtt_link.security
    protocol_version: ProtocolVersion = ProtocolVersion.DEFAULT
    clean_session: bool = CLEAN_SESSION_DEFAULT
    connection_timeout: Optional[timedelta] = None
    keep_alive_interval: Optional[timedelta] = None
    ssl_properties: List[Tuple[str, str]] = field(default_factory=list)
    last_will: Optional[LastWill] = None
    unique_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    persistence_location: Optional[str] = None
