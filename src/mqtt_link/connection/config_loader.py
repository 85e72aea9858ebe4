"""
Configuration Loader.

Responsible for reading the YAML configuration file and turning its
`connection` section into a ConnectionConfig.
"""
import re
import yaml
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Union

from mqtt_link.connection.config import (
    CLEAN_SESSION_DEFAULT,
    DEFAULT_ENCODING,
    QOS_DEFAULT,
    RETAINED_DEFAULT,
    ConnectionConfig,
    LastWill,
    ProtocolVersion,
)
from mqtt_link.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_DURATION_PATTERN = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$", re.IGNORECASE)
_UNITS = {
    "ms": "milliseconds",
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "milliseconds": "milliseconds",
    "seconds": "seconds",
    "minutes": "minutes",
    "hours": "hours",
}


def load_config(config_path: Union[str, Path] = "config.yaml") -> Dict[str, Any]:
    """
    Loads the YAML configuration file.
    """
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file not found at {path}. Using defaults.")
        return {}

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {path}")
            return config
    except Exception as e:
        logger.error(f"Failed to parse config file: {e}")
        raise


def parse_duration(value: Any) -> Optional[timedelta]:
    """
    Converts a configured duration into a timedelta.

    Accepts None, a timedelta, a number of seconds, a string such as
    "500ms", "30s", "5m", "1h", or a mapping {interval: 10, unit: SECONDS}.
    """
    if value is None or isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if isinstance(value, str):
        match = _DURATION_PATTERN.match(value)
        if not match:
            raise ConfigurationError(f"Invalid duration: {value!r}")
        amount, unit = match.groups()
        return timedelta(**{_UNITS[(unit or "s").lower()]: float(amount)})
    if isinstance(value, dict):
        unit = str(value.get("unit", "seconds")).lower()
        if unit not in _UNITS:
            raise ConfigurationError(f"Invalid duration unit: {unit!r}")
        return timedelta(**{_UNITS[unit]: float(value.get("interval", 0))})
    raise ConfigurationError(f"Invalid duration: {value!r}")


def _parse_ssl_properties(value: Any):
    # Either a mapping (YAML keeps insertion order) or a list of {key, value} / [key, value]
    if not value:
        return []
    if isinstance(value, dict):
        return [(str(k), str(v)) for k, v in value.items()]
    pairs = []
    for item in value:
        if isinstance(item, dict):
            pairs.append((str(item["key"]), str(item["value"])))
        else:
            key, val = item
            pairs.append((str(key), str(val)))
    return pairs


def _parse_last_will(value: Optional[Dict[str, Any]]) -> Optional[LastWill]:
    if not value:
        return None
    if not value.get("topic"):
        raise ConfigurationError("last_will requires a topic")
    return LastWill(
        topic=value["topic"],
        payload=value.get("payload"),
        qos=int(value.get("qos", QOS_DEFAULT)),
        retained=bool(value.get("retained", RETAINED_DEFAULT)),
        payload_encoding=value.get("payload_encoding", DEFAULT_ENCODING),
    )


def load_connection_config(source: Union[str, Path, Dict[str, Any]]) -> ConnectionConfig:
    """
    Builds a ConnectionConfig from a YAML file path or an already loaded dict.

    The connection settings live under the `connection` key; a dict without
    that key is taken as the connection section itself.
    """
    config = source if isinstance(source, dict) else load_config(source)
    conn_conf = config.get("connection", config)

    try:
        protocol_version = ProtocolVersion(str(conn_conf.get("protocol_version", "DEFAULT")).upper())
    except ValueError as e:
        raise ConfigurationError(f"Unknown protocol version: {conn_conf.get('protocol_version')}") from e

    connection_config = ConnectionConfig(
        server_uri=conn_conf.get("server_uri"),
        username=conn_conf.get("username"),
        password=conn_conf.get("password"),
        protocol_version=protocol_version,
        clean_session=bool(conn_conf.get("clean_session", CLEAN_SESSION_DEFAULT)),
        connection_timeout=parse_duration(conn_conf.get("connection_timeout")),
        keep_alive_interval=parse_duration(conn_conf.get("keep_alive_interval")),
        ssl_properties=_parse_ssl_properties(conn_conf.get("ssl_properties")),
        last_will=_parse_last_will(conn_conf.get("last_will")),
        persistence_location=conn_conf.get("persistence_location"),
    )
    if conn_conf.get("unique_id"):
        connection_config.unique_id = conn_conf["unique_id"]
    return connection_config
