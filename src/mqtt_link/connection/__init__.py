"""
Connection-side components: configuration, connect options,
protocol clients, the client pool and the connection manager.
"""
from mqtt_link.connection.config import ConnectionConfig, LastWill, ProtocolVersion
from mqtt_link.connection.manager import ConnectionState, MqttConnection

__all__ = [
    "ConnectionConfig",
    "ConnectionState",
    "LastWill",
    "MqttConnection",
    "ProtocolVersion",
]
