"""
MQTT Connection Management.

This module is responsible for:
- Driving the lifecycle of one broker connection (prepare, init, start, stop, close).
- Building the connect options once, during init.
- Handing pooled protocol clients to consumers and producers, and connecting
  them lazily the first time an endpoint asks for it.
- Disconnecting and closing every pooled client, best effort, on stop / close.
"""
import concurrent.futures
import logging
import threading
from enum import Enum
from typing import Optional

from mqtt_link.connection.clients import AsyncClient, ClientKind, SyncClient
from mqtt_link.connection.config import ConnectionConfig
from mqtt_link.connection.config_loader import load_connection_config
from mqtt_link.connection.options import ConnectOptions, ConnectOptionsBuilder
from mqtt_link.connection.pool import Client, ClientPool
from mqtt_link.exceptions import ConfigurationError, ConnectError, MqttLinkError
from mqtt_link.security import PasswordDecoder, decode_password

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    UNCONFIGURED = "unconfigured"
    PREPARED = "prepared"
    INITIALIZED = "initialized"
    STARTED = "started"
    STOPPED = "stopped"
    CLOSED = "closed"


class MqttConnection:
    config: ConnectionConfig
    state: ConnectionState
    pool: Optional[ClientPool]
    _builder: ConnectOptionsBuilder

    """
    One broker connection shared by any number of consumers and producers.

    start_connection() performs no I/O: each endpoint connects its own
    client through start_client() when it needs it.
    """
    def __init__(self, config: Optional[ConnectionConfig] = None, decoder: PasswordDecoder = decode_password):
        self.config = config if config is not None else ConnectionConfig()
        self.state = ConnectionState.UNCONFIGURED
        self.pool = None
        self._builder = ConnectOptionsBuilder(self.config, decoder)
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, source, decoder: PasswordDecoder = decode_password) -> "MqttConnection":
        """Creates a connection from a YAML file path or an already loaded dict."""
        return cls(load_connection_config(source), decoder)

    @property
    def server_uri(self) -> Optional[str]:
        return self.config.server_uri

    @property
    def connect_options(self) -> Optional[ConnectOptions]:
        """The options built during init, None before that."""
        return self._builder.options

    # --- lifecycle ---

    def prepare_connection(self):
        if not self.config.server_uri or not self.config.server_uri.strip():
            raise ConfigurationError("server_uri is required for an MQTT connection")
        with self._lock:
            if self.state == ConnectionState.UNCONFIGURED:
                self.state = ConnectionState.PREPARED

    def init_connection(self):
        """Builds the connect options. Only one thread at a time gets to do it."""
        with self._lock:
            if self.state in (ConnectionState.INITIALIZED, ConnectionState.STARTED):
                return
            if self.state == ConnectionState.CLOSED:
                raise MqttLinkError("Cannot init a closed MQTT connection")
            if self.state == ConnectionState.UNCONFIGURED:
                self.prepare_connection()
            logger.debug("Init Mqtt Connection")
            try:
                self._builder.build()
            except ConfigurationError:
                raise
            except Exception as e:
                raise ConfigurationError(f"Could not build connect options: {e}") from e
            if self.pool is None:
                self.pool = ClientPool(self.config.unique_id, self.config.server_uri, self.config.persistence_location)
            self.state = ConnectionState.INITIALIZED

    def start_connection(self):
        with self._lock:
            if self.state == ConnectionState.STARTED:
                return
            if self.state not in (ConnectionState.INITIALIZED, ConnectionState.STOPPED):
                self.init_connection()
            logger.debug("Start Mqtt Connection")
            self.state = ConnectionState.STARTED

    def stop_connection(self):
        with self._lock:
            if self.state != ConnectionState.STARTED:
                return
            logger.debug("Disconnect All Mqtt Clients")
            for client in self._pooled_clients():
                self.pool.stop(client)
            self.state = ConnectionState.STOPPED

    def close_connection(self):
        with self._lock:
            if self.state == ConnectionState.CLOSED:
                return
            if self.state == ConnectionState.STARTED:
                self.stop_connection()
            logger.debug("Close All Mqtt Clients")
            for client in self._pooled_clients():
                self.pool.close(client)
            self.state = ConnectionState.CLOSED

    def _pooled_clients(self):
        if self.pool is None:
            return []
        return self.pool.clients(ClientKind.SYNC) + self.pool.clients(ClientKind.ASYNC)

    # --- client acquisition ---

    def _require_pool(self) -> ClientPool:
        if self.pool is None:
            self.init_connection()
        return self.pool

    def get_or_create_sync_client(self, client_id: Optional[str] = None) -> SyncClient:
        return self._require_pool().get_or_create(client_id, ClientKind.SYNC)

    def get_or_create_async_client(self, client_id: Optional[str] = None) -> AsyncClient:
        return self._require_pool().get_or_create(client_id, ClientKind.ASYNC)

    def get_sync_client(self, client_id: str) -> Optional[SyncClient]:
        return self._require_pool().get(client_id, ClientKind.SYNC)

    def get_async_client(self, client_id: str) -> Optional[AsyncClient]:
        return self._require_pool().get(client_id, ClientKind.ASYNC)

    # --- per client operations ---

    def start_client(self, client: Client):
        """
        Connects the client with the connection's options unless it already is.

        Raises ConnectError if the broker cannot be reached or refuses us,
        or if the credentials cannot be decoded.
        """
        if client.is_connected():
            return
        logger.debug(f"Connect Mqtt Client [{client.client_id}]")
        try:
            options = self._builder.build()
            token = client.connect(options)
            if isinstance(token, concurrent.futures.Future):
                token.result(client.time_to_wait)
        except concurrent.futures.TimeoutError as e:
            raise ConnectError(f"Timed out connecting [{client.client_id}] to {self.server_uri}") from e
        except (MqttLinkError, OSError) as e:
            raise ConnectError(f"Could not connect [{client.client_id}] to {self.server_uri}: {e}") from e

    def stop_client(self, client: Optional[Client]):
        if self.pool is not None:
            self.pool.stop(client)

    def close_client(self, client: Optional[Client]):
        if self.pool is not None:
            self.pool.close(client)

    def force_close_client(self, client: Optional[Client]):
        if self.pool is not None:
            self.pool.force_close(client)
