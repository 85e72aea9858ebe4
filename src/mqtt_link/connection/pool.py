"""
Client Pool.

This module is responsible for:
- Holding the synchronous and asynchronous protocol clients of one connection,
  keyed by their generated client id.
- Creating a client on first request and returning the same instance afterwards.
- Disconnecting and closing clients, falling back to a forced close when the
  graceful path fails. Teardown failures are logged, never raised.
"""
import concurrent.futures
import logging
from typing import Callable, Dict, List, Optional, Union

from mqtt_link.connection.clients import CLIENT_CLASSES, AsyncClient, ClientKind, SyncClient
from mqtt_link.connection.persistence import FilePersistence
from mqtt_link.exceptions import MqttClientError
from mqtt_link.log import TRACE

logger = logging.getLogger(__name__)

Client = Union[SyncClient, AsyncClient]


class ClientPool:
    owner_id: str
    server_uri: str
    persistence_location: Optional[str]
    _clients: Dict[ClientKind, Dict[str, Client]]

    """
    The clients of one connection. Never hands out its maps, only clients.
    """
    def __init__(self, owner_id: str, server_uri: str, persistence_location: Optional[str] = None,
                 client_classes: Optional[Dict[ClientKind, Callable[..., Client]]] = None):
        self.owner_id = owner_id
        self.server_uri = server_uri
        self.persistence_location = persistence_location
        self._client_classes = client_classes or CLIENT_CLASSES
        self._clients = {kind: {} for kind in ClientKind}

    def get_or_create(self, client_id: Optional[str], kind: ClientKind) -> Client:
        """
        Returns the pooled client for client_id, or a brand new one if the
        id is None or unknown. A known id never gets a second client object.
        """
        clients = self._clients[kind]
        if client_id is not None:
            existing = clients.get(client_id)
            if existing is not None:
                return existing
        return self._new_client(kind)

    def _new_client(self, kind: ClientKind) -> Client:
        client_class = self._client_classes[kind]
        client_id = f"{self.owner_id}-{client_class.generate_client_id()}"
        try:
            client = client_class(self.server_uri, client_id, FilePersistence(self.persistence_location))
        except MqttClientError as e:
            raise MqttClientError(f"Mqtt {kind.value} client could not be initialized: {e}") from e
        registered = self._clients[kind].setdefault(client_id, client)
        logger.debug(f"Created {kind.value} client [{client_id}] for {self.server_uri}")
        return registered

    def get(self, client_id: str, kind: ClientKind) -> Optional[Client]:
        return self._clients[kind].get(client_id)

    def clients(self, kind: ClientKind) -> List[Client]:
        """A snapshot, safe to iterate while clients are being removed."""
        return list(self._clients[kind].values())

    def __contains__(self, client: Client) -> bool:
        return client is not None and self._clients[client.kind].get(client.client_id) is client

    def __len__(self) -> int:
        return sum(len(clients) for clients in self._clients.values())

    def stop(self, client: Optional[Client]):
        """Disconnects the client if it is connected. Failures are logged only."""
        if client is None or not client.is_connected():
            return
        try:
            logger.debug(f"Disconnect Mqtt Client [{client.client_id}]")
            self._disconnect(client)
        except MqttClientError as e:
            logger.error(f"Could not stop connection of [{client.client_id}]: {e}")

    def close(self, client: Optional[Client]):
        """
        Disconnects (if needed), detaches the callback, releases the client
        and removes it from the pool. Falls back to force_close() on failure.
        """
        if client is None:
            return
        try:
            logger.debug(f"Close Mqtt Client [{client.client_id}]")
            if client.is_connected():
                self._disconnect(client)
            self._release(client)
        except MqttClientError as e:
            logger.error(f"Could not close connection of [{client.client_id}]: {e}")
            self.force_close(client)

    def force_close(self, client: Optional[Client]):
        """Best effort teardown, never raises. The client always leaves the pool."""
        if client is None:
            return
        logger.debug(f"Force Close Mqtt Client [{client.client_id}]")
        try:
            if client.is_connected():
                client.disconnect_forcibly()
            self._release(client)
        except Exception as e:
            logger.log(TRACE, f"Could not force close connection of [{client.client_id}]: {e}")
        finally:
            self._remove(client)

    def _disconnect(self, client: Client):
        token = client.disconnect()
        if isinstance(token, concurrent.futures.Future):
            try:
                token.result(client.time_to_wait)
            except concurrent.futures.TimeoutError as e:
                raise MqttClientError(f"Timed out disconnecting [{client.client_id}]") from e

    def _release(self, client: Client):
        client.set_callback(None)
        client.close()
        self._remove(client)

    def _remove(self, client: Client):
        self._clients[client.kind].pop(client.client_id, None)
