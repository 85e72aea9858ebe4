"""
MQTT Consumer.

This module is responsible for:
- Subscribing one pooled client of an MqttConnection to a topic.
- Re-subscribing whenever the client reports an automatic reconnect.
- Decoding arriving payloads into Messages and handing them to the listener.
- Unsubscribing and releasing the client on stop / close.
"""
import logging
from datetime import timedelta
from typing import Any, Optional, Union

from mqtt_link.connection.clients import ConnectionComplete, SyncClient
from mqtt_link.connection.config import QOS_DEFAULT, validate_qos
from mqtt_link.connection.manager import MqttConnection
from mqtt_link.endpoint.models import (
    METADATA_QOS,
    METADATA_RETAINED,
    METADATA_TOPIC,
    Listener,
    MessageEncoder,
    PayloadEncoder,
    deliver,
)
from mqtt_link.exceptions import ConfigurationError, MqttClientError

logger = logging.getLogger(__name__)


def time_to_wait_seconds(value: Union[timedelta, float, None]) -> Optional[float]:
    """None, zero and negative values all mean: wait until the action finishes."""
    if value is None:
        return None
    seconds = value.total_seconds() if isinstance(value, timedelta) else float(value)
    return seconds if seconds > 0 else None


class MqttConsumer:
    connection: Optional[MqttConnection]
    topic: Optional[str]
    time_to_wait: Union[timedelta, float, None]
    encoder: MessageEncoder
    listener: Optional[Listener]
    _client: Optional[SyncClient]
    _topic_name: Optional[str]

    """
    Listens on one MQTT topic through a client borrowed from an MqttConnection.
    """
    def __init__(self, connection: Optional[MqttConnection] = None, topic: Optional[str] = None,
                 listener: Optional[Listener] = None, qos: int = QOS_DEFAULT,
                 time_to_wait: Union[timedelta, float, None] = None, encoder: Optional[MessageEncoder] = None):
        self.connection = connection
        self.topic = topic
        self.listener = listener
        self.qos = qos
        self.time_to_wait = time_to_wait
        self.encoder = encoder or PayloadEncoder()
        self._client = None
        self._topic_name = None

    @property
    def qos(self) -> int:
        return self._qos

    @qos.setter
    def qos(self, value: int):
        self._qos = validate_qos(value)

    def register_listener(self, listener: Listener):
        self.listener = listener

    @property
    def client(self) -> Optional[SyncClient]:
        return self._client

    def prepare(self):
        if not self.topic:
            raise ConfigurationError("A topic is required for an MQTT consumer")

    def init(self):
        if self.connection is None:
            raise ConfigurationError("An MqttConnection is required for an MQTT consumer")
        self.prepare()
        self._client = self.connection.get_or_create_sync_client(None)
        self._client.set_callback(self)
        try:
            self._topic_name = self._client.get_topic(self.topic)
        except ValueError as e:
            raise ConfigurationError(f"Invalid topic {self.topic!r}: {e}") from e
        self._client.time_to_wait = time_to_wait_seconds(self.time_to_wait)
        self._start_connection()

    def start(self):
        self._start_connection()
        self._subscribe()

    def _start_connection(self):
        if not self._client.is_connected():
            logger.debug("Connection is not started so we start it")
            self.connection.start_client(self._client)

    def stop(self):
        self._unsubscribe()
        self.connection.stop_client(self._client)

    def close(self):
        if self._client is None:
            return
        self._unsubscribe()
        self.connection.close_client(self._client)
        self._client = None

    def _subscribe(self):
        try:
            logger.debug(f"Subscribe to topic [{self._topic_name}]")
            self._client.subscribe(self._topic_name, qos=self.qos)
        except MqttClientError as e:
            logger.error(f"Failed to subscribe to topic [{self._topic_name}]: {e}")

    def _unsubscribe(self):
        if self._client is None or not self._client.is_connected():
            return
        try:
            self._client.unsubscribe(self._topic_name)
        except MqttClientError as e:
            logger.error(f"Could not unsubscribe from topic [{self._topic_name}]: {e}")

    # --- client callbacks ---

    def on_connection_complete(self, event: ConnectionComplete):
        logger.debug(f"Connection to server [{event.server_uri}] complete")
        if event.reconnect:
            self._subscribe()

    def connection_lost(self, cause: Optional[BaseException]):
        logger.debug(f"Connection Lost: {cause}")

    def delivery_complete(self, mid: int):
        logger.debug("Message Delivery Complete")

    def message_arrived(self, topic: str, message: Any):
        logger.debug("Message Arrived")
        if self.listener is None:
            logger.warning(f"No listener registered, dropping message from [{topic}]")
            return
        received = self.encoder.decode(message.payload)
        received.metadata[METADATA_TOPIC] = topic
        received.metadata[METADATA_QOS] = str(message.qos)
        received.metadata[METADATA_RETAINED] = str(bool(message.retain)).lower()
        deliver(self.listener, received)
