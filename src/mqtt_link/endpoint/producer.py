"""
MQTT Producer.

This module is responsible for:
- Publishing Messages to a topic through a client borrowed from an MqttConnection.
- Resolving destination names to topics once and caching the result.
- Applying the configured QoS and retained flag to every publish.
"""
import logging
from datetime import timedelta
from typing import Dict, Optional, Union

from mqtt_link.connection.clients import SyncClient
from mqtt_link.connection.config import QOS_DEFAULT, RETAINED_DEFAULT, validate_qos
from mqtt_link.connection.manager import MqttConnection
from mqtt_link.endpoint.consumer import time_to_wait_seconds
from mqtt_link.endpoint.models import (
    Message,
    MessageEncoder,
    OutgoingMessage,
    PayloadEncoder,
    ProduceDestination,
    as_destination,
)
from mqtt_link.exceptions import ConfigurationError, PublishError

logger = logging.getLogger(__name__)


class MqttProducer:
    connection: Optional[MqttConnection]
    destination: Optional[ProduceDestination]
    retained: bool
    time_to_wait: Union[timedelta, float, None]
    encoder: MessageEncoder
    _client: Optional[SyncClient]
    _topic_cache: Dict[str, str]

    """
    Places messages on an MQTT topic.
    """
    def __init__(self, connection: Optional[MqttConnection] = None,
                 destination: Union[str, ProduceDestination, None] = None,
                 qos: int = QOS_DEFAULT, retained: bool = RETAINED_DEFAULT,
                 time_to_wait: Union[timedelta, float, None] = None, encoder: Optional[MessageEncoder] = None):
        self.connection = connection
        self.destination = as_destination(destination)
        self.qos = qos
        self.retained = retained
        self.time_to_wait = time_to_wait
        self.encoder = encoder or PayloadEncoder()
        self._client = None
        self._topic_cache = {}

    @property
    def qos(self) -> int:
        return self._qos

    @qos.setter
    def qos(self, value: int):
        self._qos = validate_qos(value)

    @property
    def client(self) -> Optional[SyncClient]:
        return self._client

    def prepare(self):
        pass

    def init(self):
        if self.connection is None:
            raise ConfigurationError("An MqttConnection is required for an MQTT producer")
        if self.destination is None:
            raise ConfigurationError("Destination is required for an MQTT producer")
        self._client = self.connection.get_or_create_sync_client(None)
        self._client.time_to_wait = time_to_wait_seconds(self.time_to_wait)
        self._start_connection()

    def start(self):
        self._start_connection()

    def _start_connection(self):
        if not self._client.is_connected():
            logger.debug("Connection is not started so we start it")
            self.connection.start_client(self._client)

    def stop(self):
        self.connection.stop_client(self._client)

    def close(self):
        if self._client is None:
            return
        self.connection.close_client(self._client)
        self._client = None
        self._topic_cache.clear()

    def produce(self, message: Message, destination: Union[str, ProduceDestination, None] = None):
        """
        Publishes the message to its resolved topic.

        Raises PublishError on any failure.
        """
        try:
            topic = self.resolve_topic(message, as_destination(destination) or self.destination)
            outgoing = self._apply_extra_options(topic, self.encoder.encode(message))
            logger.debug(f"Publish message to topic [{topic}]")
            self._client.publish(**outgoing.to_publish_args())
            logger.debug("Message published")
        except PublishError:
            raise
        except Exception as e:
            raise PublishError(f"Could not publish message {message.unique_id}: {e}") from e

    def _apply_extra_options(self, topic: str, payload: bytes) -> OutgoingMessage:
        return OutgoingMessage(topic=topic, payload=payload, qos=self.qos, retained=self.retained)

    def resolve_topic(self, message: Message, destination: Optional[ProduceDestination] = None) -> str:
        destination = destination or self.destination
        if destination is None:
            raise ConfigurationError("Destination is required for an MQTT producer")
        if self._client is None:
            raise PublishError("Producer is not initialised")
        # The destination may depend on the message (metadata destinations)
        topic_name = destination.get_destination(message)

        topic = self._topic_cache.get(topic_name)
        if topic is None:
            topic = self._retrieve_topic(topic_name)
            self._topic_cache[topic_name] = topic
        return topic

    def _retrieve_topic(self, topic_name: str) -> str:
        return self._client.get_topic(topic_name)
