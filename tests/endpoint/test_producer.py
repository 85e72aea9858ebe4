from unittest.mock import MagicMock

import pytest

from mqtt_link.connection.clients import SyncClient
from mqtt_link.connection.manager import MqttConnection
from mqtt_link.endpoint.models import JsonEncoder, Message, MetadataDestination, OutgoingMessage
from mqtt_link.endpoint.producer import MqttProducer
from mqtt_link.exceptions import ConfigurationError, MqttClientError, PublishError

"""
Producer Tests.
Tests how MqttProducer resolves its destination, caches topics and
publishes with its configured delivery flags.
"""

@pytest.fixture
def client():
    client = MagicMock(spec=SyncClient)
    client.client_id = "owner-paho1"
    client.get_topic.side_effect = lambda name: name
    client.is_connected.return_value = True
    return client


@pytest.fixture
def connection(client):
    connection = MagicMock(spec=MqttConnection)
    connection.get_or_create_sync_client.return_value = client
    return connection


@pytest.fixture
def producer(connection):
    producer = MqttProducer(connection, destination="actuators/valve")
    producer.init()
    return producer


def test_init_requires_connection_and_destination(connection):
    with pytest.raises(ConfigurationError):
        MqttProducer(None, destination="a/b").init()
    with pytest.raises(ConfigurationError):
        MqttProducer(connection).init()


@pytest.mark.parametrize("qos", [-1, 3, "1"])
def test_invalid_qos_is_rejected(qos):
    with pytest.raises(ConfigurationError):
        MqttProducer(qos=qos)


def test_init_connects_client_if_needed(connection, client):
    client.is_connected.return_value = False

    MqttProducer(connection, destination="a/b", time_to_wait=3).init()

    connection.start_client.assert_called_once_with(client)
    assert client.time_to_wait == 3.0


def test_produce_publishes_with_configured_flags(connection, client):
    producer = MqttProducer(connection, destination="actuators/valve", qos=2, retained=True)
    producer.init()

    producer.produce(Message(payload=b"open"))

    client.publish.assert_called_once_with(topic="actuators/valve", payload=b"open", qos=2, retained=True)


def test_defaults_are_qos_one_not_retained(producer, client):
    producer.produce(Message(payload=b"open"))

    client.publish.assert_called_once_with(**OutgoingMessage("actuators/valve", b"open").to_publish_args())
    assert client.publish.call_args.kwargs["qos"] == 1
    assert client.publish.call_args.kwargs["retained"] is False


def test_topic_is_resolved_once(producer, client):
    """Repeated sends to the same destination look the topic up only once."""
    for i in range(5):
        producer.produce(Message(payload=str(i).encode()))

    client.get_topic.assert_called_once_with("actuators/valve")
    assert client.publish.call_count == 5


def test_topic_cache_is_cleared_on_close(producer, connection, client):
    producer.produce(Message(payload=b"1"))

    producer.close()
    producer.init()
    producer.produce(Message(payload=b"2"))

    assert client.get_topic.call_count == 2
    connection.close_client.assert_called_once_with(client)


def test_destination_override(producer, client):
    producer.produce(Message(payload=b"x"), destination="other/topic")

    assert client.publish.call_args.kwargs["topic"] == "other/topic"


def test_metadata_destination(connection, client):
    producer = MqttProducer(connection, destination=MetadataDestination("target", default="fallback"))
    producer.init()

    producer.produce(Message(payload=b"a", metadata={"target": "room/1"}))
    producer.produce(Message(payload=b"b"))

    topics = [c.kwargs["topic"] for c in client.publish.call_args_list]
    assert topics == ["room/1", "fallback"]


def test_publish_failure_raises_publish_error(producer, client):
    client.publish.side_effect = MqttClientError("Client is not connected")

    with pytest.raises(PublishError):
        producer.produce(Message(payload=b"x"))


def test_unresolvable_destination_raises_publish_error(connection, client):
    producer = MqttProducer(connection, destination=MetadataDestination("target"))
    producer.init()

    with pytest.raises(PublishError):
        producer.produce(Message(payload=b"x"))
    client.publish.assert_not_called()


def test_produce_before_init_raises_publish_error(connection):
    with pytest.raises(PublishError):
        MqttProducer(connection, destination="a/b").produce(Message(payload=b"x"))


def test_json_encoder_sends_envelope(connection, client):
    producer = MqttProducer(connection, destination="a/b", encoder=JsonEncoder())
    producer.init()
    message = Message(payload=b"x", metadata={"k": "v"})

    producer.produce(message)

    sent = client.publish.call_args.kwargs["payload"]
    assert JsonEncoder().decode(sent).metadata == {"k": "v"}


def test_stop_disconnects_client(producer, connection, client):
    producer.stop()
    connection.stop_client.assert_called_once_with(client)
