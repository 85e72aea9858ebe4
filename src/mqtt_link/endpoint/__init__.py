"""
Endpoint components: the consumer and producer that borrow
pooled protocol clients from an MqttConnection.
"""
from mqtt_link.endpoint.consumer import MqttConsumer
from mqtt_link.endpoint.models import Message
from mqtt_link.endpoint.producer import MqttProducer

__all__ = [
    "Message",
    "MqttConsumer",
    "MqttProducer",
]
