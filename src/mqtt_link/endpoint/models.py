"""
Data Models exchanged between the endpoints and the host pipeline.

Defines the message envelope handed to listeners, the outgoing MQTT
message built by producers, the listener / encoder seams and the
destinations a producer publishes to.
"""
import base64
import binascii
import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol, Union

from mqtt_link.connection.config import QOS_DEFAULT, RETAINED_DEFAULT
from mqtt_link.exceptions import ConfigurationError

METADATA_TOPIC = "mqtt.topic"
METADATA_QOS = "mqtt.qos"
METADATA_RETAINED = "mqtt.retained"

# --- The "Letter" (what the pipeline works with) ---

@dataclass
class Message:
    """The host message envelope: raw payload plus string metadata."""
    payload: bytes = b""
    metadata: Dict[str, str] = field(default_factory=dict)
    unique_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)

    @property
    def content(self) -> str:
        return self.payload.decode("utf-8")

    def to_json(self) -> str:
        """Converts the envelope to a JSON string, payload base64 encoded."""
        data = asdict(self)
        data["payload"] = base64.b64encode(self.payload).decode("ascii")
        return json.dumps(data)

    @classmethod
    def from_json(cls, text: str) -> "Message":
        data = json.loads(text)
        data["payload"] = base64.b64decode(data.get("payload", ""))
        return cls(**data)

# --- The "Envelope" (the MQTT context) ---

@dataclass(frozen=True)
class OutgoingMessage:
    """
    Represents a full MQTT publish (topic + payload + delivery flags).

    The field names follow the publish() signature of the protocol clients,
    so to_publish_args() can be spread straight into it.
    """
    topic: str
    payload: bytes
    qos: int = QOS_DEFAULT
    retained: bool = RETAINED_DEFAULT

    def to_publish_args(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "payload": self.payload,
            "qos": self.qos,
            "retained": self.retained,
        }

# --- Seams towards the host framework ---

class MessageListener(Protocol):
    def on_message(self, message: Message) -> None: ...


Listener = Union[MessageListener, Callable[[Message], None]]


def deliver(listener: Listener, message: Message):
    """Hands message to either a MessageListener or a plain callable."""
    on_message = getattr(listener, "on_message", None)
    if on_message is not None:
        on_message(message)
    else:
        listener(message)


class MessageEncoder(Protocol):
    def encode(self, message: Message) -> bytes: ...

    def decode(self, payload: bytes) -> Message: ...


class PayloadEncoder:
    """Sends the payload as is; metadata does not travel."""

    def encode(self, message: Message) -> bytes:
        return message.payload

    def decode(self, payload: bytes) -> Message:
        return Message(payload=bytes(payload))


class JsonEncoder:
    """Sends the whole envelope (payload and metadata) as JSON."""

    def encode(self, message: Message) -> bytes:
        return message.to_json().encode("utf-8")

    def decode(self, payload: bytes) -> Message:
        try:
            return Message.from_json(bytes(payload).decode("utf-8"))
        except (ValueError, TypeError, binascii.Error) as e:
            raise ValueError(f"Payload is not a JSON encoded message: {e}") from e

# --- Destinations ---

class ProduceDestination(Protocol):
    def get_destination(self, message: Message) -> str: ...


@dataclass(frozen=True)
class ConfiguredDestination:
    """Always the same topic name."""
    name: str

    def get_destination(self, message: Message) -> str:
        return self.name


@dataclass(frozen=True)
class MetadataDestination:
    """Takes the topic name from a metadata key of each message, with an optional fallback."""
    key: str
    default: Optional[str] = None

    def get_destination(self, message: Message) -> str:
        name = message.metadata.get(self.key) or self.default
        if not name:
            raise ConfigurationError(f"Message {message.unique_id} has no destination in metadata [{self.key}]")
        return name


def as_destination(value: Union[str, ProduceDestination, None]) -> Optional[ProduceDestination]:
    if value is None or not isinstance(value, str):
        return value
    return ConfiguredDestination(value)
