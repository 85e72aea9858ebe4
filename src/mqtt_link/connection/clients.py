"""
Protocol Clients.

This module provides the two kinds of pooled protocol clients:
- `SyncClient`, a blocking wrapper around `paho-mqtt` whose network thread
  reconnects automatically after a connection loss.
- `AsyncClient`, a wrapper around `aiomqtt` running on a private event loop
  thread. Its operations return `concurrent.futures.Future` tokens.

Both bind to one server URI and one client id, open their file persistence
on construction, and report connection events to a single registered callback.
"""
import asyncio
import concurrent.futures
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol
from urllib.parse import urlsplit

import aiomqtt
import paho.mqtt.client as mqtt

from mqtt_link.connection.config import QOS_DEFAULT, RETAINED_DEFAULT, ProtocolVersion
from mqtt_link.connection.options import ConnectOptions
from mqtt_link.connection.persistence import FilePersistence
from mqtt_link.connection.ssl_properties import create_ssl_context
from mqtt_link.exceptions import ConfigurationError, MqttClientError, SubscribeError
from mqtt_link.log import TRACE

logger = logging.getLogger(__name__)

DEFAULT_CONNECTION_TIMEOUT = 30
DEFAULT_KEEP_ALIVE_INTERVAL = 60
RECONNECT_MIN_DELAY = 1
RECONNECT_MAX_DELAY = 128
# paho only accepts a positive socket timeout
UNBOUNDED_CONNECT_TIMEOUT = 365 * 24 * 3600.0
MAX_TOPIC_LENGTH = 65535

_DEFAULT_PORTS = {"tcp": 1883, "mqtt": 1883, "ssl": 8883, "mqtts": 8883, "ws": 80, "wss": 443}
_SECURE_SCHEMES = {"ssl", "mqtts", "wss"}
_WEBSOCKET_SCHEMES = {"ws", "wss"}

_PAHO_PROTOCOLS = {
    ProtocolVersion.V3_1: mqtt.MQTTv31,
    ProtocolVersion.V3_1_1: mqtt.MQTTv311,
    ProtocolVersion.DEFAULT: mqtt.MQTTv311,
}
_AIOMQTT_PROTOCOLS = {
    ProtocolVersion.V3_1: aiomqtt.ProtocolVersion.V31,
    ProtocolVersion.V3_1_1: aiomqtt.ProtocolVersion.V311,
    ProtocolVersion.DEFAULT: aiomqtt.ProtocolVersion.V311,
}


class ClientKind(str, Enum):
    SYNC = "sync"
    ASYNC = "async"


@dataclass(frozen=True)
class ConnectionComplete:
    """Emitted every time a client (re)connects. reconnect is True for automatic reconnects."""
    reconnect: bool
    server_uri: str


class ClientCallback(Protocol):
    """What an endpoint implements to hear from its client. Every method is optional."""

    def on_connection_complete(self, event: ConnectionComplete) -> None: ...

    def connection_lost(self, cause: Optional[BaseException]) -> None: ...

    def message_arrived(self, topic: str, message: Any) -> None: ...

    def delivery_complete(self, mid: int) -> None: ...


@dataclass(frozen=True)
class ServerAddress:
    scheme: str
    host: str
    port: int
    path: str = ""

    @property
    def secure(self) -> bool:
        return self.scheme in _SECURE_SCHEMES

    @property
    def transport(self) -> str:
        return "websockets" if self.scheme in _WEBSOCKET_SCHEMES else "tcp"

    @property
    def key(self) -> str:
        return f"{self.host}-{self.port}"


def parse_server_uri(server_uri: str) -> ServerAddress:
    """Splits tcp://host:port style URIs. Raises ConfigurationError on anything else."""
    if not server_uri or not server_uri.strip():
        raise ConfigurationError("server_uri is required")
    try:
        parts = urlsplit(server_uri.strip())
        port = parts.port
    except ValueError as e:
        raise ConfigurationError(f"Invalid server uri {server_uri}: {e}") from e
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise ConfigurationError(f"Unsupported server uri scheme in {server_uri}")
    if not parts.hostname:
        raise ConfigurationError(f"No host in server uri {server_uri}")
    return ServerAddress(scheme=scheme, host=parts.hostname, port=port or _DEFAULT_PORTS[scheme], path=parts.path)


def validate_topic_name(name: str) -> str:
    """Returns name if it is usable as a publish / subscribe topic, raises ValueError otherwise."""
    if not name:
        raise ValueError("Topic name must not be empty")
    if "\0" in name:
        raise ValueError(f"Topic name {name!r} contains a null character")
    if len(name.encode("utf-8")) > MAX_TOPIC_LENGTH:
        raise ValueError("Topic name is too long")
    return name


class _PendingAck:
    def __init__(self):
        self.event = threading.Event()
        self.failure: Optional[str] = None


class SyncClient:
    """
    Blocking MQTT client on top of paho-mqtt.

    connect / subscribe / unsubscribe / publish wait for the broker's
    acknowledgement for at most `time_to_wait` seconds (None waits forever).
    Calls made from within the network thread (i.e. from a callback) do not
    wait, since the acknowledgement can only arrive on that same thread.
    """
    kind = ClientKind.SYNC

    server_uri: str
    client_id: str
    address: ServerAddress
    time_to_wait: Optional[float]
    _client: Optional[mqtt.Client]
    _callback: Optional[ClientCallback]

    def __init__(self, server_uri: str, client_id: str, persistence: Optional[FilePersistence] = None):
        self.server_uri = server_uri
        self.client_id = client_id
        self.address = parse_server_uri(server_uri)
        self.time_to_wait = None
        self._client = None
        self._callback = None
        self._closed = False
        self._connecting = False
        self._disconnecting = False
        self._connack = threading.Event()
        self._connack_reason = None
        self._acks: Dict[int, _PendingAck] = {}
        self._ack_lock = threading.Lock()
        self._connect_lock = threading.Lock()
        self._network = threading.local()
        self._persistence = persistence or FilePersistence()
        self._persistence.open(client_id, self.address.key)

    @staticmethod
    def generate_client_id() -> str:
        return "paho" + uuid.uuid4().hex

    def set_callback(self, callback: Optional[ClientCallback]):
        self._callback = callback

    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected()

    @property
    def is_closed(self) -> bool:
        return self._closed

    def get_topic(self, name: str) -> str:
        return validate_topic_name(name)

    def connect(self, options: ConnectOptions):
        """Connects and waits for the CONNACK. No-op if already connected."""
        with self._connect_lock:
            if self._closed:
                raise MqttClientError(f"Client [{self.client_id}] is closed")
            if self.is_connected():
                return
            if self._client is None:
                try:
                    self._client = self._create_client(options)
                except ValueError as e:
                    raise MqttClientError(f"Could not create client [{self.client_id}]: {e}") from e
            client = self._client
            # A previous connection may still be retrying in the background
            client.loop_stop()

            timeout = options.connection_timeout
            if timeout is None:
                timeout = DEFAULT_CONNECTION_TIMEOUT
            keepalive = options.keep_alive_interval
            if keepalive is None:
                keepalive = DEFAULT_KEEP_ALIVE_INTERVAL

            self._connack.clear()
            self._connack_reason = None
            self._disconnecting = False
            self._connecting = True
            try:
                logger.debug(f"Connecting client [{self.client_id}] to {self.server_uri}")
                try:
                    client.connect(self.address.host, self.address.port, keepalive=keepalive)
                except (OSError, ValueError) as e:
                    raise MqttClientError(f"Could not connect to {self.server_uri}: {e}") from e
                client.loop_start()

                if not self._connack.wait(timeout if timeout > 0 else None):
                    self._abort(client)
                    raise MqttClientError(f"Timed out waiting for CONNACK from {self.server_uri}")
                if self._connack_reason is not None and self._connack_reason.is_failure:
                    self._abort(client)
                    raise MqttClientError(f"Connection to {self.server_uri} refused: {self._connack_reason}")
            finally:
                self._connecting = False

    def _create_client(self, options: ConnectOptions) -> mqtt.Client:
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            clean_session=options.clean_session,
            protocol=_PAHO_PROTOCOLS[options.protocol_version],
            transport=self.address.transport,
            reconnect_on_failure=options.automatic_reconnect,
        )
        if self.address.transport == "websockets":
            client.ws_set_options(path=self.address.path or "/mqtt")
        if options.username:
            client.username_pw_set(options.username, options.password)
        if options.will is not None:
            client.will_set(options.will.topic, options.will.payload, qos=options.will.qos, retain=options.will.retained)
        if self.address.secure:
            client.tls_set_context(create_ssl_context(options.ssl_properties))
        elif options.ssl_properties:
            logger.debug(f"Ignoring SSL properties for non TLS server uri {self.server_uri}")
        if options.connection_timeout is not None:
            client.connect_timeout = options.connection_timeout or UNBOUNDED_CONNECT_TIMEOUT
        client.reconnect_delay_set(min_delay=RECONNECT_MIN_DELAY, max_delay=RECONNECT_MAX_DELAY)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_publish = self._on_publish
        client.on_subscribe = self._on_subscribe
        client.on_unsubscribe = self._on_unsubscribe
        return client

    def _abort(self, client: mqtt.Client):
        self._disconnecting = True
        client.disconnect()
        client.loop_stop()

    def disconnect(self):
        """Sends DISCONNECT and stops the network thread."""
        client = self._client
        if client is None:
            return
        logger.debug(f"Disconnecting client [{self.client_id}]")
        self._disconnecting = True
        rc = client.disconnect()
        client.loop_stop()
        if rc not in (mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN):
            raise MqttClientError(f"Disconnect of [{self.client_id}] failed: {mqtt.error_string(rc)}")

    def disconnect_forcibly(self):
        """Tears the connection down without caring whether the broker saw a DISCONNECT."""
        client = self._client
        if client is None:
            return
        self._disconnecting = True
        try:
            client.disconnect()
        finally:
            client.loop_stop()

    def close(self):
        """Releases the persistence. The client must be disconnected first."""
        if self._closed:
            return
        if self.is_connected():
            raise MqttClientError(f"Client [{self.client_id}] is still connected")
        if self._client is not None:
            self._client.loop_stop()
        self._persistence.close()
        self._closed = True

    def subscribe(self, topic: str, qos: int = QOS_DEFAULT):
        self._request(lambda client: client.subscribe(topic, qos=qos), f"subscribe to {topic}")

    def unsubscribe(self, topic: str):
        self._request(lambda client: client.unsubscribe(topic), f"unsubscribe from {topic}")

    def _request(self, send, what: str):
        client = self._require_connected()
        with self._ack_lock:
            try:
                rc, mid = send(client)
            except ValueError as e:
                raise SubscribeError(f"Could not {what}: {e}") from e
            if rc != mqtt.MQTT_ERR_SUCCESS:
                raise SubscribeError(f"Could not {what}: {mqtt.error_string(rc)}")
            pending = self._acks.setdefault(mid, _PendingAck())
        try:
            if not self._wait(pending.event, what):
                return
        finally:
            with self._ack_lock:
                self._acks.pop(mid, None)
        if pending.failure:
            raise SubscribeError(f"Broker refused to {what}: {pending.failure}")

    def publish(self, topic: str, payload: bytes, qos: int = QOS_DEFAULT, retained: bool = RETAINED_DEFAULT) -> int:
        """Publishes and waits until the message is delivered according to its QoS."""
        client = self._require_connected()
        try:
            info = client.publish(topic, payload, qos=qos, retain=retained)
        except ValueError as e:
            raise MqttClientError(f"Could not publish to {topic}: {e}") from e
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MqttClientError(f"Could not publish to {topic}: {mqtt.error_string(info.rc)}")
        if self._in_network_thread():
            return info.mid
        try:
            info.wait_for_publish(self.time_to_wait)
        except (ValueError, RuntimeError) as e:
            raise MqttClientError(f"Could not publish to {topic}: {e}") from e
        if not info.is_published():
            raise MqttClientError(f"Timed out waiting for delivery of message {info.mid} to {topic}")
        return info.mid

    def _require_connected(self) -> mqtt.Client:
        if not self.is_connected():
            raise MqttClientError(f"Client [{self.client_id}] is not connected")
        return self._client

    def _wait(self, event: threading.Event, what: str) -> bool:
        if self._in_network_thread():
            logger.debug(f"Not waiting to {what} from the network thread of [{self.client_id}]")
            return False
        if not event.wait(self.time_to_wait):
            raise MqttClientError(f"Timed out waiting to {what}")
        return True

    def _in_network_thread(self) -> bool:
        return getattr(self._network, "active", False)

    @contextmanager
    def _network_thread(self):
        self._network.active = True
        try:
            yield
        finally:
            self._network.active = False

    def _dispatch(self, name: str, *args):
        handler = getattr(self._callback, name, None)
        if handler is None:
            return
        try:
            handler(*args)
        except Exception:
            # An exception escaping here would end paho's network thread
            logger.exception(f"Callback {name} of client [{self.client_id}] failed")

    # --- paho callbacks, all invoked on the network thread ---

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        with self._network_thread():
            if reason_code.is_failure:
                logger.warning(f"Client [{self.client_id}] connection refused: {reason_code}")
                self._connack_reason = reason_code
                self._connack.set()
                return
            reconnect = not self._connecting
            self._connack_reason = reason_code
            self._connack.set()
            logger.debug(f"Connection to server [{self.server_uri}] complete, reconnect={reconnect}")
            self._dispatch("on_connection_complete", ConnectionComplete(reconnect=reconnect, server_uri=self.server_uri))

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        with self._network_thread():
            if self._disconnecting:
                logger.debug(f"Client [{self.client_id}] disconnected")
                return
            logger.warning(f"Client [{self.client_id}] lost its connection: {reason_code}")
            self._dispatch("connection_lost", MqttClientError(str(reason_code)))

    def _on_message(self, client, userdata, message):
        with self._network_thread():
            self._dispatch("message_arrived", message.topic, message)

    def _on_publish(self, client, userdata, mid, reason_code, properties):
        with self._network_thread():
            self._dispatch("delivery_complete", mid)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties):
        with self._network_thread():
            failures = [str(rc) for rc in reason_code_list if rc.is_failure]
            self._ack(mid, ", ".join(failures) if failures else None)

    def _on_unsubscribe(self, client, userdata, mid, reason_code_list, properties):
        with self._network_thread():
            failures = [str(rc) for rc in reason_code_list if rc.is_failure]
            self._ack(mid, ", ".join(failures) if failures else None)

    def _ack(self, mid: int, failure: Optional[str]):
        with self._ack_lock:
            pending = self._acks.setdefault(mid, _PendingAck())
        pending.failure = failure
        pending.event.set()


class AsyncClient:
    """
    aiomqtt based client driven from a private event loop thread.

    Every operation returns a concurrent.futures.Future token; use
    `token.result(timeout)` from threads or `await asyncio.wrap_future(token)`
    from coroutines. After an unexpected connection loss the client
    reconnects with backoff when the options ask for automatic reconnect.
    """
    kind = ClientKind.ASYNC

    server_uri: str
    client_id: str
    address: ServerAddress
    time_to_wait: Optional[float]
    _client: Optional[aiomqtt.Client]
    _callback: Optional[ClientCallback]

    def __init__(self, server_uri: str, client_id: str, persistence: Optional[FilePersistence] = None):
        self.server_uri = server_uri
        self.client_id = client_id
        self.address = parse_server_uri(server_uri)
        self.time_to_wait = None
        self._client = None
        self._callback = None
        self._connected = False
        self._disconnecting = False
        self._closed = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._reader: Optional[asyncio.Task] = None
        self._persistence = persistence or FilePersistence()
        self._persistence.open(client_id, self.address.key)

    @staticmethod
    def generate_client_id() -> str:
        return "paho" + uuid.uuid4().hex

    def set_callback(self, callback: Optional[ClientCallback]):
        self._callback = callback

    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_closed(self) -> bool:
        return self._closed

    def get_topic(self, name: str) -> str:
        return validate_topic_name(name)

    def _submit(self, coro) -> concurrent.futures.Future:
        if self._closed:
            coro.close()
            raise MqttClientError(f"Client [{self.client_id}] is closed")
        if self._loop is None:
            self._loop = asyncio.new_event_loop()
            self._thread = threading.Thread(
                target=self._loop.run_forever, name=f"mqtt-async-{self.client_id}", daemon=True
            )
            self._thread.start()
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def connect(self, options: ConnectOptions) -> concurrent.futures.Future:
        return self._submit(self._connect(options))

    def disconnect(self) -> concurrent.futures.Future:
        return self._submit(self._disconnect())

    def subscribe(self, topic: str, qos: int = QOS_DEFAULT) -> concurrent.futures.Future:
        return self._submit(self._call(lambda client: client.subscribe(topic, qos=qos), f"subscribe to {topic}", SubscribeError))

    def unsubscribe(self, topic: str) -> concurrent.futures.Future:
        return self._submit(self._call(lambda client: client.unsubscribe(topic), f"unsubscribe from {topic}", SubscribeError))

    def publish(self, topic: str, payload: bytes, qos: int = QOS_DEFAULT, retained: bool = RETAINED_DEFAULT) -> concurrent.futures.Future:
        return self._submit(self._call(lambda client: client.publish(topic, payload, qos=qos, retain=retained), f"publish to {topic}", MqttClientError))

    def disconnect_forcibly(self, timeout: float = 1.0):
        """Gives the broker `timeout` seconds to see the DISCONNECT, then gives up on it."""
        if self._loop is None or not self._connected:
            self._connected = False
            return
        token = self._submit(self._disconnect())
        try:
            token.result(timeout)
        except concurrent.futures.TimeoutError:
            token.cancel()
        finally:
            self._connected = False

    def close(self):
        """Stops the private event loop and releases the persistence."""
        if self._closed:
            return
        if self._connected:
            raise MqttClientError(f"Client [{self.client_id}] is still connected")
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join()
            self._loop.close()
            self._loop = None
            self._thread = None
        self._persistence.close()
        self._closed = True

    # --- coroutines, run on the private loop ---

    async def _open(self, options: ConnectOptions):
        tls_context = create_ssl_context(options.ssl_properties) if self.address.secure else None
        will = None
        if options.will is not None:
            will = aiomqtt.Will(options.will.topic, options.will.payload, qos=options.will.qos, retain=options.will.retained)
        timeout = options.connection_timeout if options.connection_timeout is not None else DEFAULT_CONNECTION_TIMEOUT
        client = aiomqtt.Client(
            self.address.host,
            self.address.port,
            username=options.username,
            password=options.password,
            identifier=self.client_id,
            protocol=_AIOMQTT_PROTOCOLS[options.protocol_version],
            will=will,
            clean_session=options.clean_session,
            transport=self.address.transport,
            timeout=timeout or None,
            keepalive=options.keep_alive_interval if options.keep_alive_interval is not None else DEFAULT_KEEP_ALIVE_INTERVAL,
            tls_context=tls_context,
            websocket_path=(self.address.path or "/mqtt") if self.address.transport == "websockets" else None,
        )
        await client.__aenter__()
        self._client = client
        self._connected = True

    async def _connect(self, options: ConnectOptions):
        if self._connected:
            return
        self._disconnecting = False
        try:
            await self._open(options)
        except aiomqtt.MqttError as e:
            raise MqttClientError(f"Could not connect to {self.server_uri}: {e}") from e
        logger.debug(f"Connection to server [{self.server_uri}] complete, reconnect=False")
        self._reader = asyncio.get_running_loop().create_task(self._read(options))
        self._reader.add_done_callback(self._reader_done)
        self._dispatch("on_connection_complete", ConnectionComplete(reconnect=False, server_uri=self.server_uri))

    async def _disconnect(self):
        self._disconnecting = True
        client, self._client = self._client, None
        self._connected = False
        try:
            if client is None:
                return
            logger.debug(f"Disconnecting async client [{self.client_id}]")
            await client.__aexit__(None, None, None)
        except aiomqtt.MqttError as e:
            raise MqttClientError(f"Disconnect of [{self.client_id}] failed: {e}") from e
        finally:
            if self._reader is not None:
                self._reader.cancel()
                self._reader = None

    async def _call(self, operation, what: str, error: type):
        if not self._connected or self._client is None:
            raise error(f"Could not {what}: client [{self.client_id}] is not connected")
        try:
            return await operation(self._client)
        except (aiomqtt.MqttError, ValueError) as e:
            raise error(f"Could not {what}: {e}") from e

    async def _read(self, options: ConnectOptions):
        while not self._disconnecting:
            try:
                async for message in self._client.messages:
                    self._dispatch("message_arrived", message.topic.value, message)
                return
            except aiomqtt.MqttError as e:
                if self._disconnecting:
                    return
                logger.warning(f"Async client [{self.client_id}] lost its connection: {e}")
                self._connected = False
                self._dispatch("connection_lost", e)
                if not options.automatic_reconnect or not await self._reconnect(options):
                    return

    def _reader_done(self, task: asyncio.Task):
        if task.cancelled() or task.exception() is None:
            return
        logger.error(f"Reader of async client [{self.client_id}] failed", exc_info=task.exception())

    async def _release_lost_client(self):
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.__aexit__(None, None, None)
        except (aiomqtt.MqttError, OSError) as e:
            logger.log(TRACE, f"Releasing the lost connection of [{self.client_id}] failed: {e}")

    async def _reconnect(self, options: ConnectOptions) -> bool:
        await self._release_lost_client()
        delay = RECONNECT_MIN_DELAY
        while not self._disconnecting:
            await asyncio.sleep(delay)
            try:
                await self._open(options)
            except aiomqtt.MqttError as e:
                logger.log(TRACE, f"Reconnect of [{self.client_id}] failed: {e}")
                delay = min(delay * 2, RECONNECT_MAX_DELAY)
                continue
            logger.debug(f"Connection to server [{self.server_uri}] complete, reconnect=True")
            self._dispatch("on_connection_complete", ConnectionComplete(reconnect=True, server_uri=self.server_uri))
            return True
        return False

    def _dispatch(self, name: str, *args):
        handler = getattr(self._callback, name, None)
        if handler is None:
            return
        try:
            handler(*args)
        except Exception:
            logger.exception(f"Callback {name} of async client [{self.client_id}] failed")


CLIENT_CLASSES: Dict[ClientKind, type] = {
    ClientKind.SYNC: SyncClient,
    ClientKind.ASYNC: AsyncClient,
}
