"""
Pytest Configuration and Fixtures for the mqtt_link project.

This module provides the shared logging setup, an embedded `amqtt` broker
running on its own event loop thread, and connection fixtures whose client
persistence lives in a temporary directory.
"""

import asyncio
import logging
import socket
import sys
import threading

import pytest
from amqtt.broker import Broker as AMQTTBroker

from mqtt_link.connection import ConnectionConfig, MqttConnection
from mqtt_link.log import TRACE


class EmbeddedBroker:
    port: int
    config: dict
    broker: AMQTTBroker

    """
    An amqtt broker on a private event loop thread, so that the blocking
    clients under test can talk to it from the test thread.
    """
    def __init__(self, port: int):
        self.port = port
        self.config = {
            'listeners': {
                'default': {
                    'type': 'tcp',
                    'bind': f'127.0.0.1:{port}',
                }
            },
            'auth': {
                'allow-anonymous': True,
            },
            'topic-check': {
                'enabled': False # Disable topic checks for simple broker tests
            }
        }
        self.broker = None
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, name="embedded-broker", daemon=True)

    @property
    def uri(self) -> str:
        return f"tcp://127.0.0.1:{self.port}"

    def start(self, timeout: float = 5.0):
        self._thread.start()
        asyncio.run_coroutine_threadsafe(self._start(), self._loop).result(timeout)
        logging.info(f"Embedded MQTT Broker started on {self.uri}")

    async def _start(self):
        # The broker binds itself to the loop it is created on
        self.broker = AMQTTBroker(self.config)
        await self.broker.start()

    def stop(self, timeout: float = 5.0):
        if self._loop.is_closed():
            return
        try:
            if self.broker is not None and self._thread.is_alive():
                asyncio.run_coroutine_threadsafe(self.broker.shutdown(), self._loop).result(timeout)
                logging.info("Embedded MQTT Broker stopped successfully.")
        finally:
            self._loop.call_soon_threadsafe(self._loop.stop)
            if self._thread.is_alive():
                self._thread.join(timeout)
            if not self._thread.is_alive():
                self._loop.close()


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """
    Configures the Python logging framework globally for all tests,
    including the TRACE level used by the chattier code paths.
    """
    formatter = logging.Formatter(fmt="%(levelname)-8s %(message)s - %(funcName)s:%(lineno)d ")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.setLevel(TRACE)
    logger.addHandler(handler)
    # amqtt is very verbose at DEBUG
    logging.getLogger("amqtt").setLevel(logging.WARNING)
    logging.getLogger("transitions").setLevel(logging.WARNING)


@pytest.fixture
def broker():
    """
    Starts an embedded broker on a free local port and yields it.
    Tests depending on it are skipped if the broker cannot start.
    """
    embedded = EmbeddedBroker(_free_port())
    try:
        embedded.start()
    except Exception as e:
        try:
            embedded.stop()
        finally:
            pytest.skip(f"Embedded MQTT broker could not be started: {e}")
    yield embedded
    embedded.stop()


@pytest.fixture
def connection_config(tmp_path):
    """A minimal valid configuration whose client persistence lives in tmp_path."""
    return ConnectionConfig(
        server_uri="tcp://localhost:1883",
        persistence_location=str(tmp_path / "persistence"),
    )


@pytest.fixture
def live_connection(broker, tmp_path):
    """An MqttConnection against the embedded broker, closed after the test."""
    connection = MqttConnection(ConnectionConfig(
        server_uri=broker.uri,
        persistence_location=str(tmp_path / "persistence"),
    ))
    yield connection
    connection.close_connection()
