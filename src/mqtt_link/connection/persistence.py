"""
File Persistence for protocol clients.

Every client owns one directory below the persistence root, named after its
client id and broker address. A `.lck` file marks the directory as in use
while the client is open.
"""
import logging
import os
import re
from pathlib import Path
from typing import Optional, Union

from mqtt_link.connection.config import PERSISTENCE_LOCATION
from mqtt_link.exceptions import MqttClientError

logger = logging.getLogger(__name__)

LOCK_FILE = ".lck"
_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def default_persistence_root() -> Path:
    """<working directory>/.interlok-mqtt"""
    return Path(os.getcwd()) / PERSISTENCE_LOCATION


class FilePersistence:
    root: Path
    directory: Optional[Path]

    def __init__(self, root: Union[str, Path, None] = None):
        self.root = Path(root) if root is not None else default_persistence_root()
        self.directory = None

    def open(self, client_id: str, server_key: str):
        """Creates and locks the directory for this client."""
        name = _UNSAFE.sub("", f"{client_id}-{server_key}")
        directory = self.root / name
        try:
            directory.mkdir(parents=True, exist_ok=True)
            lock = directory / LOCK_FILE
            with open(lock, "x") as f:
                f.write(str(os.getpid()))
        except FileExistsError as e:
            raise MqttClientError(f"Persistence directory {directory} is already in use") from e
        except OSError as e:
            raise MqttClientError(f"Could not open persistence directory {directory}: {e}") from e
        self.directory = directory
        logger.debug(f"Opened persistence at {directory}")

    @property
    def is_open(self) -> bool:
        return self.directory is not None

    def close(self):
        """Releases the lock and removes the directory if nothing else is left in it."""
        if self.directory is None:
            return
        directory, self.directory = self.directory, None
        try:
            (directory / LOCK_FILE).unlink(missing_ok=True)
            if not any(directory.iterdir()):
                directory.rmdir()
        except OSError as e:
            raise MqttClientError(f"Could not close persistence directory {directory}: {e}") from e
