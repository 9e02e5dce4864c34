"""Main loop run on the device by ``overdrip start``."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from overdrip.device.client import CommandSubscription, DeviceClient

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 30.0


class OverdripRuntime:
    """Authenticate once, then tick until :meth:`stop` is called.

    Each tick renews the session when it is about to expire and publishes a
    heartbeat status through the client's telemetry sink. Sensor and
    actuator drivers hook in by subclassing and overriding :meth:`tick`.

    Args:
        client: The device client.
        commands: Optional remote command source.
        interval: Seconds between ticks.
        max_ticks: Stop after this many ticks; ``None`` runs until stopped.
    """

    def __init__(
        self,
        client: DeviceClient,
        commands: Optional[CommandSubscription] = None,
        interval: float = DEFAULT_INTERVAL,
        max_ticks: Optional[int] = None,
    ) -> None:
        self._client = client
        self._commands = commands
        self._interval = interval
        self._max_ticks = max_ticks
        self._stop = threading.Event()
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        return self._client.is_authenticated and not self._stop.is_set()

    def start(self) -> None:
        """Authenticate and run the loop in the calling thread.

        Errors from the first authentication propagate: a device whose auth
        code was revoked must be set up again, not retried forever.
        """
        logger.info(
            "Starting runtime for %s (%s)", self._client.device_name, self._client.device_id
        )
        self._client.authenticate()
        if self._commands is not None:
            self._commands.subscribe(self._client.device_id, self.handle_command)
        try:
            while not self._stop.is_set():
                self._client.ensure_session()
                self.tick()
                self.ticks += 1
                if self._max_ticks is not None and self.ticks >= self._max_ticks:
                    break
                self._stop.wait(self._interval)
        finally:
            if self._commands is not None:
                self._commands.unsubscribe()
            self._client.disconnect()
            logger.info("Runtime stopped")

    def stop(self) -> None:
        self._stop.set()

    def tick(self) -> None:
        self._client.upload_status(
            {"state": "online", "at": datetime.now(timezone.utc).isoformat()}
        )

    def handle_command(self, command: Mapping[str, Any]) -> None:
        logger.info("Received command %s", command.get("type", "<unknown>"))
