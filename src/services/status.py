"""
Status snapshot service: the server, heartbeat and weather view served on
/v1/status and pushed on /ws/updates.
"""

import time
from typing import Optional

from common.config import Config
from common.models import HeartbeatInfo, ServerInfo, StatusSnapshot
from services.heartbeat import HeartbeatService
from services.weather import WeatherService


class StatusService:
    """Produces a StatusSnapshot on demand."""

    def __init__(
        self,
        config: Config,
        heartbeat: Optional[HeartbeatService] = None,
        weather: Optional[WeatherService] = None,
    ):
        self.config = config
        self.heartbeat = heartbeat
        self.weather = weather
        self._started = time.monotonic()

    def snapshot(self) -> StatusSnapshot:
        heartbeat_info = (
            self.heartbeat.info()
            if self.heartbeat is not None
            else HeartbeatInfo(interval=self.config.heartbeat.interval)
        )
        return StatusSnapshot(
            server=ServerInfo(
                version=self.config.server.version,
                uptime=round(time.monotonic() - self._started, 3),
                port=self.config.server.port,
            ),
            heartbeat=heartbeat_info,
            weather=self.weather.current if self.weather is not None else None,
        )
