"""
Weather state holder.

Acquiring weather (location lookup, weather APIs) happens elsewhere; this
module only keeps the last reading and announces changes.
"""

from typing import Awaitable, Callable, Optional, Protocol

from common.logging import get_logger
from common.models import WeatherInfo, utc_now

logger = get_logger(__name__)


class WeatherSource(Protocol):
    """Anything that can produce a fresh reading."""

    async def fetch(self) -> Optional[WeatherInfo]: ...


class WeatherService:
    """Last known weather plus an optional source refreshed by the heartbeat."""

    def __init__(
        self,
        source: Optional[WeatherSource] = None,
        on_update: Optional[Callable[[WeatherInfo], Awaitable[None]]] = None,
    ):
        self.source = source
        self.on_update = on_update
        self.current: Optional[WeatherInfo] = None
        self.last_error: Optional[str] = None

    async def update(self, temperature: float, condition: str, location: str) -> WeatherInfo:
        """Record a reading and notify listeners."""
        info = WeatherInfo(
            temperature=temperature,
            condition=condition,
            location=location,
            last_updated=utc_now(),
        )
        await self._store(info)
        return info

    async def _store(self, info: WeatherInfo) -> None:
        self.current = info
        self.last_error = None
        logger.info(event="weather_updated", location=info.location, condition=info.condition)
        if self.on_update is not None:
            await self.on_update(info)

    async def refresh(self) -> Optional[WeatherInfo]:
        """Pull from the source, if any. A failing source keeps the last reading."""
        if self.source is None:
            return self.current
        try:
            info = await self.source.fetch()
        except Exception as e:
            self.last_error = str(e)
            logger.warning(event="weather_refresh_failed", error=str(e), error_type=type(e).__name__)
            return self.current
        if info is not None:
            await self._store(info)
        return self.current
