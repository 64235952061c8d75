"""
HTTP, SSE and WebSocket front door using FastAPI.

Main gateway orchestrator that delegates to specialized components:
- ChatGateway for /v1/chat, /v1/chat/stream and /v1/models
- ConnectionManager for the /ws/updates push channel
- StatusService / HeartbeatService / WeatherService for status data
"""

import uuid
from contextlib import aclosing, asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import httpx
from fastapi import FastAPI, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from common.config import Config
from common.errors import GatewayError
from common.logging import get_logger
from common.models import (
    ChatRequest,
    ChatResponse,
    ErrorBody,
    ModelsResponse,
    SelectModelRequest,
    StatusEvent,
    StatusEventType,
    StatusResponse,
    WeatherInfo,
)
from common.settings_store import FileSecretStore, SettingsService, SettingsStore
from gateway.connection_manager import ConnectionManager
from gateway.middleware import LocalNetworkOnlyMiddleware, request_logging_middleware
from router.chat_gateway import ChatGateway
from services.heartbeat import HeartbeatService
from services.status import StatusService
from services.weather import WeatherService, WeatherSource

logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class GatewayServer:
    """FastAPI application wiring the chat gateway, broadcast hub and status collaborators."""

    def __init__(
        self,
        config: Config,
        settings: Optional[SettingsService] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        weather_source: Optional[WeatherSource] = None,
    ):
        self.config = config
        self.settings = settings or SettingsService(
            SettingsStore(Path(config.settings_path)),
            FileSecretStore(Path(config.secrets_path)),
        )
        self.connection_manager = ConnectionManager(
            send_timeout=config.hub.send_timeout,
            max_pending=config.hub.max_pending,
        )
        self.chat_gateway = ChatGateway(config, self.settings, http_client)

        self.heartbeat = HeartbeatService(interval=config.heartbeat.interval)
        self.weather = WeatherService(source=weather_source, on_update=self._announce_weather)
        self.status = StatusService(config, self.heartbeat, self.weather)
        self.heartbeat.add_task(self.weather.refresh)
        self.heartbeat.add_task(self._announce_heartbeat)

        self.app = FastAPI(
            title="Nyl Server",
            version=config.server.version,
            lifespan=self._lifespan,
        )
        self.app.state.gateway_server = self
        self._setup_middleware()
        self._setup_exception_handlers()
        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        if self.config.heartbeat.enabled:
            self.heartbeat.start()
        logger.info(
            event="gateway_started",
            port=self.config.server.port,
            local_network_only=self.config.server.local_network_only,
        )
        try:
            yield
        finally:
            await self.heartbeat.stop()
            await self.connection_manager.close()
            await self.chat_gateway.aclose()
            logger.info(event="gateway_stopped")

    def _setup_middleware(self) -> None:
        self.app.middleware("http")(request_logging_middleware)
        # Added last so it wraps everything, including the request logger
        if self.config.server.local_network_only:
            self.app.add_middleware(LocalNetworkOnlyMiddleware)

    def _setup_exception_handlers(self) -> None:
        @self.app.exception_handler(GatewayError)
        async def gateway_error_handler(request: Request, exc: GatewayError):
            logger.warning(
                event="request_rejected",
                path=request.url.path,
                status=exc.status_code,
                error_type=type(exc).__name__,
                reason=exc.message,
            )
            return JSONResponse(
                ErrorBody(reason=exc.message).model_dump(), status_code=exc.status_code
            )

        @self.app.exception_handler(RequestValidationError)
        async def request_validation_handler(request: Request, exc: RequestValidationError):
            reasons = "; ".join(
                f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
                for error in exc.errors()
            )
            return JSONResponse(
                ErrorBody(reason=f"Invalid request: {reasons}").model_dump(), status_code=400
            )

    def _setup_routes(self) -> None:
        """Setup FastAPI routes."""

        @self.app.get("/", response_class=PlainTextResponse)
        async def root():
            return f"Nyl Server v{self.config.server.version}"

        @self.app.get("/v1/status", response_model=StatusResponse, response_model_exclude_none=True)
        async def get_status():
            return self.status.snapshot()

        @self.app.get("/v1/models", response_model=ModelsResponse, response_model_exclude_none=True)
        async def get_models():
            return await self.chat_gateway.list_models()

        @self.app.put(
            "/v1/models/selected", response_model=ModelsResponse, response_model_exclude_none=True
        )
        async def select_model(payload: SelectModelRequest):
            self.chat_gateway.select_model(payload.model)
            return await self.chat_gateway.list_models()

        @self.app.post("/v1/chat", response_model=ChatResponse, response_model_exclude_none=True)
        async def chat(payload: ChatRequest):
            return await self.chat_gateway.chat(payload)

        @self.app.post("/v1/chat/stream")
        async def chat_stream(payload: ChatRequest):
            return StreamingResponse(
                self._sse_frames(payload),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
            )

        @self.app.post(
            "/v1/heartbeat/trigger", response_model=StatusResponse, response_model_exclude_none=True
        )
        async def trigger_heartbeat():
            await self.heartbeat.trigger_now()
            return self.status.snapshot()

        @self.app.websocket("/ws/updates")
        async def updates_endpoint(websocket: WebSocket):
            await self._handle_updates_connection(websocket)

    async def _sse_frames(self, request: ChatRequest) -> AsyncIterator[str]:
        """One ``data:`` frame per chat event, yielded (and flushed) as soon as it exists."""
        frame_count = 0
        events = self.chat_gateway.stream_events(request)
        async with aclosing(events):
            async for event in events:
                frame_count += 1
                yield f"data: {event.to_json()}\n\n"
                if event.is_terminal:
                    break
        logger.info(event="chat_stream_closed", frames=frame_count)

    async def _handle_updates_connection(self, websocket: WebSocket) -> None:
        """Register a push-channel client; it only listens, so incoming frames are ignored."""
        connection_id = str(uuid.uuid4())
        await websocket.accept()

        greeting = StatusEvent(type=StatusEventType.CONNECTED, payload=self.status.snapshot())
        self.connection_manager.register(connection_id, websocket, greeting=greeting)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        finally:
            self.connection_manager.unregister(connection_id)
            logger.info(
                event="client_disconnect",
                message="WebSocket client disconnected",
                connection_id=connection_id,
            )

    # ------------------------------------------------------------------
    # Status broadcasting
    # ------------------------------------------------------------------

    def broadcast_status_update(self) -> int:
        """Push a statusUpdate event with a fresh snapshot to every client."""
        event = StatusEvent(type=StatusEventType.STATUS_UPDATE, payload=self.status.snapshot())
        return self.connection_manager.publish(event)

    async def _announce_heartbeat(self) -> None:
        snapshot = self.status.snapshot()
        self.connection_manager.publish(
            StatusEvent(type=StatusEventType.HEARTBEAT_FIRED, payload=snapshot)
        )
        self.broadcast_status_update()

    async def _announce_weather(self, info: WeatherInfo) -> None:
        self.connection_manager.publish(
            StatusEvent(type=StatusEventType.WEATHER_UPDATED, payload=self.status.snapshot())
        )


def create_gateway_app(
    config: Config,
    settings: Optional[SettingsService] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    weather_source: Optional[WeatherSource] = None,
) -> FastAPI:
    """Create and configure the FastAPI gateway application."""
    server = GatewayServer(config, settings, http_client, weather_source)
    return server.app
