"""
WebSocket connection management for the /ws/updates push channel.

Handles connection lifecycle and broadcasting of status events:
- The connection map is guarded by one lock, held only for in-memory
  operations and never across an await
- Every connection owns a FIFO queue drained by its own writer task, so a
  slow or dead client never delays delivery to the others and events reach
  each client in the order they were broadcast
- A failed, timed-out or overflowing connection is dropped and its socket
  closed with 1011 in the background; failures are logged, never raised to
  the broadcaster
"""

import asyncio
import threading
from typing import Dict, List, Optional, Protocol, Set, Tuple

from common.logging import get_logger
from common.models import StatusEvent

logger = get_logger(__name__)

# WebSocket close code sent to a connection the hub gave up on
DROPPED_CLOSE_CODE = 1011


class Transport(Protocol):
    """What the hub needs from a connection (FastAPI's WebSocket fits)."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class ConnectionDropped(Exception):
    """Delivery did not happen because the connection was removed."""


_Outbound = Tuple[str, Optional["asyncio.Future[bool]"]]


class _Connection:
    """One registered client: transport, outbound queue and writer task."""

    def __init__(
        self,
        connection_id: str,
        transport: Transport,
        manager: "ConnectionManager",
        send_timeout: float,
        max_pending: int,
    ):
        self.connection_id = connection_id
        self.transport = transport
        self._manager = manager
        self._send_timeout = send_timeout
        self._queue: "asyncio.Queue[_Outbound]" = asyncio.Queue(maxsize=max_pending)
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"ws-writer-{self.connection_id}"
        )

    def enqueue(self, payload: str, wait: bool) -> Optional["asyncio.Future[bool]"]:
        """
        Queue a payload; returns a delivery future when ``wait`` is set.

        Raises:
            asyncio.QueueFull: the client is not keeping up
        """
        waiter = asyncio.get_running_loop().create_future() if wait else None
        self._queue.put_nowait((payload, waiter))
        return waiter

    async def _run(self) -> None:
        while True:
            payload, waiter = await self._queue.get()
            try:
                await asyncio.wait_for(self.transport.send_text(payload), timeout=self._send_timeout)
            except asyncio.CancelledError:
                _settle(waiter, ConnectionDropped(self.connection_id))
                raise
            except Exception as e:
                # Drop first so the broadcaster never sees a failed connection still registered
                self._manager._drop_failed(self, e)
                _settle(waiter, e)
                self._fail_pending(e)
                return
            else:
                _settle(waiter, None)

    def _fail_pending(self, error: BaseException) -> None:
        while True:
            try:
                _, waiter = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            _settle(waiter, error)

    def stop(self) -> None:
        """Cancel the writer; queued deliveries resolve as dropped."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._fail_pending(ConnectionDropped(self.connection_id))


def _settle(waiter: Optional["asyncio.Future[bool]"], error: Optional[BaseException]) -> None:
    if waiter is None or waiter.done():
        return
    if error is None:
        waiter.set_result(True)
    else:
        waiter.set_exception(error)


class ConnectionManager:
    """Registry of live push-channel connections and fan-out of status events."""

    def __init__(self, send_timeout: float = 10.0, max_pending: int = 256):
        self._connections: Dict[str, _Connection] = {}
        self._lock = threading.Lock()
        self._closing: Set[asyncio.Task] = set()
        self.send_timeout = send_timeout
        self.max_pending = max_pending

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def register(
        self,
        connection_id: str,
        transport: Transport,
        greeting: Optional[StatusEvent] = None,
    ) -> None:
        """
        Add a connection. Must be called from the event loop.

        ``greeting`` is queued before the connection becomes visible to
        broadcasts, so it is always the first event the client receives.
        A duplicate id is logged and overwritten.
        """
        connection = _Connection(
            connection_id, transport, self, self.send_timeout, self.max_pending
        )
        if greeting is not None:
            payload = self._serialize(greeting)
            if payload is not None:
                connection.enqueue(payload, wait=False)

        with self._lock:
            previous = self._connections.get(connection_id)
            self._connections[connection_id] = connection
            total = len(self._connections)

        if previous is not None:
            logger.warning(
                event="connection_id_collision",
                message="Connection id already registered, replacing",
                connection_id=connection_id,
            )
            previous.stop()

        connection.start()
        logger.info(
            event="connection_established",
            message="WebSocket connection established",
            connection_id=connection_id,
            total_connections=total,
        )

    def unregister(self, connection_id: str) -> None:
        """Remove a connection; no-op when absent."""
        with self._lock:
            connection = self._connections.pop(connection_id, None)
            total = len(self._connections)

        if connection is None:
            return

        connection.stop()
        logger.info(
            event="connection_closed",
            message="WebSocket connection closed",
            connection_id=connection_id,
            total_connections=total,
        )

    def _drop_failed(self, connection: _Connection, error: BaseException) -> None:
        with self._lock:
            if self._connections.get(connection.connection_id) is connection:
                del self._connections[connection.connection_id]
            total = len(self._connections)

        logger.warning(
            event="send_failed",
            message="Failed to send to connection, dropping it",
            connection_id=connection.connection_id,
            error=str(error) or type(error).__name__,
            error_type=type(error).__name__,
            total_connections=total,
        )
        self._close_transport(connection)

    def _close_transport(self, connection: _Connection) -> None:
        """Close a dropped connection's socket in the background, best effort."""
        task = asyncio.get_running_loop().create_task(
            self._close_quietly(connection), name=f"ws-close-{connection.connection_id}"
        )
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close_quietly(self, connection: _Connection) -> None:
        try:
            await asyncio.wait_for(
                connection.transport.close(code=DROPPED_CLOSE_CODE), timeout=self.send_timeout
            )
        except Exception as e:
            logger.info(
                event="dropped_connection_close_failed",
                connection_id=connection.connection_id,
                error=str(e) or type(e).__name__,
            )

    def get_connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def connection_ids(self) -> List[str]:
        with self._lock:
            return list(self._connections)

    def is_registered(self, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._connections

    # ------------------------------------------------------------------
    # Broadcasting
    # ------------------------------------------------------------------

    def _serialize(self, event: StatusEvent) -> Optional[str]:
        try:
            return event.to_json()
        except (TypeError, ValueError, AttributeError) as e:
            logger.error(
                event="broadcast_serialization_failed",
                message="Failed to encode WebSocket event",
                error=str(e),
            )
            return None

    def _fan_out(
        self, event: StatusEvent, wait: bool
    ) -> Tuple[int, List["asyncio.Future[bool]"]]:
        payload = self._serialize(event)
        if payload is None:
            return 0, []

        waiters: List["asyncio.Future[bool]"] = []
        overflowed: List[_Connection] = []
        with self._lock:
            targets = list(self._connections.values())
            for connection in targets:
                try:
                    waiter = connection.enqueue(payload, wait)
                except asyncio.QueueFull:
                    overflowed.append(connection)
                    continue
                if waiter is not None:
                    waiters.append(waiter)

        for connection in overflowed:
            self._drop_failed(connection, ConnectionDropped("outbound queue full"))
            connection.stop()

        logger.info(
            event="broadcast_queued",
            event_type=getattr(event.type, "value", event.type),
            recipients=len(targets) - len(overflowed),
            dropped=len(overflowed),
        )
        return len(targets) - len(overflowed), waiters

    def publish(self, event: StatusEvent) -> int:
        """
        Queue ``event`` for every connection without waiting for delivery.

        Must be called from the event loop. Returns the number of connections
        the event was queued for.
        """
        queued, _ = self._fan_out(event, wait=False)
        return queued

    async def broadcast(self, event: StatusEvent) -> int:
        """
        Send ``event`` to every registered connection and wait for the outcome.

        Unlike ``publish``, this waits for every delivery to finish, up to
        ``send_timeout`` per stalled client. That wait is what guarantees
        connections whose write failed are already unregistered when this
        returns. Producers that must not wait use ``publish``.

        Never raises for delivery problems. Returns the delivered count.
        """
        _, waiters = self._fan_out(event, wait=True)
        if not waiters:
            return 0

        results = await asyncio.gather(*waiters, return_exceptions=True)
        delivered = sum(1 for result in results if result is True)

        logger.info(
            event="broadcast_complete",
            event_type=getattr(event.type, "value", event.type),
            delivered=delivered,
            failed=len(results) - delivered,
        )
        return delivered

    async def close(self) -> None:
        """Stop every writer task (application shutdown)."""
        with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()

        for connection in connections:
            connection.stop()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        logger.info(event="connection_manager_closed", closed_connections=len(connections))
