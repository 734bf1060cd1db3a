"""Progress observers notified by the sync orchestrator."""

import logging
from typing import Protocol

from crmsync.websocket.manager import ConnectionManager
from crmsync.websocket.schemas import (
    SyncBatchMessage,
    SyncCompleteMessage,
    SyncErrorMessage,
    SyncStartMessage,
)

logger = logging.getLogger(__name__)


class ProgressObserver(Protocol):
    """
    Receives run progress in the order on_start, on_batch*, then exactly
    one of on_complete or on_error.
    """

    async def on_start(self, total: int | None) -> None: ...

    async def on_batch(self, batch_size: int, total_processed: int, total: int | None) -> None: ...

    async def on_complete(self) -> None: ...

    async def on_error(self, error: BaseException) -> None: ...


class NullProgressObserver:
    async def on_start(self, total: int | None) -> None:
        pass

    async def on_batch(self, batch_size: int, total_processed: int, total: int | None) -> None:
        pass

    async def on_complete(self) -> None:
        pass

    async def on_error(self, error: BaseException) -> None:
        pass


class LoggingProgressObserver:
    """Writes progress to the log, e.g. for CLI and scheduled runs."""

    def __init__(self, name: str = "contact sync"):
        self.name = name

    async def on_start(self, total: int | None) -> None:
        logger.info(f"{self.name} started: {total if total is not None else 'unknown'} contacts expected")

    async def on_batch(self, batch_size: int, total_processed: int, total: int | None) -> None:
        if total:
            percent = total_processed / total * 100
            logger.info(f"{self.name}: +{batch_size}, {total_processed}/{total} ({percent:.1f}%)")
        else:
            logger.info(f"{self.name}: +{batch_size}, {total_processed} processed")

    async def on_complete(self) -> None:
        logger.info(f"{self.name} completed")

    async def on_error(self, error: BaseException) -> None:
        logger.error(f"{self.name} failed: {error}")


class CompositeProgressObserver:
    """Fans each notification out to several observers; one failing does not stop the rest."""

    def __init__(self, *observers: ProgressObserver):
        self.observers = list(observers)

    async def _each(self, method: str, *args) -> None:
        for observer in self.observers:
            try:
                await getattr(observer, method)(*args)
            except Exception as e:
                logger.warning(f"Progress observer {type(observer).__name__}.{method} failed: {e!r}")

    async def on_start(self, total: int | None) -> None:
        await self._each("on_start", total)

    async def on_batch(self, batch_size: int, total_processed: int, total: int | None) -> None:
        await self._each("on_batch", batch_size, total_processed, total)

    async def on_complete(self) -> None:
        await self._each("on_complete")

    async def on_error(self, error: BaseException) -> None:
        await self._each("on_error", error)


class BroadcastProgressObserver:
    """Pushes progress to WebSocket subscribers of /ws/sync."""

    def __init__(self, connections: ConnectionManager, sync_type: str):
        self.connections = connections
        self.sync_type = sync_type

    async def on_start(self, total: int | None) -> None:
        await self.connections.broadcast(SyncStartMessage(sync_type=self.sync_type, total=total))

    async def on_batch(self, batch_size: int, total_processed: int, total: int | None) -> None:
        await self.connections.broadcast(
            SyncBatchMessage(
                sync_type=self.sync_type,
                batch_size=batch_size,
                total_processed=total_processed,
                total=total,
            )
        )

    async def on_complete(self) -> None:
        await self.connections.broadcast(SyncCompleteMessage(sync_type=self.sync_type))

    async def on_error(self, error: BaseException) -> None:
        await self.connections.broadcast(
            SyncErrorMessage(sync_type=self.sync_type, message=str(error))
        )
