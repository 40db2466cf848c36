"""One-shot app refresh after session-affecting events."""
import asyncio
import logging
from typing import Optional

from shopsync.config import settings
from shopsync.storage.kv import REFRESH_FLAG_KEY, KeyValueStore
from shopsync.utils.events import Event, EventChannel

logger = logging.getLogger(__name__)


class AppRefreshSignal:
    """
    Persisted flag asking the next app mount to rebuild everything.

    Delivery is at most once: the flag is removed as soon as it is seen, so a
    crash between consume() and the rebuild loses the refresh.
    """

    def __init__(self, storage: KeyValueStore):
        self.storage = storage

    async def trigger(self) -> None:
        logger.info("[REFRESH] Setting app refresh trigger")
        await self.storage.set(REFRESH_FLAG_KEY, "true")

    async def is_pending(self) -> bool:
        return await self.storage.get(REFRESH_FLAG_KEY) == "true"

    async def consume(self) -> bool:
        """Return True once per trigger, clearing the flag."""
        if not await self.is_pending():
            return False
        await self.storage.remove(REFRESH_FLAG_KEY)
        return True


class AppRefresher:
    """
    Consumer of the refresh signal at the root of the app.

    When the signal fires it refreshes the cart and bumps `remount_count`;
    the UI keys its whole tree on that counter, so no screen keeps state
    computed for a previous user.
    """

    def __init__(
        self,
        signal: AppRefreshSignal,
        engine,
        channel: Optional[EventChannel] = None,
        settle_delay: Optional[float] = None
    ):
        """
        Initialize the refresher.

        Args:
            signal: The persisted refresh flag
            engine: Cart engine whose refresh_cart() runs during a refresh
            channel: Optional event channel; APP_REMOUNT is published with the new count
            settle_delay: Seconds between the cart refresh and the remount
                          (defaults to settings.refresh_settle_delay)
        """
        self.signal = signal
        self.engine = engine
        self.channel = channel
        self.settle_delay = settle_delay if settle_delay is not None else settings.refresh_settle_delay
        self.remount_count = 0
        self.is_refreshing = False

    async def on_mount(self) -> bool:
        """
        Check the flag and run a refresh if it is set.

        Returns:
            True if a refresh ran
        """
        try:
            if not await self.signal.consume():
                return False
        except OSError as e:
            logger.error(f"[REFRESH] Error checking refresh flag: {e}")
            return False

        logger.info("[REFRESH] App refresh triggered")
        self.is_refreshing = True
        try:
            try:
                await self.engine.refresh_cart()
            except Exception:
                logger.exception("[REFRESH] Error refreshing cart during app refresh")
            if self.settle_delay > 0:
                await asyncio.sleep(self.settle_delay)
            self.remount_count += 1
        finally:
            self.is_refreshing = False

        if self.channel is not None:
            await self.channel.emit(Event.APP_REMOUNT, self.remount_count)
        logger.info(f"[REFRESH] App refresh completed (remount {self.remount_count})")
        return True
