import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional

from chatcore.auth import AuthSession
from chatcore.services.conversation_manager import ConversationManager

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[], Awaitable[None]]
CountObserver = Callable[[int], None]


class UpdateTrigger(ABC):
    """Decides when the unread count is recomputed (timer, push channel, ...)."""

    @abstractmethod
    def start(self, on_update: UpdateCallback) -> None:
        """Begin calling `on_update`; must be called from a running event loop."""

    @abstractmethod
    def stop(self) -> None:
        """Stop calling `on_update` and release resources."""


class PollingTrigger(UpdateTrigger):
    """Calls the update callback immediately and then every `interval` seconds."""

    def __init__(self, interval: float):
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, on_update: UpdateCallback) -> None:
        self.stop()
        self._task = asyncio.get_running_loop().create_task(self._run(on_update))
        logger.info(f"Polling started for unread count updates (every {self.interval}s)")

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self, on_update: UpdateCallback) -> None:
        while True:
            try:
                await on_update()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unread count poll failed")
            await asyncio.sleep(self.interval)


class RealtimeSyncManager:
    """Keeps the unread conversations count fresh for the signed-in user.

    Starts when the auth session becomes authenticated and stops (count
    reset to 0) when it becomes unauthenticated. Overlapping computations
    are allowed; the last one to finish publishes its result.
    """

    def __init__(
        self,
        conversation_manager: ConversationManager,
        auth: AuthSession,
        trigger: UpdateTrigger
    ):
        self._conversation_manager = conversation_manager
        self._auth = auth
        self._trigger = trigger
        self._observers: List[CountObserver] = []
        self._immediate_task: Optional[asyncio.Task] = None

        self.unread_conversations_count = 0
        self.is_connected = False

        self._remove_auth_listener = auth.add_listener(self._handle_auth_state_change)
        if auth.is_authenticated:
            self._start_if_loop_running()

    def _start_if_loop_running(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; subscriptions start on next sign-in or explicit start")
            return
        self.start_subscriptions()

    def _handle_auth_state_change(self, user_id: Optional[str]) -> None:
        if user_id is not None:
            self._start_if_loop_running()
        else:
            self.stop_subscriptions()

    def start_subscriptions(self) -> None:
        if not self._auth.is_authenticated:
            logger.warning("Cannot start subscriptions: User not authenticated")
            return
        self._trigger.start(self._update_unread_count)
        self.is_connected = True
        logger.info("Real-time subscriptions started")

    def stop_subscriptions(self) -> None:
        self._trigger.stop()
        if self._immediate_task is not None:
            self._immediate_task.cancel()
            self._immediate_task = None
        self.is_connected = False
        self._publish(0)
        logger.info("Real-time subscriptions stopped")

    def update_unread_count_immediately(self) -> asyncio.Task:
        """Recompute now instead of waiting for the next tick.

        A newer request supersedes an older one that is still running, so at
        most one out-of-band computation is ever pending.
        """
        if self._immediate_task is not None and not self._immediate_task.done():
            self._immediate_task.cancel()
        self._immediate_task = asyncio.get_running_loop().create_task(self._update_unread_count())
        return self._immediate_task

    def subscribe(self, observer: CountObserver) -> Callable[[], None]:
        """Observe count changes; the observer is called with the current value right away."""
        self._observers.append(observer)
        observer(self.unread_conversations_count)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def close(self) -> None:
        self.stop_subscriptions()
        self._remove_auth_listener()

    async def _update_unread_count(self) -> None:
        user_id = self._auth.current_user_id
        if user_id is None:
            self._publish(0)
            return

        count = await self._conversation_manager.calculate_unread_conversations_count(user_id)

        # Drop results computed for a user who has since signed out or switched
        if self._auth.current_user_id != user_id:
            return
        self._publish(count)

    def _publish(self, count: int) -> None:
        changed = count != self.unread_conversations_count
        self.unread_conversations_count = count
        if not changed:
            return
        logger.debug(f"Unread conversations count -> {count}")
        for observer in list(self._observers):
            try:
                observer(count)
            except Exception:
                logger.exception("Unread count observer failed")
