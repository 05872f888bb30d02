"""
Queue dispatcher: the single consumer of a session's outbound queue.

submit() appends the user message and enqueues it synchronously. If no
drain loop owns the queue a new one is started as a background task; the
loop sends one item at a time and records each outcome on the session
state before moving on. A failed item is reported, never re-queued.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from merkle_chat.completion_client import CompletionClient
from merkle_chat.errors import CompletionError, EmptyQueue, ErrorCategory
from merkle_chat.models import ConnectionStatus, Message, PendingItem
from merkle_chat.session_state import SessionState

logger = logging.getLogger(__name__)


class QueueDispatcher:

    def __init__(
        self,
        state: SessionState,
        client: CompletionClient,
        spacing_ms: int = 500,
        history_limit: int = 10,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.state = state
        self.client = client
        self.spacing_ms = spacing_ms
        self.history_limit = history_limit
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    def submit(self, text: str) -> Message:
        """Record a user message and queue it for sending.

        Must be called from inside the running event loop.
        """
        text = text.strip()
        if not text:
            raise ValueError("Message text must not be empty")
        message = self.state.append_user_message(text)
        self.enqueue(text, message_id=message.id)
        return message

    def enqueue(self, text: str, message_id: Optional[str] = None) -> PendingItem:
        item = self.state.enqueue(text, message_id=message_id)
        if self.state.begin_drain():
            self._task = asyncio.create_task(self._drain(), name="queue-drain")
        return item

    async def wait_idle(self) -> None:
        """Wait until the current drain loop (if any) has finished."""
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)

    def clear_queue(self) -> int:
        dropped = self.state.clear_queue()
        if dropped:
            logger.info("Dropped %d queued messages", dropped)
        return dropped

    async def close(self) -> None:
        """Cancel a running drain loop; used on shutdown."""
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _drain(self) -> None:
        logger.debug("Drain started: queue=%d", len(self.state.queue))
        try:
            while True:
                try:
                    item = self.state.dequeue_front()
                except EmptyQueue:
                    break

                await self._dispatch(item)

                if self.state.queue and self.spacing_ms > 0:
                    await self._sleep(self.spacing_ms / 1000)
        finally:
            self.state.end_drain()
            logger.debug("Drain stopped")

    async def _dispatch(self, item: PendingItem) -> None:
        self.state.begin_dispatch()
        history = self.state.history_before(item.message_id, self.history_limit)

        try:
            reply = await self.client.send(item.text, history, on_retry=self._on_retry)
        except CompletionError as e:
            logger.warning("Dispatch failed: category=%s", e.category.value)
            # a retry left the status at reconnecting; a final failure ends it
            if e.retryable or self.state.connection_status == ConnectionStatus.RECONNECTING:
                self.state.set_connection_status(ConnectionStatus.DISCONNECTED)
            self.state.fail_dispatch(e.category, e.message)
            return
        except asyncio.CancelledError:
            self.state.fail_dispatch(ErrorCategory.REQUEST_ERROR, "Request cancelled.")
            raise
        except Exception:
            logger.exception("Unexpected error while dispatching message")
            if self.state.connection_status == ConnectionStatus.RECONNECTING:
                self.state.set_connection_status(ConnectionStatus.DISCONNECTED)
            self.state.fail_dispatch(
                ErrorCategory.REQUEST_ERROR, "Unexpected error while sending the message."
            )
            return

        if self.state.connection_status != ConnectionStatus.CONNECTED:
            self.state.set_connection_status(ConnectionStatus.CONNECTED)
        self.state.complete_dispatch(reply)

    def _on_retry(self, attempt: int, error: CompletionError, delay: float) -> None:
        self.state.set_connection_status(ConnectionStatus.RECONNECTING)
        self.state.increment_retry_count()
