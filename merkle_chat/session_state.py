"""
Session state: the single mutable aggregate for one chat session.

Every public method is a complete transition. Methods are synchronous and
the whole service runs on one event loop, so no caller can observe a
half-applied update. Observers registered with subscribe() receive an
immutable SessionSnapshot after each transition.
"""
import logging
from collections import deque
from typing import Callable, Deque, Iterable, List, Optional, Union

from merkle_chat.errors import DEFAULT_MESSAGES, EmptyQueue, ErrorCategory
from merkle_chat.models import (
    ConnectionStatus,
    Message,
    PendingItem,
    Sender,
    SessionSnapshot,
)

logger = logging.getLogger(__name__)

Listener = Callable[[SessionSnapshot], None]


class SessionState:

    def __init__(self, session_id: Optional[str] = None):
        self.messages: List[Message] = []
        self.queue: Deque[PendingItem] = deque()
        self.is_loading = False
        self.is_typing = False
        self.is_draining_queue = False
        self.connection_status = ConnectionStatus.CONNECTED
        self.retry_count = 0
        self.last_error: Optional[str] = None
        self.last_error_category: Optional[ErrorCategory] = None
        self.session_id = session_id
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener and return a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            messages=list(self.messages),
            queue_length=len(self.queue),
            is_loading=self.is_loading,
            is_typing=self.is_typing,
            is_draining_queue=self.is_draining_queue,
            connection_status=self.connection_status,
            retry_count=self.retry_count,
            last_error=self.last_error,
            last_error_category=self.last_error_category,
        )

    def _notify(self) -> None:
        if not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception:
                logger.exception("Session listener failed")

    # ------------------------------------------------------------------
    # Messages and queue
    # ------------------------------------------------------------------

    def append_user_message(self, text: str) -> Message:
        message = Message(text=text, sender=Sender.USER)
        self.messages.append(message)
        self.last_error = None
        self.last_error_category = None
        self._notify()
        return message

    def enqueue(self, text: str, message_id: Optional[str] = None) -> PendingItem:
        item = PendingItem(text=text, message_id=message_id)
        self.queue.append(item)
        self._notify()
        return item

    def dequeue_front(self) -> PendingItem:
        if not self.queue:
            raise EmptyQueue()
        item = self.queue.popleft()
        self._notify()
        return item

    def clear_queue(self) -> int:
        dropped = len(self.queue)
        self.queue.clear()
        self._notify()
        return dropped

    def history_before(self, message_id: Optional[str], limit: int) -> List[Message]:
        """Last `limit` non-provisional messages preceding `message_id`.

        With no id (or an id no longer present) the whole history is used.
        """
        candidates: Iterable[Message] = self.messages
        if message_id is not None:
            for index, message in enumerate(self.messages):
                if message.id == message_id:
                    candidates = self.messages[:index]
                    break
        settled = [m for m in candidates if not m.is_provisional]
        if limit <= 0:
            return []
        return settled[-limit:]

    def restore_messages(self, messages: Iterable[Message]) -> None:
        """Seed the history from a persisted snapshot."""
        self.messages = list(messages)
        self._notify()

    def clear_messages(self) -> None:
        self.messages = []
        self.last_error = None
        self.last_error_category = None
        self.is_loading = False
        self.is_typing = False
        self._notify()

    # ------------------------------------------------------------------
    # Dispatch lifecycle
    # ------------------------------------------------------------------

    def begin_drain(self) -> bool:
        """Claim the queue for a drain loop. False if one already owns it."""
        if self.is_draining_queue:
            return False
        self.is_draining_queue = True
        self._notify()
        return True

    def end_drain(self) -> None:
        self.is_draining_queue = False
        self._notify()

    def begin_dispatch(self) -> None:
        self.is_loading = True
        self.is_typing = True
        self.last_error = None
        self.last_error_category = None
        self._notify()

    def complete_dispatch(self, response: Union[Message, str]) -> Message:
        if isinstance(response, Message):
            message = response
        else:
            message = Message(text=response, sender=Sender.ASSISTANT)
        self.messages.append(message)
        self.is_loading = False
        self.is_typing = False
        self._notify()
        return message

    def fail_dispatch(self, category: ErrorCategory, message: Optional[str] = None) -> None:
        self.last_error = message or DEFAULT_MESSAGES[category]
        self.last_error_category = category
        self.is_loading = False
        self.is_typing = False
        self._notify()

    def clear_error(self) -> None:
        self.last_error = None
        self.last_error_category = None
        self._notify()

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def set_connection_status(self, status: ConnectionStatus) -> None:
        self.connection_status = status
        if status == ConnectionStatus.CONNECTED:
            self.retry_count = 0
        self._notify()

    def increment_retry_count(self) -> None:
        self.retry_count += 1
        self._notify()

    def set_session_id(self, session_id: str) -> None:
        self.session_id = session_id
        self._notify()
