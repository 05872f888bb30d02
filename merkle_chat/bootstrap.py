"""
Session bootstrap: restore history, probe the service, assign a session id.
"""
import logging
import uuid
from typing import Optional

from merkle_chat.completion_client import CompletionClient
from merkle_chat.models import ConnectionStatus
from merkle_chat.persistence import MessageStore
from merkle_chat.session_state import SessionState

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return f"session_{uuid.uuid4().hex}"


class SessionBootstrapper:

    def __init__(
        self,
        state: SessionState,
        client: CompletionClient,
        store: Optional[MessageStore] = None,
    ):
        self.state = state
        self.client = client
        self.store = store

    async def run(self) -> str:
        """Start a session. A failed probe only degrades the connection status."""
        if self.store is not None:
            stored = await self.store.load()
            if stored and stored.messages:
                self.state.restore_messages(stored.messages)
                logger.info("Restored %d persisted messages", len(stored.messages))

        await self.recheck()

        session_id = new_session_id()
        self.state.set_session_id(session_id)
        logger.info("Session %s started (status=%s)", session_id, self.state.connection_status.value)
        return session_id

    async def recheck(self) -> bool:
        """Probe the completion service and update the connection status.

        Skipped while a drain is in flight; the drain already tracks the
        connection and only one request may be outstanding at a time.
        """
        if self.state.is_draining_queue:
            logger.info("Drain in progress; skipping health probe")
            return self.state.connection_status == ConnectionStatus.CONNECTED

        self.state.set_connection_status(ConnectionStatus.RECONNECTING)
        try:
            healthy = await self.client.health_check()
        except Exception:
            logger.exception("Health probe raised")
            healthy = False

        if healthy:
            self.state.set_connection_status(ConnectionStatus.CONNECTED)
        else:
            logger.warning("Completion service health check failed")
            self.state.set_connection_status(ConnectionStatus.DISCONNECTED)
        return healthy
