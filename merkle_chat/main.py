"""
FastAPI application exposing the chat dispatch pipeline.
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from merkle_chat.bootstrap import SessionBootstrapper
from merkle_chat.completion_client import CompletionClient
from merkle_chat.config import Settings, settings as default_settings
from merkle_chat.dispatcher import QueueDispatcher
from merkle_chat.models import SessionSnapshot, SubmitRequest, SubmitResponse
from merkle_chat.persistence import MessageStore, SnapshotWriter
from merkle_chat.session_state import SessionState

logger = logging.getLogger(__name__)

SERVICE_NAME = "merkle-chat-service"
VERSION = "2.0.0"


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the session components once and share them by reference."""
        store = MessageStore(settings.database_path)
        await store.init()

        state = SessionState()
        writer = SnapshotWriter(store, state.snapshot)

        async with CompletionClient(settings) as client:
            dispatcher = QueueDispatcher(
                state,
                client,
                spacing_ms=settings.drain_spacing_ms,
                history_limit=settings.history_limit,
            )
            bootstrapper = SessionBootstrapper(state, client, store)
            await bootstrapper.run()
            unsubscribe = state.subscribe(writer)

            app.state.settings = settings
            app.state.session = state
            app.state.store = store
            app.state.dispatcher = dispatcher
            app.state.bootstrapper = bootstrapper
            app.state.writer = writer
            try:
                yield
            finally:
                unsubscribe()
                await dispatcher.close()
                await writer.flush()

    app = FastAPI(
        title="Merkle Chat Service",
        version=VERSION,
        lifespan=lifespan
    )

    @app.get("/api/session", response_model=SessionSnapshot)
    async def get_session(request: Request):
        """Current session snapshot."""
        return request.app.state.session.snapshot()

    @app.post("/api/messages", response_model=SubmitResponse, status_code=202)
    async def submit_message(request: Request, body: SubmitRequest):
        """Queue a user message for sending."""
        dispatcher: QueueDispatcher = request.app.state.dispatcher
        try:
            message = dispatcher.submit(body.content)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return SubmitResponse(
            message=message,
            queue_length=len(request.app.state.session.queue),
        )

    @app.delete("/api/messages")
    async def clear_messages(request: Request):
        """Clear the history, pending queue and stored snapshot."""
        request.app.state.dispatcher.clear_queue()
        request.app.state.session.clear_messages()
        await request.app.state.writer.flush()
        await request.app.state.store.clear()
        return {"status": "cleared"}

    @app.post("/api/session/clear-error", response_model=SessionSnapshot)
    async def clear_error(request: Request):
        request.app.state.session.clear_error()
        return request.app.state.session.snapshot()

    @app.post("/api/session/health", response_model=SessionSnapshot)
    async def recheck_health(request: Request):
        """Probe the completion service again and update the connection status."""
        await request.app.state.bootstrapper.recheck()
        return request.app.state.session.snapshot()

    @app.get("/api/export")
    async def export_messages(request: Request):
        await request.app.state.writer.flush()
        exported = await request.app.state.store.export_json()
        if exported is None:
            raise HTTPException(status_code=404, detail="No stored messages")
        return JSONResponse(content=json.loads(exported))

    @app.post("/api/import")
    async def import_messages(request: Request):
        raw = (await request.body()).decode("utf-8")
        if not await request.app.state.store.import_json(raw):
            raise HTTPException(status_code=400, detail="Invalid chat export")
        return {"status": "imported"}

    @app.websocket("/ws/chat")
    async def websocket_chat(websocket: WebSocket):
        """Push session snapshots and accept user messages."""
        await websocket.accept()
        state: SessionState = websocket.app.state.session
        dispatcher: QueueDispatcher = websocket.app.state.dispatcher

        outbox: asyncio.Queue[dict] = asyncio.Queue()
        unsubscribe = state.subscribe(lambda snapshot: outbox.put_nowait(_state_frame(snapshot)))
        sender = asyncio.create_task(_forward_frames(websocket, outbox))
        outbox.put_nowait(_state_frame(state.snapshot()))

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    outbox.put_nowait({"type": "error", "content": "Frame is not valid JSON"})
                    continue
                if not isinstance(data, dict):
                    outbox.put_nowait({"type": "error", "content": "Frame must be a JSON object"})
                    continue
                if data.get("type") != "user_message":
                    continue

                content = data.get("content", "")
                if not isinstance(content, str):
                    outbox.put_nowait({"type": "error", "content": "Message content must be a string"})
                    continue
                try:
                    dispatcher.submit(content)
                except ValueError as e:
                    outbox.put_nowait({"type": "error", "content": str(e)})
        except WebSocketDisconnect:
            logger.info("WebSocket disconnected")
        finally:
            unsubscribe()
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("WebSocket sender failed")

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": VERSION,
            "connection_status": request.app.state.session.connection_status.value,
            "offline_mode": request.app.state.settings.offline_mode,
        }

    return app


def _state_frame(snapshot: SessionSnapshot) -> dict:
    return {"type": "state", **snapshot.model_dump(mode="json")}


async def _forward_frames(websocket: WebSocket, outbox: "asyncio.Queue[dict]"):
    while True:
        frame = await outbox.get()
        await websocket.send_json(frame)


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
