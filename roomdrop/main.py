from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional
import uuid
import json
import logging

from .config import Settings
from .dispatch import Hub
from .errors import InvalidMessageError
from .websocket_manager import ConnectionManager

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the service around a fresh Hub; state lives as long as the app."""
    settings = settings or Settings.from_env()
    hub = Hub(settings)
    manager = ConnectionManager(hub)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"🚀 Roomdrop starting (direct limit {settings.max_direct_size} bytes)")
        yield
        await manager.shutdown()
        logger.info("🛑 Roomdrop stopped, in-flight transfers abandoned")

    app = FastAPI(title="Roomdrop", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.hub = hub
    app.state.manager = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.post("/api/rooms")
    async def create_room():
        """Hand out a fresh room identifier; the room exists once someone joins"""
        return {"room_id": str(uuid.uuid4())}

    @app.get("/api/rooms/{room_id}/users")
    async def get_room_users(room_id: str):
        """Get users in a specific room"""
        users = [
            {"connection_id": p.connection_id, "peer_address": p.peer_address}
            for p in hub.directory.members_of(room_id)
        ]
        return {"room_id": room_id, "users": users}

    @app.get("/api/transfers/{session_id}")
    async def get_transfer(session_id: str):
        session = hub.transfers.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Unknown session {session_id}")
        return session.public_view()

    @app.get("/api/debug")
    async def debug_info():
        """Get server debug information"""
        return hub.get_debug_info()

    @app.get("/api/debug/rooms")
    async def debug_rooms():
        return {"rooms": hub.directory.get_debug_info()}

    @app.websocket("/ws/{room_id}")
    async def websocket_endpoint(websocket: WebSocket, room_id: str):
        """WebSocket endpoint for signaling and transfers"""
        connection_id = str(uuid.uuid4())
        await manager.connect(websocket, connection_id)

        try:
            while True:
                data = await websocket.receive_text()
                try:
                    frame = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning(f"⚠️ Non-JSON frame from {connection_id}")
                    hub.relay.send_to(connection_id, InvalidMessageError("frame is not valid JSON").to_frame())
                    continue

                if isinstance(frame, dict) and frame.get("type") == "join-room":
                    frame.setdefault("room_id", room_id)
                hub.dispatch(connection_id, frame)

        except WebSocketDisconnect:
            logger.info(f"🔌 WebSocket disconnected: {connection_id}")
        except Exception as e:
            logger.exception(f"❌ WebSocket error for {connection_id}: {e}")
        finally:
            await manager.disconnect(connection_id)

    return app


def run():
    import uvicorn

    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        ws_max_size=settings.max_message_size,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
