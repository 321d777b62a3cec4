from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from typing import Callable, Optional
from datetime import datetime
import asyncio
import uuid

import structlog
from pydantic import ValidationError

from nova_assistant.config import Settings, get_settings
from nova_assistant.domain.orchestration.core.dispatcher import IntentDispatcher
from nova_assistant.domain.ports import ConversationRepository
from nova_assistant.infrastructure.observability.logging import setup_logging
from .connection_manager import ConnectionManager
from .schema.events import BaseEvent, parse_client_event
from .session import AssistantSession, build_repository

logger = structlog.get_logger(__name__)

DispatcherFactory = Callable[[AssistantSession], IntentDispatcher]


def create_app(
    settings: Optional[Settings] = None,
    repository: Optional[ConversationRepository] = None,
    dispatcher_factory: Optional[DispatcherFactory] = None
) -> FastAPI:
    """Build the assistant application"""

    settings = settings or get_settings()
    repository = repository or build_repository(settings)
    connection_manager = ConnectionManager()

    app = FastAPI(title=settings.app_name)
    app.state.settings = settings
    app.state.repository = repository
    app.state.connection_manager = connection_manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        app.state.health_task = asyncio.create_task(connection_manager.health_check())
        logger.info("Assistant server started", persistence="memory" if settings.in_memory_persistence else "supabase")

    @app.on_event("shutdown")
    async def shutdown_event():
        health_task = getattr(app.state, "health_task", None)
        if health_task is not None:
            health_task.cancel()

        for session_id in list(connection_manager.active_connections.keys()):
            await connection_manager.disconnect(session_id)

        logger.info("Assistant server shutdown")

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "active_connections": len(connection_manager.active_connections),
            "timestamp": datetime.utcnow().isoformat()
        }

    @app.websocket("/ws/assistant/{session_id}")
    async def assistant_websocket(websocket: WebSocket, session_id: str):
        """One assistant session per socket"""

        try:
            uuid.UUID(session_id)
        except ValueError:
            await websocket.close(code=1008, reason="Invalid session ID format")
            return

        await connection_manager.connect(websocket, session_id)
        structlog.contextvars.bind_contextvars(session_id=session_id)

        async def send(event: BaseEvent) -> bool:
            return await connection_manager.send_event(session_id, event)

        session = AssistantSession(
            session_id,
            settings=settings,
            repository=repository,
            send=send,
            dispatcher_factory=dispatcher_factory
        )

        try:
            await session.start()

            while True:
                data = await websocket.receive_json()
                connection_manager.touch(session_id)

                try:
                    event = parse_client_event(data)
                except ValidationError as e:
                    logger.warning("Invalid client event", error=str(e))
                    await session.send_error("Invalid event", error_code="invalid_event")
                    continue

                try:
                    await session.handle_event(event)
                except Exception as e:
                    logger.error("Error processing event", event_type=event.type.value, error=str(e))
                    await session.send_error(f"Error processing event: {str(e)}")

        except WebSocketDisconnect:
            logger.info("Client disconnected", session_id=session_id)
        except Exception as e:
            logger.error("WebSocket error", error=str(e), session_id=session_id)
        finally:
            await session.close()
            await connection_manager.disconnect(session_id)
            structlog.contextvars.unbind_contextvars("session_id", "conversation_id")

    return app


def main():
    import uvicorn

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format, settings.service_name)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
