"""
HTTP surface of the chat service.

FastAPI application exposing turn submission and resumption as
server-sent event streams, conversation deletion and a health probe.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from toolchat import __version__
from toolchat.lib.config import ToolchatConfig
from toolchat.lib.errors import ChatError, UnauthorizedError, ValidationFailedError
from toolchat.models import Identity, StreamFrame
from toolchat.services.chat_orchestrator import ChatOrchestrator
from toolchat.services.interfaces import IdentityProvider
from toolchat.services.prompt_composer import RequestHints


logger = logging.getLogger(__name__)


class HeaderIdentityProvider(IdentityProvider):
    """Identity asserted by a trusted gateway through request headers."""

    def __init__(
        self,
        user_header: str = "x-user-id",
        org_header: str = "x-org-id",
        role_header: str = "x-org-role",
        type_header: str = "x-user-type"
    ):
        self.user_header = user_header
        self.org_header = org_header
        self.role_header = role_header
        self.type_header = type_header

    async def current_identity(self, request: Request) -> Optional[Identity]:
        user_id = request.headers.get(self.user_header)
        if not user_id:
            return None
        return Identity(
            user_id=user_id,
            organization_id=request.headers.get(self.org_header) or None,
            organization_role=request.headers.get(self.role_header) or None,
            user_type=request.headers.get(self.type_header) or "regular",
        )


def _last_event_id(request: Request) -> int:
    value = request.headers.get("last-event-id")
    try:
        return max(int(value), 0) if value else 0
    except ValueError:
        return 0


async def _sse_events(frames: AsyncIterator[StreamFrame]) -> AsyncIterator[dict]:
    try:
        async for frame in frames:
            yield frame.to_sse()
    finally:
        aclose = getattr(frames, "aclose", None)
        if aclose is not None:
            await aclose()


def create_app(
    orchestrator: ChatOrchestrator,
    identity_provider: IdentityProvider,
    config: ToolchatConfig
) -> FastAPI:
    """Build the FastAPI application around a composed orchestrator."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting toolchat on {config.server.host}:{config.server.port}")
        yield
        context = orchestrator.streams.current
        if context is not None:
            await context.shutdown()
        logger.info("toolchat shutdown complete")

    app = FastAPI(
        title="toolchat",
        version=__version__,
        description="Tool-augmented chat turn orchestration",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.identity_provider = identity_provider
    app.state.config = config

    if config.server.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.server.cors_origins or ["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        return JSONResponse(exc.to_response(), status_code=exc.status_code)

    @app.post("/api/chat", response_model=None)
    async def submit_turn(request: Request) -> EventSourceResponse:
        """Submit a turn and stream the response."""
        identity = await identity_provider.current_identity(request)
        if identity is None:
            raise UnauthorizedError()

        try:
            body: Any = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationFailedError("Request body is not valid JSON.")

        hints = RequestHints.from_headers(request.headers, config.chat)
        prepared = await orchestrator.prepare_turn(body, identity, hints)

        return EventSourceResponse(
            _sse_events(orchestrator.open_stream(prepared)),
            media_type="text/event-stream",
            headers={"x-stream-id": prepared.stream_id},
        )

    @app.get("/api/streams/{stream_id}", response_model=None)
    async def resume_stream(stream_id: str, request: Request) -> EventSourceResponse:
        """Resume a stream by its session id."""
        identity = await identity_provider.current_identity(request)
        frames = await orchestrator.resume_stream(stream_id, identity, _last_event_id(request))
        return EventSourceResponse(_sse_events(frames), media_type="text/event-stream")

    @app.get("/api/chat/{chat_id}/stream", response_model=None)
    async def resume_latest(chat_id: str, request: Request) -> EventSourceResponse:
        """Resume the newest stream of a conversation."""
        identity = await identity_provider.current_identity(request)
        frames = await orchestrator.resume_latest(chat_id, identity, _last_event_id(request))
        return EventSourceResponse(_sse_events(frames), media_type="text/event-stream")

    @app.delete("/api/chat")
    async def delete_conversation(request: Request, id: Optional[str] = Query(None)) -> JSONResponse:
        """Delete a conversation owned by the caller."""
        identity = await identity_provider.current_identity(request)
        if identity is None:
            raise UnauthorizedError()
        if not id:
            raise ValidationFailedError("Missing conversation id.")

        deleted = await orchestrator.delete_conversation(id, identity)
        return JSONResponse(deleted.model_dump(mode="json"))

    @app.get("/api/health")
    async def health() -> JSONResponse:
        return JSONResponse({
            "status": "healthy",
            "version": __version__,
            "resumable_streams": orchestrator.streams.available,
        })

    return app
