import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from .agent import (
    ConversationOrchestrator,
    ErrorClassifier,
    OpenAICompletionClient,
    PromptAssembler,
    ToolDispatcher,
    build_portfolio_registry,
)
from .logging_config import setup_logging
from .services.conversation_repository import ConversationHistory, build_conversation_repository
from .services.portfolio_store import PortfolioStore
from .settings import Settings, get_settings

LOGGER = logging.getLogger("portfolio_agent.server")


class ChatRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    session_id: str = "default"
    message: str = Field(min_length=1)


class ChatResponse(BaseModel):
    response: str
    session_id: str


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


@dataclass
class Services:
    """Process-wide collaborators owned by the application lifespan."""

    history: ConversationHistory
    client: OpenAICompletionClient
    orchestrator: ConversationOrchestrator

    async def close(self) -> None:
        try:
            await self.history.shutdown()
        finally:
            await self.client.close()


async def build_services(settings: Settings) -> Services:
    """Construct and start every collaborator the orchestrator needs."""
    history = build_conversation_repository(settings)
    await history.init()

    store = PortfolioStore(settings.portfolio_db_path)
    store.init_schema()
    registry = build_portfolio_registry(store)
    LOGGER.info("Registered tools: %s", ", ".join(registry.names()))

    client = OpenAICompletionClient.from_settings(settings)
    orchestrator = ConversationOrchestrator(
        client=client,
        assembler=PromptAssembler(
            history,
            system_prompt=settings.agent_system_prompt,
            max_messages=settings.max_history_messages,
        ),
        dispatcher=ToolDispatcher(registry, timeout_seconds=settings.tool_timeout_seconds),
        registry=registry,
        history=history,
        classifier=ErrorClassifier(),
        max_tool_rounds=settings.max_tool_rounds,
        model_timeout_seconds=settings.model_timeout_seconds,
    )
    return Services(history=history, client=client, orchestrator=orchestrator)


def create_app(
    settings: Settings | None = None,
    orchestrator: ConversationOrchestrator | None = None,
) -> FastAPI:
    """Build the FastAPI app. Passing an orchestrator skips building the default services."""
    settings = settings or get_settings()
    setup_logging("portfolio_agent", settings.log_level, settings.log_file)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the conversation store and model client; stop them on shutdown."""
        if orchestrator is not None:
            app.state.orchestrator = orchestrator
            yield
            return

        LOGGER.info("Starting services...")
        services = await build_services(settings)
        app.state.orchestrator = services.orchestrator
        try:
            yield
        finally:
            LOGGER.info("Shutting down...")
            await services.close()

    app = FastAPI(
        title="Portfolio Agent",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins_list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check for load balancers and monitoring.

        Returns:
            dict[str, Any]: JSON response with status field.
        """
        return {"status": "ok"}

    @app.post("/api/chat", response_model=ChatResponse)
    async def chat(body: ChatRequest, request: Request) -> ChatResponse:
        """Blocking chat turn. Always answers with a sentence, even on model failure."""
        result = await request.app.state.orchestrator.chat(body.message, body.session_id)
        return ChatResponse(response=result.response, session_id=result.session_id)

    @app.websocket("/ws/chat")
    async def chat_ws(websocket: WebSocket) -> None:
        """WebSocket chat endpoint: client sends { session_id, message }, server streams tokens then done.

        Expected Input (JSON), one per turn:
            {
                "session_id": str - unique session identifier,
                "message": str - user query text
            }

        Response Format:
            - {"type": "token", "data": str} - answer fragments, in order
            - {"type": "done", "session_id": str} - end of the turn
            - {"type": "error", "data": str} - the request itself was invalid
        """
        await websocket.accept()
        orchestrator_: ConversationOrchestrator = websocket.app.state.orchestrator
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError as e:
                    LOGGER.error("Invalid WS payload (not JSON): %s", e)
                    await websocket.send_json({"type": "error", "data": "Invalid JSON payload"})
                    continue
                if not isinstance(payload, dict):
                    await websocket.send_json({"type": "error", "data": "Invalid message format"})
                    continue

                session_id = str(payload.get("session_id") or "default")
                message = str(payload.get("message") or "").strip()
                if not message:
                    await websocket.send_json({"type": "error", "data": "Empty message"})
                    continue

                LOGGER.info("WS chat start session_id=%s", session_id)
                async with orchestrator_.chat_stream(message, session_id) as stream:
                    async for fragment in stream:
                        await websocket.send_json({"type": "token", "data": fragment})
                await websocket.send_json({"type": "done", "session_id": session_id})

        except WebSocketDisconnect:
            LOGGER.info("WS disconnect")
        except (ConnectionError, RuntimeError) as e:
            LOGGER.exception("Unexpected WS error: %s", e)
            try:
                await websocket.close()
            except (OSError, RuntimeError):
                pass

    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run(
        "portfolio_agent.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
