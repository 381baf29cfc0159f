"""
Ops Assistant Orchestrator Service - Main FastAPI Application.

Provides API endpoints for:
- Service health, tool catalog, host index and cache statistics
- Answering a chat message through the agentic loop
"""

from pathlib import Path

from dotenv import load_dotenv

# Load environment variables before settings are built
for _env_path in (Path(__file__).parent.parent.parent / ".env", Path.cwd() / ".env"):
    if _env_path.exists():
        load_dotenv(_env_path, override=False)

import base64
import binascii
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from prometheus_client import Counter, Histogram, generate_latest

from adapters.llm.base import ResponsesAdapter
from adapters.llm.openai import OpenAIResponsesAdapter
from mcp_gateway.service.config import GatewaySettings, load_provider_configs
from mcp_gateway.service.registry import ToolRegistry

from .agent_loop import ConversationOrchestrator, ThreadResponseCache
from .config import OrchestratorConfig, config
from .function_calls import FunctionCallProcessor
from .middleware import ResultCache, ToolMiddleware
from .models import ChatRequest, ChatResponse, ErrorResponse, HealthCheckResponse
from .platform import BufferedChatPlatform
from .tools import build_tools_array

logging.basicConfig(
    level=getattr(logging, config.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"

# Metrics
chat_messages_handled = Counter(
    "ops_assistant_chat_messages_total", "Total number of chat messages handled", ["status"]
)
chat_turns = Counter("ops_assistant_turns_total", "Total number of model turns streamed")
chat_duration = Histogram("ops_assistant_chat_duration_seconds", "Chat message handling duration")


@dataclass
class ServiceComponents:
    """Long-lived collaborators shared by every request."""

    adapter: ResponsesAdapter
    registry: ToolRegistry
    cache: ResultCache
    orchestrator: ConversationOrchestrator


async def build_components(
    settings: Optional[OrchestratorConfig] = None,
    gateway_settings: Optional[GatewaySettings] = None,
) -> ServiceComponents:
    """Build and initialize the adapter, registry, middleware and orchestrator."""
    settings = settings or config
    gateway_settings = gateway_settings or GatewaySettings()

    adapter = OpenAIResponsesAdapter(
        model=settings.model,
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
    )
    registry = ToolRegistry(load_provider_configs(gateway_settings), settings=gateway_settings)
    await registry.initialize()

    cache = ResultCache()
    processor = FunctionCallProcessor(registry, ToolMiddleware(cache))
    orchestrator = ConversationOrchestrator(adapter, registry, processor, settings, ThreadResponseCache())
    return ServiceComponents(adapter=adapter, registry=registry, cache=cache, orchestrator=orchestrator)


ComponentsFactory = Callable[[], Awaitable[ServiceComponents]]


def create_app(components_factory: Optional[ComponentsFactory] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        components_factory: Builds the service components at startup
            (``build_components`` by default)
    """
    factory = components_factory or build_components
    started_at = time.time()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Starting Ops Assistant orchestrator service...")
        logger.info(f"Configuration: model={config.model}, reasoning={config.reasoning_effort}")

        components = await factory()
        app.state.components = components
        logger.info(
            f"Orchestrator service started with {components.registry.provider_count} provider(s) "
            f"and {components.registry.host_count} host(s)"
        )
        yield

        logger.info("Shutting down orchestrator service...")
        await components.registry.close()
        await components.adapter.aclose()
        logger.info("Orchestrator service shutdown complete")

    app = FastAPI(
        title="Ops Assistant Orchestrator",
        description="Conversational assistant over MCP monitoring servers",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )

    def components(request: Request) -> ServiceComponents:
        return request.app.state.components

    # ========================================================================
    # Exception Handlers
    # ========================================================================

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        """Handle HTTP exceptions."""
        logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(error="HTTPException", message=exc.detail or "An error occurred").model_dump(),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle all other exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="InternalServerError",
                message="An internal server error occurred",
            ).model_dump(),
        )

    # ========================================================================
    # API Endpoints
    # ========================================================================

    @app.get("/", response_model=Dict[str, str])
    async def root() -> Dict[str, str]:
        """Root endpoint with service information."""
        return {
            "service": "Ops Assistant Orchestrator",
            "version": SERVICE_VERSION,
            "status": "running",
            "docs": "/docs",
        }

    @app.get("/health", response_model=HealthCheckResponse)
    async def health_check(request: Request) -> HealthCheckResponse:
        """Service status; degraded when no tool provider is connected."""
        registry = components(request).registry
        return HealthCheckResponse(
            status="healthy" if registry.provider_count > 0 else "degraded",
            version=SERVICE_VERSION,
            providers=registry.provider_count,
            hosts=registry.host_count,
            uptime_seconds=time.time() - started_at,
        )

    @app.get("/tools", response_model=List[Dict[str, Any]])
    async def list_tools(request: Request) -> List[Dict[str, Any]]:
        """Tool catalog advertised to the model."""
        return build_tools_array(components(request).registry, config)

    @app.get("/hosts", response_model=Dict[str, Any])
    async def list_hosts(request: Request) -> Dict[str, Any]:
        """Aggregated host index (the ListHosts view)."""
        return {"ok": True, "hosts": components(request).registry.get_aggregated_hosts()}

    @app.get("/cache/stats", response_model=Dict[str, Any])
    async def cache_stats(request: Request) -> Dict[str, Any]:
        """Tool-result cache statistics."""
        return components(request).cache.stats()

    @app.post("/chat", response_model=ChatResponse)
    async def chat(body: ChatRequest, request: Request) -> ChatResponse:
        """
        Answer a chat message.

        The thread history is supplied in the body; everything the assistant
        posts is recorded and returned.
        """
        try:
            attachment_data = {key: base64.b64decode(value) for key, value in body.attachment_data.items()}
        except (binascii.Error, ValueError) as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid attachment data: {e}")

        platform = BufferedChatPlatform(history=body.history, attachment_data=attachment_data)
        with chat_duration.time():
            state = await components(request).orchestrator.handle_message(body.message, platform)
        chat_messages_handled.labels(status="answered" if state.final_response_id else "failed").inc()
        chat_turns.inc(state.iteration)

        return ChatResponse(
            response_id=state.final_response_id,
            iterations=state.iteration,
            **platform.transcript(),
        )

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type="text/plain")

    return app


app = create_app()


def main() -> None:
    """Main entry point for running the service."""
    import uvicorn

    logger.info("Starting orchestrator service with uvicorn...")

    uvicorn.run(
        "orchestrator.service.main:app",
        host=config.host,
        port=config.port,
        reload=config.reload,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
