"""
FastAPI app factory.

Responsibilities:
- Create and configure the FastAPI app
- Set up middleware
- Own the ChatCore lifecycle (schema, crash recovery, shutdown)
- Register routes
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from echo_chat.adapters.llm.registry import ProviderRegistry
from echo_chat.config import AppConfig
from echo_chat.core import build_core
from echo_chat.observability import logger
from echo_chat.server.routes import register_routes
from echo_chat.services.secret_store import SecretStore
from echo_chat.storage.conversation_store import ConversationStore


def create_app(
    config: AppConfig | None = None,
    *,
    store: ConversationStore | None = None,
    secrets: SecretStore | None = None,
    registry: ProviderRegistry | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    App factory pattern: tests pass their own config and collaborators;
    the ASGI entry point builds everything from the environment.
    """
    config = config or AppConfig.load_from_env()

    logger.set_enabled(config.enable_json_logs)
    logging.basicConfig(level=config.log_level.upper())

    core = build_core(config, store=store, secrets=secrets, registry=registry)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await core.start()
        try:
            yield
        finally:
            await core.aclose()

    app = FastAPI(title="Echo Chat API", lifespan=lifespan)

    app.state.config = config
    app.state.core = core

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    register_routes(app)

    return app
