# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""FastAPI application entry point for the Wendao game service.

The service hosts one game session. On startup the saved game (if any) is
restored from ``SAVE_DIR``; every completed turn is written back, so a
restart resumes where the player left off.
"""

from contextlib import asynccontextmanager
from typing import Callable, Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from httpx import AsyncClient
import logging

from wendao.api.routes import get_llm_client, get_turn_orchestrator, router
from wendao.config import Settings, get_settings
from wendao.logging import configure_logging
from wendao.metrics import init_metrics_collector, disable_metrics_collector
from wendao.middleware import RequestCorrelationMiddleware
from wendao.models import LLMSettings
from wendao.prompting.prompt_builder import PromptBuilder
from wendao.services.llm_client import LLMClient
from wendao.services.memory_compactor import MemoryCompactor
from wendao.services.response_parser import ResponseParser
from wendao.services.save_store import SaveStore
from wendao.services.turn_orchestrator import TurnOrchestrator

logger = logging.getLogger(__name__)


def build_orchestrator(
    settings: Settings,
    http_client: Optional[AsyncClient] = None
) -> TurnOrchestrator:
    """Wire the completion client, parser, compactor and save store together.

    The returned orchestrator has not restored the saved game yet; call
    ``restore()`` once it should take over the session on disk.

    Args:
        settings: Loaded service settings
        http_client: Shared HTTP client; the LLM client creates and owns one
            when omitted
    """
    llm_client = LLMClient(
        settings=LLMSettings(
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
            model=settings.llm_model
        ),
        timeout=settings.llm_timeout,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        stub_mode=settings.llm_stub_mode,
        max_retries=settings.llm_max_retries,
        http_client=http_client
    )
    prompt_builder = PromptBuilder()
    parser = ResponseParser()
    compactor = MemoryCompactor(
        llm_client=llm_client,
        prompt_builder=prompt_builder,
        parser=parser,
        threshold=settings.compaction_threshold,
        safety_buffer=settings.compaction_safety_buffer
    )
    return TurnOrchestrator(
        llm_client=llm_client,
        save_store=SaveStore(settings.save_dir),
        prompt_builder=prompt_builder,
        parser=parser,
        compactor=compactor,
        recent_window=settings.recent_history_window
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load settings, build the game services and restore the saved game.

    The shared HTTP client is closed on shutdown. The game itself needs no
    shutdown step because every completed turn is already on disk.
    """
    logger.info("Starting Wendao service...")

    try:
        settings = get_settings()
    except ValueError as e:
        logger.error(f"Configuration validation failed: {e}")
        raise

    configure_logging(
        level=settings.log_level,
        json_format=settings.log_json_format,
        service_name=settings.service_name
    )
    if settings.enable_metrics:
        init_metrics_collector()
    else:
        disable_metrics_collector()
    logger.info(
        f"Configuration loaded (model={settings.llm_model}, base_url={settings.llm_base_url}, "
        f"stub_mode={settings.llm_stub_mode}, save_dir={settings.save_dir}, "
        f"metrics={settings.enable_metrics})"
    )

    app.state.http_client = AsyncClient(timeout=settings.llm_timeout)
    orchestrator = build_orchestrator(settings, app.state.http_client)
    app.state.llm_client = orchestrator.llm_client
    app.state.turn_orchestrator = orchestrator

    orchestrator.restore()
    logger.info(
        f"Game session ready (history_length={len(orchestrator.session.turn_log)}, "
        f"compaction_threshold={settings.compaction_threshold}, "
        f"safety_buffer={settings.compaction_safety_buffer})"
    )

    yield

    logger.info("Shutting down Wendao service...")
    await app.state.http_client.aclose()


app = FastAPI(
    title="Wendao API",
    description=(
        "LLM-driven cultivation text adventure. Builds prompts from the "
        "character sheet and turn log, reconciles model replies into game "
        "state and keeps long games within context through rolling summaries."
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# The browser client is served from a different origin during development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestCorrelationMiddleware)
app.include_router(router, tags=["game"])


def _from_app_state(attribute: str) -> Callable:
    """Dependency returning a service the lifespan stored on ``app.state``."""
    def dependency():
        service = getattr(app.state, attribute, None)
        if service is None:
            raise RuntimeError(
                f"{attribute} not initialized. Ensure the application lifespan has started."
            )
        return service
    return dependency


app.dependency_overrides[get_llm_client] = _from_app_state('llm_client')
app.dependency_overrides[get_turn_orchestrator] = _from_app_state('turn_orchestrator')


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "wendao.main:app",
        host="0.0.0.0",
        port=8080,
        reload=True,
        log_level=settings.log_level.lower()
    )
