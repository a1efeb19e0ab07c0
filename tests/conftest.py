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
"""Shared test fixtures for the Wendao service.

This module provides pytest fixtures for testing the Wendao service:
- test_env: Test environment variables
- llm_client: LLMClient with a mocked ``complete`` coroutine
- save_store: SaveStore writing to a temporary directory
- orchestrator: TurnOrchestrator wired to the mocked LLM client
- client: FastAPI TestClient with the LLM client in stub mode

Usage:
    Run tests with pytest:
        pytest tests/
        pytest tests/test_turn_orchestrator.py -v

    Script model replies in individual tests:
        def test_custom(orchestrator, llm_client):
            llm_client.complete.return_value = turn_reply("...")
"""

import asyncio
import json
import os
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from wendao.models import LLMSettings
from wendao.prompting.prompt_builder import PromptBuilder
from wendao.services.llm_client import LLMClient
from wendao.services.memory_compactor import MemoryCompactor
from wendao.services.response_parser import ResponseParser
from wendao.services.save_store import SaveStore
from wendao.services.turn_orchestrator import TurnOrchestrator


def turn_reply(
    narrative: str = "你盘膝而坐，灵气入体。",
    character_update: dict = None,
    choices: list = None,
    game_over: bool = False,
    event_art_keyword: str = "meditation"
) -> str:
    """Render a well-formed JSON turn reply as the model would send it."""
    return json.dumps({
        "narrative": narrative,
        "characterUpdate": character_update or {},
        "choices": choices if choices is not None else ["继续修炼", "外出历练"],
        "gameOver": game_over,
        "eventArtKeyword": event_art_keyword
    }, ensure_ascii=False)


@pytest.fixture
def test_env(tmp_path):
    """Fixture providing test environment variables.

    Returns a dictionary of environment variables configured for testing:
    - LLM_API_KEY: Test API key (not used in stub mode)
    - LLM_STUB_MODE: Enabled to avoid real API calls
    - SAVE_DIR: Per-test temporary directory
    """
    return {
        "LLM_BASE_URL": "https://api.example.com/v1",
        "LLM_API_KEY": "sk-test-key-12345",
        "LLM_MODEL": "test-model",
        "LLM_STUB_MODE": "true",
        "LLM_TIMEOUT": "60",
        "SAVE_DIR": str(tmp_path / "saves"),
        "SERVICE_NAME": "wendao-test",
        "LOG_LEVEL": "INFO",
        "ENABLE_METRICS": "false"
    }


@pytest.fixture
def llm_settings():
    return LLMSettings(
        base_url="https://api.example.com/v1",
        api_key="sk-test-key-12345",
        model="test-model"
    )


@pytest.fixture
def llm_client(llm_settings):
    """LLMClient whose ``complete`` is an AsyncMock returning a valid turn."""
    client = LLMClient(settings=llm_settings, timeout=5)
    client.complete = AsyncMock(return_value=turn_reply())
    yield client
    asyncio.run(client.aclose())


@pytest.fixture
def save_store(tmp_path):
    return SaveStore(str(tmp_path / "saves"))


@pytest.fixture
def prompt_builder():
    return PromptBuilder()


@pytest.fixture
def parser():
    return ResponseParser()


@pytest.fixture
def compactor(llm_client, prompt_builder, parser):
    return MemoryCompactor(
        llm_client=llm_client,
        prompt_builder=prompt_builder,
        parser=parser,
        threshold=20,
        safety_buffer=5
    )


@pytest.fixture
def orchestrator(llm_client, save_store, prompt_builder, parser, compactor):
    return TurnOrchestrator(
        llm_client=llm_client,
        save_store=save_store,
        prompt_builder=prompt_builder,
        parser=parser,
        compactor=compactor
    )


@pytest.fixture
def client(test_env):
    """Fixture providing FastAPI test client with overridden dependencies.

    The LLM client runs in stub mode, so every turn returns a canned reply
    without network access. Saves go to the per-test temporary directory.
    """
    with patch.dict(os.environ, test_env, clear=True):
        from wendao.config import get_settings
        get_settings.cache_clear()

        from wendao.api.routes import get_llm_client, get_turn_orchestrator
        from wendao.main import app, build_orchestrator

        test_orchestrator = build_orchestrator(get_settings())
        test_llm_client = test_orchestrator.llm_client

        try:
            app.dependency_overrides[get_llm_client] = lambda: test_llm_client
            app.dependency_overrides[get_turn_orchestrator] = lambda: test_orchestrator

            with TestClient(app) as test_client:
                test_client.orchestrator = test_orchestrator
                yield test_client
        finally:
            asyncio.run(test_llm_client.aclose())
            app.dependency_overrides.clear()
            get_settings.cache_clear()
