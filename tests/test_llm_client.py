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
"""Tests for LLMClient service."""

import json

import httpx
import openai
import pytest
from unittest.mock import AsyncMock, MagicMock

from wendao.models import LLMSettings
from wendao.services.llm_client import (
    CONNECTION_OK_MESSAGE,
    LLMClient,
    LLMClientError,
    LLMConfigurationError,
    LLMResponseError,
    LLMTimeoutError,
)

REQUEST = httpx.Request("POST", "https://api.example.com/v1/chat/completions")


def make_settings(api_key="sk-test-key-12345", model="test-model"):
    return LLMSettings(base_url="https://api.example.com/v1", api_key=api_key, model=model)


def make_response(content):
    message = MagicMock()
    message.content = content
    choice = MagicMock()
    choice.message = message
    response = MagicMock()
    response.choices = [choice]
    return response


def status_error(cls, status_code, message="error"):
    response = httpx.Response(status_code, request=REQUEST, json={"error": {"message": message}})
    return cls(message, response=response, body=None)


def mocked_client(**kwargs):
    client = LLMClient(settings=make_settings(), **kwargs)
    client.client = MagicMock()
    client.client.chat.completions.create = AsyncMock()
    return client


def test_llm_client_init():
    """Test LLMClient initialization."""
    client = LLMClient(settings=make_settings(), timeout=60)

    assert client.model == "test-model"
    assert client.timeout == 60
    assert not client.stub_mode
    assert client.client is not None
    assert client.is_configured


def test_llm_client_init_without_key():
    """A missing key leaves the client unconfigured instead of failing."""
    client = LLMClient(settings=make_settings(api_key=""))
    assert client.client is None
    assert not client.is_configured


def test_llm_client_stub_mode():
    client = LLMClient(settings=make_settings(api_key=""), stub_mode=True)
    assert client.client is None
    assert client.is_configured


def test_configure_switches_endpoint():
    client = LLMClient(settings=make_settings(api_key=""))
    client.configure(make_settings(api_key="sk-new-key", model="deepseek-chat"))
    assert client.is_configured
    assert client.model == "deepseek-chat"


@pytest.mark.asyncio
async def test_complete_stub_mode_json():
    client = LLMClient(settings=make_settings(), stub_mode=True)
    reply = await client.complete([{"role": "user", "content": "打坐"}])
    data = json.loads(reply)
    assert data["narrative"].startswith("[STUB]")
    assert data["choices"]


@pytest.mark.asyncio
async def test_complete_stub_mode_text():
    client = LLMClient(settings=make_settings(), stub_mode=True)
    reply = await client.complete([{"role": "user", "content": "summarize"}], response_format="text")
    assert reply.startswith("[STUB]")


@pytest.mark.asyncio
async def test_complete_success():
    client = mocked_client(temperature=0.5, max_tokens=1000)
    client.client.chat.completions.create.return_value = make_response('{"narrative": "ok"}')
    messages = [{"role": "system", "content": "GM"}, {"role": "user", "content": "打坐"}]

    reply = await client.complete(messages)

    assert reply == '{"narrative": "ok"}'
    client.client.chat.completions.create.assert_awaited_once_with(
        model="test-model",
        messages=messages,
        temperature=0.5,
        max_tokens=1000
    )


@pytest.mark.asyncio
async def test_complete_without_key():
    client = LLMClient(settings=make_settings(api_key=""))
    with pytest.raises(LLMConfigurationError, match="API Key"):
        await client.complete([{"role": "user", "content": "x"}])


@pytest.mark.asyncio
async def test_complete_empty_content():
    client = mocked_client()
    client.client.chat.completions.create.return_value = make_response("")
    with pytest.raises(LLMResponseError, match="Empty response"):
        await client.complete([{"role": "user", "content": "x"}])


@pytest.mark.asyncio
async def test_complete_no_choices():
    client = mocked_client()
    response = MagicMock()
    response.choices = []
    client.client.chat.completions.create.return_value = response
    with pytest.raises(LLMResponseError):
        await client.complete([{"role": "user", "content": "x"}])


@pytest.mark.asyncio
async def test_complete_authentication_error():
    client = mocked_client()
    client.client.chat.completions.create.side_effect = status_error(openai.AuthenticationError, 401)
    with pytest.raises(LLMConfigurationError, match="401"):
        await client.complete([{"role": "user", "content": "x"}])


@pytest.mark.asyncio
async def test_complete_status_error():
    client = mocked_client()
    client.client.chat.completions.create.side_effect = status_error(
        openai.BadRequestError, 400, "model not found"
    )
    with pytest.raises(LLMClientError, match=r"API Error \(400\)"):
        await client.complete([{"role": "user", "content": "x"}])


@pytest.mark.asyncio
async def test_complete_timeout():
    client = mocked_client()
    client.client.chat.completions.create.side_effect = openai.APITimeoutError(request=REQUEST)
    with pytest.raises(LLMTimeoutError):
        await client.complete([{"role": "user", "content": "x"}])


@pytest.mark.asyncio
async def test_complete_connection_error():
    client = mocked_client()
    client.client.chat.completions.create.side_effect = openai.APIConnectionError(request=REQUEST)
    with pytest.raises(LLMClientError, match="网络请求失败"):
        await client.complete([{"role": "user", "content": "x"}])


@pytest.mark.asyncio
async def test_complete_retries_transient_errors():
    client = mocked_client(max_retries=2, retry_delay_base=0.01)
    client.client.chat.completions.create.side_effect = [
        status_error(openai.InternalServerError, 503),
        make_response("恢复了"),
    ]

    assert await client.complete([{"role": "user", "content": "x"}]) == "恢复了"
    assert client.client.chat.completions.create.await_count == 2


@pytest.mark.asyncio
async def test_complete_does_not_retry_by_default():
    client = mocked_client()
    client.client.chat.completions.create.side_effect = status_error(openai.InternalServerError, 503)
    with pytest.raises(LLMClientError):
        await client.complete([{"role": "user", "content": "x"}])
    assert client.client.chat.completions.create.await_count == 1


@pytest.mark.asyncio
async def test_test_connection_requires_key():
    client = LLMClient(settings=make_settings())
    success, message = await client.test_connection(make_settings(api_key=""))
    assert not success
    assert message == "API Key 不能为空"


@pytest.mark.asyncio
async def test_test_connection_success(monkeypatch):
    client = LLMClient(settings=make_settings(api_key=""))
    candidate = MagicMock()
    candidate.chat.completions.create = AsyncMock(return_value=make_response("OK"))
    monkeypatch.setattr(client, "_build_client", lambda settings: candidate)

    success, message = await client.test_connection(make_settings(model="gpt-4o-mini"))

    assert success
    assert message == CONNECTION_OK_MESSAGE
    assert candidate.chat.completions.create.await_args.kwargs["model"] == "gpt-4o-mini"
    assert not client.is_configured


@pytest.mark.asyncio
async def test_test_connection_reports_status(monkeypatch):
    client = LLMClient(settings=make_settings())
    candidate = MagicMock()
    candidate.chat.completions.create = AsyncMock(
        side_effect=status_error(openai.NotFoundError, 404, "no such model")
    )
    monkeypatch.setattr(client, "_build_client", lambda settings: candidate)

    success, message = await client.test_connection(make_settings())

    assert not success
    assert message.startswith("Error 404")
