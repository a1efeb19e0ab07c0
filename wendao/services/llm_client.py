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
"""LLM client for OpenAI-compatible chat completion endpoints."""

import json
import time
from typing import Dict, List, Literal, Optional, Tuple

import httpx
import openai
from openai import AsyncOpenAI

from wendao.logging import StructuredLogger, redact_secrets, sanitize_for_log
from wendao.metrics import get_metrics_collector
from wendao.models import LLMSettings
from wendao.resilience import RetryConfig, with_retry

logger = StructuredLogger(__name__)

ResponseFormat = Literal["json", "text"]

CONNECTION_OK_MESSAGE = "连接成功！接口工作正常。"

# Transport failures worth another attempt when retries are enabled
RETRYABLE_ERRORS = (
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
    openai.APIConnectionError,
)


class LLMClientError(Exception):
    """Base exception for LLM client errors."""
    pass


class LLMConfigurationError(LLMClientError):
    """Raised when the endpoint configuration is missing or rejected."""
    pass


class LLMTimeoutError(LLMClientError):
    """Raised when a completion request times out."""
    pass


class LLMResponseError(LLMClientError):
    """Raised when the endpoint answers without usable content."""
    pass


class LLMClient:
    """Client for OpenAI-compatible chat completion endpoints.

    This client:
    - Sends ordered chat messages and returns the raw reply text
    - Leaves interpretation of the reply to the caller (JSON turn replies
      go through the response parser, summaries through its text path)
    - Maps SDK failures onto the LLMClientError hierarchy
    - Can be reconfigured at runtime when the player changes settings
    - Supports stub mode for offline development

    The endpoint is any server speaking the chat-completions protocol
    (OpenAI, DeepSeek, Gemini's OpenAI compatibility layer, Ollama, ...).
    All SDK clients share one httpx connection pool.
    """

    def __init__(
        self,
        settings: LLMSettings,
        timeout: int = 60,
        temperature: float = 0.8,
        max_tokens: int = 4000,
        stub_mode: bool = False,
        max_retries: int = 0,
        retry_delay_base: float = 1.0,
        retry_delay_max: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """Initialize LLM client.

        Args:
            settings: Endpoint base URL, API key and model
            timeout: Request timeout in seconds
            temperature: Sampling temperature
            max_tokens: Maximum completion tokens per request
            stub_mode: If True, returns canned replies without calling the API
            max_retries: Retries for transient transport errors (0 disables)
            retry_delay_base: Base delay for exponential backoff (seconds)
            retry_delay_max: Maximum delay for exponential backoff (seconds)
            http_client: Shared httpx client (created if not given)
        """
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.stub_mode = stub_mode
        self.retry_config = RetryConfig(
            max_retries=max_retries,
            base_delay=retry_delay_base,
            max_delay=retry_delay_max,
            retryable_exceptions=RETRYABLE_ERRORS
        )
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.settings = settings
        self.client: Optional[AsyncOpenAI] = None
        self.configure(settings)

    @property
    def model(self) -> str:
        return self.settings.model

    @property
    def is_configured(self) -> bool:
        """Whether completions can be requested (stub mode or a key is set)."""
        return self.stub_mode or self.client is not None

    def configure(self, settings: LLMSettings) -> None:
        """Point the client at a (possibly new) endpoint.

        Args:
            settings: Endpoint base URL, API key and model
        """
        self.settings = settings
        if self.stub_mode:
            self.client = None
            logger.info("Initialized LLMClient in STUB MODE (no API calls will be made)")
            return

        if not settings.is_configured:
            self.client = None
            logger.warning("LLM API key not set; completions are disabled until configured")
            return

        self.client = self._build_client(settings)
        logger.info(
            f"Initialized LLMClient with model={settings.model}, timeout={self.timeout}s, "
            f"max_retries={self.retry_config.max_retries}",
            base_url=settings.base_url
        )

    def _build_client(self, settings: LLMSettings) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout=self.timeout,
            max_retries=0,
            http_client=self.http_client
        )

    async def complete(
        self,
        messages: List[Dict[str, str]],
        response_format: ResponseFormat = "json"
    ) -> str:
        """Request a chat completion and return the reply text.

        Args:
            messages: Ordered chat messages ({role, content})
            response_format: Expected reply shape, "json" for turns or
                "text" for summaries (used for logging and metrics)

        Returns:
            Raw reply text

        Raises:
            LLMConfigurationError: If no API key is set or it is rejected
            LLMTimeoutError: If the request times out
            LLMResponseError: If the reply has no content
            LLMClientError: For HTTP and network errors
        """
        if self.stub_mode:
            return self._stub_reply(messages, response_format)

        if self.client is None:
            raise LLMConfigurationError("API Key 未设置，请先在设置中填写")

        client = self.client
        start_time = time.time()
        logger.info(
            "Requesting chat completion",
            model=self.model,
            response_format=response_format,
            message_count=len(messages),
            prompt_length=sum(len(m.get("content", "")) for m in messages)
        )

        try:
            response = await with_retry(
                self.retry_config,
                "chat completion",
                lambda: client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens
                )
            )
            content = self._extract_content(response)

        except openai.AuthenticationError as e:
            self._record_failure("authentication", start_time)
            raise LLMConfigurationError(f"API Key 无效 ({e.status_code})") from e

        except openai.PermissionDeniedError as e:
            self._record_failure("permission_denied", start_time)
            raise LLMConfigurationError(f"无权访问该模型 ({e.status_code})") from e

        except openai.APITimeoutError as e:
            self._record_failure("timeout", start_time)
            raise LLMTimeoutError(f"请求超时 ({self.timeout}s)") from e

        except openai.APIStatusError as e:
            self._record_failure("http_status", start_time)
            raise LLMClientError(
                f"API Error ({e.status_code}): {sanitize_for_log(redact_secrets(e.message))}"
            ) from e

        except openai.APIConnectionError as e:
            self._record_failure("connection", start_time)
            raise LLMClientError("网络请求失败，可能是网络中断或 API 地址无效") from e

        except LLMResponseError:
            self._record_failure("empty_response", start_time)
            raise

        except Exception as e:
            self._record_failure("unexpected", start_time)
            logger.error(
                "Unexpected error during chat completion",
                error_type=type(e).__name__,
                error=redact_secrets(str(e))
            )
            raise LLMClientError(f"请求失败: {e}") from e

        duration_ms = (time.time() - start_time) * 1000
        if (collector := get_metrics_collector()):
            collector.record_latency("llm_call", duration_ms)

        logger.info(
            "Chat completion succeeded",
            response_format=response_format,
            content_length=len(content),
            duration_ms=f"{duration_ms:.2f}"
        )
        return content

    async def test_connection(self, settings: LLMSettings) -> Tuple[bool, str]:
        """Send a minimal request with the given settings.

        The client's own configuration is not changed.

        Args:
            settings: Candidate endpoint settings

        Returns:
            Tuple of (success, human-readable message)
        """
        if not settings.is_configured:
            return False, "API Key 不能为空"

        client = self._build_client(settings)
        try:
            await client.chat.completions.create(
                model=settings.model,
                messages=[{"role": "user", "content": 'Say "OK"'}],
                max_tokens=5
            )
        except openai.APIStatusError as e:
            message = f"Error {e.status_code}: {sanitize_for_log(redact_secrets(e.message), 100)}"
            logger.warning("Connection test failed", status_code=e.status_code)
            return False, message
        except openai.APITimeoutError:
            logger.warning("Connection test timed out")
            return False, f"连接超时 ({self.timeout}s)"
        except openai.APIConnectionError as e:
            logger.warning("Connection test failed", error_type=type(e).__name__)
            return False, "连接失败，请检查 API 地址或网络代理"

        logger.info("Connection test succeeded", base_url=settings.base_url, model=settings.model)
        return True, CONNECTION_OK_MESSAGE

    async def aclose(self) -> None:
        """Close the shared HTTP client if this instance created it."""
        if self._owns_http_client:
            await self.http_client.aclose()

    def _extract_content(self, response) -> str:
        choices = getattr(response, "choices", None)
        if not choices:
            raise LLMResponseError("Empty response from AI")
        content = choices[0].message.content
        if not content:
            raise LLMResponseError("Empty response from AI")
        return content

    def _record_failure(self, kind: str, start_time: float) -> None:
        duration_ms = (time.time() - start_time) * 1000
        logger.error(
            "Chat completion failed",
            failure=kind,
            duration_ms=f"{duration_ms:.2f}"
        )
        if (collector := get_metrics_collector()):
            collector.record_event(f"llm_error_{kind}")

    def _stub_reply(
        self,
        messages: List[Dict[str, str]],
        response_format: ResponseFormat
    ) -> str:
        """Canned reply for offline development."""
        if response_format == "text":
            return "[STUB] 修仙者初入仙途，历经数番机缘，修为渐长。"

        last_user = next(
            (m.get("content", "") for m in reversed(messages) if m.get("role") == "user"),
            ""
        )
        logger.debug("Generating stub reply", prompt_length=len(last_user))
        return json.dumps({
            "narrative": (
                "[STUB] 你盘膝而坐，引天地灵气入体，周天运转之间，丹田微微发热。"
                "山风拂过，远处隐约传来钟声。"
            ),
            "characterUpdate": {"cultivation": 10},
            "choices": ["继续修炼", "外出历练"],
            "gameOver": False,
            "eventArtKeyword": "meditation"
        }, ensure_ascii=False)
