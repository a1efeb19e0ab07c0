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
"""Structured logging utilities for the Wendao game service.

Every log line written through ``StructuredLogger`` carries the HTTP
request id and the game session id of the turn being processed, so a
single turn can be followed from the route through the completion call,
the parser and the reconciler. API keys typed into the settings screen
end up in error messages from some providers; ``redact_secrets`` is
applied before such messages are logged or shown to the player.
"""

import json
import logging
import re
import time
from contextvars import ContextVar
from typing import Optional, Dict, Any

request_id_ctx: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
session_id_ctx: ContextVar[Optional[str]] = ContextVar('session_id', default=None)

_CORRELATION_VARS = (
    ('request_id', request_id_ctx),
    ('session_id', session_id_ctx),
)

_SECRET_PATTERNS = [
    (re.compile(r'sk-[a-zA-Z0-9_\-]{16,}'), 'sk-***REDACTED***'),
    (re.compile(r'AIza[0-9A-Za-z_\-]{20,}'), 'AIza***REDACTED***'),
    (re.compile(r'api[_-]?key["\']?\s*[:=]\s*["\']?[a-zA-Z0-9_\-]{16,}', re.IGNORECASE),
     'api_key=***REDACTED***'),
    (re.compile(r'Bearer\s+[a-zA-Z0-9\-._~+/]+', re.IGNORECASE), 'Bearer ***REDACTED***'),
]

_CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f-\x9f]')

# Loggers of the HTTP stack that are only useful when debugging
_CHATTY_LOGGERS = ('httpx', 'httpcore', 'openai')


def set_request_id(request_id: str) -> None:
    """Set the request ID in context for correlation."""
    request_id_ctx.set(request_id)


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


def set_session_id(session_id: str) -> None:
    """Set the game session ID in context.

    The orchestrator calls this whenever it touches a session, including
    background compaction that runs after the response has been sent.
    """
    session_id_ctx.set(session_id)


def get_session_id() -> Optional[str]:
    return session_id_ctx.get()


def clear_context() -> None:
    """Reset all correlation ids. Called by the middleware after each request."""
    for _, var in _CORRELATION_VARS:
        var.set(None)


def redact_secrets(text: str) -> str:
    """Mask API keys and bearer tokens in ``text``.

    Covers OpenAI-style ``sk-`` keys, Google ``AIza`` keys, ``api_key=...``
    assignments and ``Bearer`` authorization values.
    """
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def sanitize_for_log(text: str, max_length: int = 200) -> str:
    """Strip control characters and truncate player input before logging it.

    Player actions are free text; this keeps a pasted paragraph from
    spilling across log lines. Secrets are handled by ``redact_secrets``.
    """
    sanitized = _CONTROL_CHARS.sub('', str(text))
    if len(sanitized) > max_length:
        return sanitized[:max_length] + "..."
    return sanitized


def get_structured_extras() -> Dict[str, Any]:
    """Correlation ids that are currently set, keyed by field name."""
    return {name: var.get() for name, var in _CORRELATION_VARS if var.get()}


class StructuredLogger:
    """Logger that appends correlation ids and keyword fields to messages.

    ``logger.info("Turn completed", turn_kind="action")`` logs
    ``Turn completed | request_id=... turn_kind=action``. The same fields are
    attached to the record so ``JsonFormatter`` emits them as keys.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log(self, level: int, message: str, **fields) -> None:
        if not self.logger.isEnabledFor(level):
            return
        exc_info = fields.pop('exc_info', None)
        extras = get_structured_extras()
        extras.update((k, v) for k, v in fields.items() if v is not None)

        if extras:
            message = f"{message} | " + ' '.join(f'{k}={v}' for k, v in extras.items())

        # LogRecord rejects extras that shadow its own attributes
        record_extras = {k: v for k, v in extras.items() if k not in JsonFormatter.RESERVED_ATTRS}
        self.logger.log(level, message, extra=record_extras, exc_info=exc_info)

    def debug(self, message: str, **fields) -> None:
        self._log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields) -> None:
        self._log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields) -> None:
        self._log(logging.WARNING, message, **fields)

    def error(self, message: str, **fields) -> None:
        self._log(logging.ERROR, message, **fields)

    def critical(self, message: str, **fields) -> None:
        self._log(logging.CRITICAL, message, **fields)


class PhaseTimer:
    """Context manager that logs how long one phase of a turn took.

    Usage:
        with PhaseTimer("action completion", logger):
            reply = await llm_client.complete(messages)

    Failures are logged at ERROR with the exception type and re-raised.
    """

    def __init__(self, phase: str, logger: StructuredLogger):
        self.phase = phase
        self.logger = logger
        self.start_time = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.debug(f"Phase started: {self.phase}")
        return self

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = f"{self.elapsed_ms:.2f}"
        if exc_type is None:
            self.logger.info(f"Phase completed: {self.phase}", duration_ms=duration)
        else:
            self.logger.error(
                f"Phase failed: {self.phase}",
                duration_ms=duration,
                error_type=exc_type.__name__
            )


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    Fields: timestamp, level, logger, message, service (when configured),
    every extra attached to the record (correlation ids, turn fields) and
    the formatted exception, if any.
    """

    RESERVED_ATTRS = frozenset(
        vars(logging.LogRecord('', logging.INFO, '', 0, '', (), None))
    ) | {'message', 'asctime', 'taskName'}

    def __init__(self, service_name: Optional[str] = None):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage()
        }
        if self.service_name:
            log_data['service'] = self.service_name

        for key, value in record.__dict__.items():
            if key not in self.RESERVED_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        # Narrative text is Chinese; keep it readable in the output
        return json.dumps(log_data, ensure_ascii=False, default=str)


def configure_logging(
    level: str = "INFO",
    json_format: bool = False,
    service_name: str = "wendao"
) -> None:
    """Install a single console handler on the root logger.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Emit JSON lines instead of plain text
        service_name: Included in every JSON line and in the plain format
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setLevel(log_level)
    if json_format:
        handler.setFormatter(JsonFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            f'%(asctime)s - {service_name} - %(name)s - %(levelname)s - %(message)s'
        ))
    root_logger.addHandler(handler)

    # Request/response lines from the HTTP stack would drown out turn logs
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(log_level if log_level == logging.DEBUG else logging.WARNING)

    root_logger.info(
        f"Logging configured: level={level}, json_format={json_format}, service={service_name}"
    )
