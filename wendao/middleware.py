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
"""Middleware for request correlation and observability.

Game routes wait on a completion call, so they are timed per route
(``http_game_action``, ``http_game_start``, ...) and flagged when they run
longer than ``slow_request_ms``. Health and metrics checks log at DEBUG.
"""

import logging
import time
import uuid
from typing import Callable, Optional
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from wendao.config import get_settings
from wendao.logging import set_request_id, clear_context
from wendao.metrics import get_metrics_collector, MetricsTimer

logger = logging.getLogger(__name__)

QUIET_PATHS = frozenset({"/health", "/metrics"})


def operation_for_path(path: str) -> str:
    """Metrics operation name for a request path.

    ``/game/action`` becomes ``http_game_action`` and ``/game`` becomes
    ``http_game``; everything else is grouped under ``request``.
    """
    segments = [segment for segment in path.strip("/").split("/") if segment]
    if not segments or segments[0] != "game":
        return "request"
    return "http_" + "_".join(segments[:2])


class RequestCorrelationMiddleware(BaseHTTPMiddleware):
    """Middleware for request correlation and observability.

    Features:
    - Uses X-Trace-Id or X-Request-Id when provided, otherwise a new UUID
    - Sets request_id in context variables for logging
    - Adds X-Request-Id header to responses
    - Logs request start/end with method, path, status, and latency
    - Warns about game requests slower than ``slow_request_ms``
    """

    def __init__(self, app, slow_request_ms: Optional[float] = None):
        super().__init__(app)
        self.slow_request_ms = slow_request_ms

    def _slow_threshold_ms(self) -> float:
        if self.slow_request_ms is not None:
            return self.slow_request_ms
        return get_settings().slow_request_ms

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = (
            request.headers.get('X-Trace-Id') or
            request.headers.get('X-Request-Id') or
            str(uuid.uuid4())
        )
        set_request_id(request_id)

        path = request.url.path
        level = logging.DEBUG if path in QUIET_PATHS else logging.INFO
        start_time = time.time()
        logger.log(
            level,
            f"Request started: {request.method} {path}",
            extra={
                'request_id': request_id,
                'method': request.method,
                'path': path,
                'client_ip': request.client.host if request.client else None
            }
        )

        try:
            with MetricsTimer(operation_for_path(path)):
                response = await call_next(request)

            duration_ms = (time.time() - start_time) * 1000
            if (collector := get_metrics_collector()):
                collector.record_request(response.status_code)

            slow = duration_ms > self._slow_threshold_ms()
            if slow:
                level = logging.WARNING
            logger.log(
                level,
                f"Request completed: {request.method} {path} - {response.status_code}",
                extra={
                    'request_id': request_id,
                    'method': request.method,
                    'path': path,
                    'status_code': response.status_code,
                    'duration_ms': f"{duration_ms:.2f}",
                    'slow': slow
                }
            )

            response.headers['X-Request-Id'] = request_id
            return response

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"Request failed: {request.method} {path} - {type(e).__name__}",
                extra={
                    'request_id': request_id,
                    'method': request.method,
                    'path': path,
                    'error_type': type(e).__name__,
                    'error_message': str(e),
                    'duration_ms': f"{duration_ms:.2f}"
                },
                exc_info=True
            )
            raise

        finally:
            clear_context()
