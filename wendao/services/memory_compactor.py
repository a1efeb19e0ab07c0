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
"""Rolling summarization of the turn log.

Older turns are folded into a running summary so the context sent with each
turn stays bounded. The most recent entries (the safety buffer) are never
folded because an imminent turn may still refer to them. Compaction is an
optimization: any failure leaves the summary and watermark untouched.
"""

import time
from dataclasses import dataclass
from typing import Optional, Sequence

from wendao.logging import StructuredLogger, redact_secrets
from wendao.metrics import get_metrics_collector
from wendao.models import TurnEntry
from wendao.prompting.prompt_builder import PromptBuilder
from wendao.services.llm_client import LLMClient, LLMClientError
from wendao.services.response_parser import ResponseParser

logger = StructuredLogger(__name__)

DEFAULT_THRESHOLD = 20
DEFAULT_SAFETY_BUFFER = 5


@dataclass
class CompactionResult:
    """New running summary and the watermark it covers."""
    summary: str
    watermark: int


class MemoryCompactor:
    """Folds old turn-log entries into a running summary.

    At most one compaction runs at a time (``in_flight``). Callers pass the
    orchestrator's busy and terminal flags so compaction never overlaps a
    turn or runs after the game ended.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        prompt_builder: PromptBuilder,
        parser: ResponseParser,
        threshold: int = DEFAULT_THRESHOLD,
        safety_buffer: int = DEFAULT_SAFETY_BUFFER
    ):
        self.llm_client = llm_client
        self.prompt_builder = prompt_builder
        self.parser = parser
        self.threshold = threshold
        self.safety_buffer = safety_buffer
        self.in_flight = False

    def plan(self, turn_log_length: int, compacted_through: int) -> Optional[int]:
        """Return the end index of the segment that may be folded, or None.

        Folding is due once ``threshold`` entries are uncompacted, and the
        segment stops ``safety_buffer`` entries short of the end of the log.
        """
        if turn_log_length - compacted_through < self.threshold:
            return None
        end = turn_log_length - self.safety_buffer
        if end <= compacted_through:
            return None
        return end

    async def maybe_compact(
        self,
        turn_log: Sequence[TurnEntry],
        summary: str,
        compacted_through: int,
        busy: bool,
        terminal: bool
    ) -> Optional[CompactionResult]:
        """Fold ``turn_log[compacted_through:end]`` into the summary if due.

        Args:
            turn_log: Full turn log (not modified)
            summary: Current running summary
            compacted_through: Current watermark
            busy: Whether the orchestrator is mid-turn
            terminal: Whether the game has ended

        Returns:
            CompactionResult on success, None when nothing was done
        """
        if self.in_flight or busy or terminal or not self.llm_client.is_configured:
            return None

        end = self.plan(len(turn_log), compacted_through)
        if end is None:
            return None

        segment = list(turn_log[compacted_through:end])
        messages = self.prompt_builder.build_compaction_messages(segment, summary)

        self.in_flight = True
        start_time = time.time()
        try:
            logger.info(
                "Compacting turn log",
                segment_start=compacted_through,
                segment_end=end,
                turn_log_length=len(turn_log)
            )
            reply = await self.llm_client.complete(messages, response_format="text")
        except LLMClientError as e:
            logger.warning(
                "Compaction failed, keeping previous summary",
                error_type=type(e).__name__,
                error=redact_secrets(str(e))
            )
            self._record("compaction_failed", start_time)
            return None
        finally:
            self.in_flight = False

        new_summary = self.parser.parse_text(reply)
        if not new_summary:
            logger.warning("Compaction returned an empty summary, keeping previous summary")
            self._record("compaction_failed", start_time)
            return None

        self._record("compaction_succeeded", start_time)
        logger.info(
            "Compaction completed",
            watermark=end,
            summary_length=len(new_summary)
        )
        return CompactionResult(summary=new_summary, watermark=end)

    def _record(self, event: str, start_time: float) -> None:
        if (collector := get_metrics_collector()):
            collector.record_event(event)
            collector.record_latency("compaction", (time.time() - start_time) * 1000)
