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
"""Parser for model replies with a layered repair pipeline.

Model output is untrusted: it may be wrapped in code fences, preceded by
prose, truncated, or carry broken quoting. The parser runs an ordered chain
of strategies (first success wins) and never raises:

1. Strip framing (code fences, surrounding whitespace)
2. Brace extraction (first ``{`` to last ``}``)
3. Strict decode of the extracted envelope
4. Field-level regex recovery, where one broken field never suppresses the
   others
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from wendao.logging import StructuredLogger, redact_secrets
from wendao.metrics import get_metrics_collector
from wendao.models import (
    ATTRIBUTE_NAMES,
    DEFAULT_ART_KEYWORD,
    NUMERIC_FIELDS,
    CharacterUpdate,
    TurnResult,
    coerce_text_list,
)

logger = StructuredLogger(__name__)

# Maximum payload size to log (to prevent log flooding and secret leakage)
MAX_PAYLOAD_LOG_LENGTH = 500

# Fallback narrative length when an envelope had no recoverable narrative
MAX_FALLBACK_NARRATIVE_LENGTH = 1000

CONTINUE_CHOICE = "继续"

_LEADING_JSON_FENCE = re.compile(r'^```json\s*', re.IGNORECASE)
_LEADING_FENCE = re.compile(r'^```\s*')
_TRAILING_FENCE = re.compile(r'\s*```$')

_NARRATIVE_PATTERN = re.compile(r'"narrative"\s*:\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)
_CHOICES_PATTERN = re.compile(r'"choices"\s*:\s*\[([^\]]*)\]')
_GAME_OVER_PATTERN = re.compile(r'"gameOver"\s*:\s*true', re.IGNORECASE)
_ART_KEYWORD_PATTERN = re.compile(r'"eventArtKeyword"\s*:\s*"([^"]*)"')
_KEY_FRAGMENT_PATTERN = re.compile(r'"[A-Za-z0-9_]+"\s*:')


def strip_framing(text: str) -> str:
    """Remove surrounding whitespace and code-fence markers.

    Args:
        text: Raw completion text

    Returns:
        Text without a leading ```json / ``` fence or a trailing ``` fence
    """
    content = text.strip()
    content = _LEADING_JSON_FENCE.sub('', content)
    content = _LEADING_FENCE.sub('', content)
    content = _TRAILING_FENCE.sub('', content)
    return content


@dataclass
class FramedText:
    """Intermediate views of one reply shared by all strategies.

    Attributes:
        raw: Text exactly as received
        unfenced: Text after framing was stripped
        envelope: Slice from the first ``{`` to the last ``}``, or None when
            the reply has no brace pair
    """
    raw: str
    unfenced: str
    envelope: Optional[str]

    @classmethod
    def from_raw(cls, raw: str) -> "FramedText":
        unfenced = strip_framing(raw)
        first = unfenced.find('{')
        last = unfenced.rfind('}')
        envelope = unfenced[first:last + 1] if first != -1 and last > first else None
        return cls(raw=raw, unfenced=unfenced, envelope=envelope)


@dataclass
class StrategyResult:
    """Outcome of a single strategy attempt."""
    result: Optional[TurnResult]
    error_type: Optional[str] = None
    error_details: Optional[List[str]] = None


@dataclass
class ParsedTurn:
    """Result of parsing a model reply.

    Attributes:
        result: Best-effort TurnResult (always present)
        stage: Name of the strategy that produced the result
        is_valid: Whether the strict decode succeeded
        error_type: Why strict decoding failed, if it did
        error_details: Specific decode or validation errors if any
    """
    result: TurnResult
    stage: str
    is_valid: bool
    error_type: Optional[str] = None
    error_details: Optional[List[str]] = None

    @property
    def narrative(self) -> str:
        return self.result.narrative


class ParseStrategy:
    """One link in the parse chain.

    Implementations must never raise; returning ``StrategyResult(None)``
    passes control to the next strategy.
    """

    name = "base"

    def attempt(self, framed: FramedText) -> StrategyResult:
        raise NotImplementedError


class StrictJsonStrategy(ParseStrategy):
    """Decode the brace envelope as JSON and validate it as a TurnResult.

    Succeeds only for an object whose ``narrative`` is a string. Other
    fields are coerced leniently by the model validators.
    """

    name = "strict"

    def attempt(self, framed: FramedText) -> StrategyResult:
        if framed.envelope is None:
            return StrategyResult(None, "no_envelope", ["No JSON object found in reply"])

        try:
            data = json.loads(framed.envelope)
        except json.JSONDecodeError as e:
            return StrategyResult(
                None,
                "json_decode_error",
                [f"JSON decode error at line {e.lineno}, column {e.colno}: {e.msg}"]
            )

        if not isinstance(data, dict):
            return StrategyResult(
                None,
                "validation_error",
                [f"Expected a JSON object, got {type(data).__name__}"]
            )
        if not isinstance(data.get("narrative"), str):
            return StrategyResult(None, "validation_error", ["narrative: missing or not a string"])

        try:
            return StrategyResult(TurnResult.model_validate(data))
        except ValidationError as e:
            return StrategyResult(None, "validation_error", _format_validation_errors(e))


class RegexRecoveryStrategy(ParseStrategy):
    """Recover each field independently with regular expressions.

    Total: always produces a result. Runs over the unfenced text rather than
    only the envelope so a reply whose outer braces are missing still yields
    its fields.
    """

    name = "recovered"

    def attempt(self, framed: FramedText) -> StrategyResult:
        text = framed.unfenced
        has_envelope = framed.envelope is not None

        narrative = self._extract_narrative(text)
        if narrative is None:
            if has_envelope:
                stripped = _KEY_FRAGMENT_PATTERN.sub('', framed.raw)
                narrative = stripped[:MAX_FALLBACK_NARRATIVE_LENGTH] + "..."
            else:
                narrative = framed.raw

        update = CharacterUpdate(**self._extract_numbers(text))
        result = TurnResult(
            narrative=narrative,
            character_update=update,
            choices=self._extract_choices(text),
            game_over=bool(_GAME_OVER_PATTERN.search(text)),
            event_art_keyword=self._extract_art_keyword(text)
        )
        return StrategyResult(result)

    def _extract_narrative(self, text: str) -> Optional[str]:
        match = _NARRATIVE_PATTERN.search(text)
        if not match:
            return None
        return (
            match.group(1)
            .replace('\\n', '\n')
            .replace('\\"', '"')
            .replace('\\\\', '\\')
        )

    def _extract_choices(self, text: str) -> List[str]:
        match = _CHOICES_PATTERN.search(text)
        if not match:
            return [CONTINUE_CHOICE]

        inner = match.group(1)
        try:
            decoded = json.loads(f"[{inner}]")
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, list):
            return coerce_text_list(decoded)

        parts = (part.replace('"', '').replace("'", '').strip() for part in inner.split(','))
        return [part for part in parts if part]

    def _extract_numbers(self, text: str) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        for field_name in NUMERIC_FIELDS:
            value = _extract_int(text, to_camel(field_name))
            if value is not None:
                fields[field_name] = value

        attributes = {}
        for attribute in ATTRIBUTE_NAMES:
            value = _extract_int(text, attribute)
            if value is not None:
                attributes[attribute] = value
        if attributes:
            fields["attributes"] = attributes
        return fields

    def _extract_art_keyword(self, text: str) -> str:
        match = _ART_KEYWORD_PATTERN.search(text)
        if match and match.group(1).strip():
            return match.group(1).strip()
        return DEFAULT_ART_KEYWORD


def _extract_int(text: str, key: str) -> Optional[int]:
    # Digits only: a signed value such as "health": -5 is not recovered and
    # the field is left unchanged.
    match = re.search(rf'"{re.escape(key)}"\s*:\s*(\d+)', text)
    return int(match.group(1)) if match else None


def _format_validation_errors(error: ValidationError) -> List[str]:
    """Format ValidationError entries as "field.path: type - message"."""
    error_list = []
    for err in error.errors():
        field_path = ".".join(str(loc) for loc in err["loc"])
        error_list.append(f"{field_path}: {err['type']} - {err['msg']}")
    return error_list


class ResponseParser:
    """Parser for model replies with a first-success-wins strategy chain.

    This parser:
    - Never raises, whatever the input
    - Logs strict-decode failures with a redacted, truncated payload preview
    - Records parse-stage counters for the schema conformance metric
    - Offers a plain-text path (``parse_text``) for summarization replies
    """

    def __init__(self, strategies: Optional[List[ParseStrategy]] = None):
        """Initialize the parser.

        Args:
            strategies: Ordered strategy chain. The last strategy must be
                total; defaults to strict decode followed by regex recovery.
        """
        self.strategies = strategies or [StrictJsonStrategy(), RegexRecoveryStrategy()]

    def parse(self, raw_text: str, trace_id: Optional[str] = None) -> ParsedTurn:
        """Parse a JSON-mode reply into a ParsedTurn.

        Args:
            raw_text: Raw completion text
            trace_id: Optional trace ID for correlation

        Returns:
            ParsedTurn whose result always has a narrative string and a
            choices list
        """
        if not isinstance(raw_text, str):
            raw_text = "" if raw_text is None else str(raw_text)

        framed = FramedText.from_raw(raw_text)
        first_error: Optional[StrategyResult] = None

        for strategy in self.strategies:
            attempt = strategy.attempt(framed)
            if attempt.result is None:
                if first_error is None:
                    first_error = attempt
                continue

            is_valid = first_error is None
            self._record(strategy.name, is_valid, attempt.result, first_error, raw_text, trace_id)
            return ParsedTurn(
                result=attempt.result,
                stage=strategy.name,
                is_valid=is_valid,
                error_type=first_error.error_type if first_error else None,
                error_details=first_error.error_details if first_error else None
            )

        # Only reachable with a custom chain lacking a total strategy
        logger.error("No parse strategy produced a result", trace_id=trace_id)
        return ParsedTurn(
            result=TurnResult(narrative=raw_text, choices=[CONTINUE_CHOICE]),
            stage="none",
            is_valid=False,
            error_type=first_error.error_type if first_error else None,
            error_details=first_error.error_details if first_error else None
        )

    def parse_text(self, raw_text: str) -> str:
        """Plain-text path used for summaries: strips framing only."""
        if not isinstance(raw_text, str):
            return ""
        return strip_framing(raw_text).strip()

    def _record(
        self,
        stage: str,
        is_valid: bool,
        result: TurnResult,
        failure: Optional[StrategyResult],
        raw_text: str,
        trace_id: Optional[str]
    ) -> None:
        if (collector := get_metrics_collector()):
            collector.record_event("parse_strict" if is_valid else "parse_recovered")

        if is_valid:
            logger.info(
                "Parsed model reply",
                stage=stage,
                narrative_length=len(result.narrative),
                choice_count=len(result.choices),
                game_over=result.game_over,
                trace_id=trace_id
            )
            return

        logger.warning(
            "Strict decode failed, recovered fields from model reply",
            stage=stage,
            error_type=failure.error_type if failure else None,
            error_details=failure.error_details if failure else None,
            payload_preview=self._truncate_for_log(raw_text),
            trace_id=trace_id
        )

    def _truncate_for_log(self, text: str) -> str:
        redacted = redact_secrets(text)
        if len(redacted) > MAX_PAYLOAD_LOG_LENGTH:
            return redacted[:MAX_PAYLOAD_LOG_LENGTH] + "... (truncated)"
        return redacted
