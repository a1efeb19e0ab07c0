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
"""Turn orchestrator owning the game session.

This module provides the TurnOrchestrator class that sequences every turn:
1. Guard (reject while busy; reject player turns once the game ended)
2. Append the player's entry or a system notice to the turn log
3. Assemble context (system instruction, summary, recent window, state)
4. Call the completion endpoint
5. Parse the reply and reconcile the proposed update
6. Append the narrator entry, update choices, persist or clear the save

The orchestrator ensures:
- One in-flight completion at a time (the busy flag)
- Completion failures become system notices and never change state
- Turn N is fully reconciled before turn N+1's context is built
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from wendao.game_data import (
    CUSTOM_ORIGIN_ID,
    RANDOM_ORIGIN_PROMPT,
    get_start_location,
    initial_character,
)
from wendao.logging import PhaseTimer, StructuredLogger, redact_secrets, set_session_id
from wendao.metrics import MetricsTimer, get_metrics_collector
from wendao.models import (
    DEFAULT_ART_KEYWORD,
    CharacterState,
    LLMSettings,
    SaveData,
    SessionView,
    TurnEntry,
    TurnRole,
)
from wendao.prompting.prompt_builder import ChatMessage, PromptBuilder
from wendao.services.llm_client import LLMClient, LLMClientError
from wendao.services.memory_compactor import MemoryCompactor
from wendao.services.reconciler import reconcile, repair_bounds
from wendao.services.response_parser import ResponseParser
from wendao.services.save_store import SaveStore, SaveStoreError

logger = StructuredLogger(__name__)

DEFAULT_RECENT_WINDOW = 30

START_NOTICE = "正在降临... 开启你的修仙命途..."
HINT_NOTICE = "正在窥探天机..."
IDENTIFY_NOTICE = "正在以神识鉴定【{item}】..."
NOT_CONFIGURED_NOTICE = "尚未设置 API Key，请先在设置中填写接口信息。"
OPENING_FAILURE_NOTICE = "天道连接中断: {error}。请检查 API 设置。"
TURN_FAILURE_NOTICE = "天机混乱: {error}。请重试。"
SILENT_NARRATIVE = "（天道沉默，四下寂然……）"


class TurnRejectedError(Exception):
    """Raised when an operation is not allowed in the current session state."""
    error_type = "turn_rejected"


class SessionBusyError(TurnRejectedError):
    """Raised when a completion is already in flight."""
    error_type = "session_busy"


class GameOverError(TurnRejectedError):
    """Raised for player turns after the game reached a terminal state."""
    error_type = "game_over"


class InvalidActionError(TurnRejectedError):
    """Raised for blank actions, unknown origins or unknown items."""
    error_type = "invalid_action"


@dataclass
class GameSession:
    """State container for one game, owned by the orchestrator.

    Attributes:
        session_id: Identifier used for log correlation
        character: Canonical character state
        turn_log: Append-only turn log
        summary: Running summary of compacted entries
        compacted_through: Watermark; entries before it are in the summary
        choices: Suggested next actions from the last reply
        event_art_keyword: Visual keyword from the last reply
        started: Whether a game has been started or loaded
        terminal: Sticky game-over flag
        busy: Whether a completion is in flight
    """
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    character: CharacterState = field(default_factory=initial_character)
    turn_log: List[TurnEntry] = field(default_factory=list)
    summary: str = ""
    compacted_through: int = 0
    choices: List[str] = field(default_factory=list)
    event_art_keyword: str = DEFAULT_ART_KEYWORD
    started: bool = False
    terminal: bool = False
    busy: bool = False

    @property
    def phase(self) -> str:
        return "awaiting-completion" if self.busy else "idle"

    def append(self, role: TurnRole, content: str) -> TurnEntry:
        entry = TurnEntry(role=role, content=content)
        self.turn_log.append(entry)
        return entry

    def recent_window(self, size: int) -> List[TurnEntry]:
        """Entries after the watermark, limited to the last ``size``."""
        start = max(self.compacted_through, len(self.turn_log) - size)
        return self.turn_log[start:]

    def to_snapshot(self, settings: Optional[LLMSettings] = None) -> SaveData:
        return SaveData(
            character=self.character,
            history=list(self.turn_log),
            summary=self.summary,
            summarized_count=self.compacted_through,
            timestamp=int(time.time() * 1000),
            settings=settings,
            game_over=self.terminal,
            choices=list(self.choices),
            event_art_keyword=self.event_art_keyword
        )

    @classmethod
    def from_snapshot(cls, snapshot: SaveData) -> "GameSession":
        return cls(
            character=repair_bounds(snapshot.character.model_copy(deep=True)),
            turn_log=list(snapshot.history),
            summary=snapshot.summary,
            compacted_through=snapshot.summarized_count,
            choices=list(snapshot.choices),
            event_art_keyword=snapshot.event_art_keyword,
            started=True,
            terminal=snapshot.game_over
        )


@dataclass
class TurnOutcome:
    """Result of one orchestrated turn.

    Attributes:
        succeeded: False when the completion call failed or was not possible
        narrative: Narrator text appended to the log (empty on failure)
        notice: System notice appended for a failed turn
        choices: Suggested next actions
        game_over: Whether the game is in a terminal state
        event_art_keyword: Visual keyword for the scene
        character: Canonical state after the turn
        parse_stage: Parser stage that produced the result, if any
    """
    succeeded: bool
    character: CharacterState
    narrative: str = ""
    notice: Optional[str] = None
    choices: List[str] = field(default_factory=list)
    game_over: bool = False
    event_art_keyword: str = DEFAULT_ART_KEYWORD
    parse_stage: Optional[str] = None


class TurnOrchestrator:
    """Sequences player intents through completion, parsing and reconciliation.

    The orchestrator is the only writer of the game session. The parser and
    reconciler are pure; the LLM client and save store are injected
    collaborators. Rejected operations raise TurnRejectedError subclasses
    before anything is appended to the turn log.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        save_store: SaveStore,
        prompt_builder: PromptBuilder,
        parser: ResponseParser,
        compactor: MemoryCompactor,
        recent_window: int = DEFAULT_RECENT_WINDOW
    ):
        """Initialize the turn orchestrator.

        Args:
            llm_client: Completion collaborator
            save_store: Persistence collaborator
            prompt_builder: PromptBuilder for message construction
            parser: ResponseParser for model replies
            compactor: MemoryCompactor for rolling summaries
            recent_window: Maximum turn-log entries sent as recent context
        """
        self.llm_client = llm_client
        self.save_store = save_store
        self.prompt_builder = prompt_builder
        self.parser = parser
        self.compactor = compactor
        self.recent_window = recent_window
        self.session = GameSession()

    @property
    def settings(self) -> LLMSettings:
        return self.llm_client.settings

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def restore(self) -> None:
        """Load persisted settings and the saved game, if any.

        A missing or unreadable save starts a fresh session.
        """
        stored_settings = self.save_store.load_settings()
        snapshot = self.save_store.restore()

        if stored_settings is not None:
            self.llm_client.configure(stored_settings)
        elif snapshot is not None and snapshot.settings is not None and snapshot.settings.api_key:
            self.llm_client.configure(snapshot.settings)

        if snapshot is None:
            self.session = GameSession()
            logger.info("No saved game found, starting fresh")
            return

        self.session = GameSession.from_snapshot(snapshot)
        logger.info(
            "Restored saved game",
            session_id=self.session.session_id,
            history_length=len(self.session.turn_log),
            summarized_count=self.session.compacted_through
        )

    def new_game(self) -> None:
        """Discard the current session and the persisted save."""
        self._ensure_idle()
        self.session = GameSession()
        self._clear_save()
        logger.info("Session reset for a new game", session_id=self.session.session_id)

    def view(self) -> SessionView:
        """Read-only view of the current session."""
        session = self.session
        return SessionView(
            session_id=session.session_id,
            phase=session.phase,
            started=session.started,
            game_over=session.terminal,
            character=session.character,
            history=list(session.turn_log),
            summary=session.summary,
            summarized_count=session.compacted_through,
            choices=list(session.choices),
            event_art_keyword=session.event_art_keyword
        )

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def start_game(self, origin_id: str, custom_prompt: Optional[str] = None) -> TurnOutcome:
        """Reset to the initial state and request the opening scene.

        Args:
            origin_id: Start location identifier
            custom_prompt: Player-written origin (custom location only)

        Returns:
            TurnOutcome for the opening turn

        Raises:
            SessionBusyError: If a completion is in flight
            InvalidActionError: If the origin is unknown or no API key is
                configured; the current session and its save are left untouched
        """
        self._ensure_idle()
        location = get_start_location(origin_id)
        if location is None:
            raise InvalidActionError(f"未知的出生地: {origin_id}")
        if not self.llm_client.is_configured:
            raise InvalidActionError(NOT_CONFIGURED_NOTICE)

        prompt = None
        if location.id == CUSTOM_ORIGIN_ID:
            prompt = (custom_prompt or "").strip() or RANDOM_ORIGIN_PROMPT

        self.session = GameSession(started=True)
        self._bind_session()
        logger.info("Starting new game", origin=location.id)
        self.session.append(TurnRole.SYSTEM_NOTICE, START_NOTICE)

        messages = self.prompt_builder.build_opening_messages(location, prompt)
        return await self._run_turn(messages, OPENING_FAILURE_NOTICE, "opening")

    async def submit_action(self, text: str) -> TurnOutcome:
        """Play a free-text player action.

        Raises:
            SessionBusyError: If a completion is in flight
            GameOverError: If the game has ended
            InvalidActionError: If the action is blank
        """
        self._ensure_playable()
        action = (text or "").strip()
        if not action:
            raise InvalidActionError("行动内容不能为空")

        window = self.session.recent_window(self.recent_window)
        messages = self.prompt_builder.build_turn_messages(
            self.session.character, window, self.session.summary, action
        )
        self.session.append(TurnRole.PLAYER, action)
        return await self._run_turn(messages, TURN_FAILURE_NOTICE, "action")

    async def request_hint(self) -> TurnOutcome:
        """Ask for guidance based on the current realm.

        Hints stay available after the game ended.

        Raises:
            SessionBusyError: If a completion is in flight
            InvalidActionError: If no game has been started
        """
        self._ensure_idle()
        self._ensure_started()

        window = self.session.recent_window(self.recent_window)
        instruction = self.prompt_builder.hint_instruction(self.session.character.realm)
        messages = self.prompt_builder.build_turn_messages(
            self.session.character, window, self.session.summary, instruction
        )
        self.session.append(TurnRole.SYSTEM_NOTICE, HINT_NOTICE)
        return await self._run_turn(messages, TURN_FAILURE_NOTICE, "hint")

    async def identify_item(self, item_name: str) -> TurnOutcome:
        """Ask the model to fill in the details of an inventory item.

        Raises:
            SessionBusyError: If a completion is in flight
            GameOverError: If the game has ended
            InvalidActionError: If the item is not in the inventory
        """
        self._ensure_playable()
        name = (item_name or "").strip()
        if name not in self.session.character.inventory:
            raise InvalidActionError(f"背包中没有【{name}】")

        window = self.session.recent_window(self.recent_window)
        instruction = self.prompt_builder.identify_instruction(name)
        messages = self.prompt_builder.build_turn_messages(
            self.session.character, window, self.session.summary, instruction
        )
        self.session.append(TurnRole.SYSTEM_NOTICE, IDENTIFY_NOTICE.format(item=name))
        return await self._run_turn(messages, TURN_FAILURE_NOTICE, "identify")

    async def _run_turn(
        self,
        messages: List[ChatMessage],
        failure_notice: str,
        kind: str
    ) -> TurnOutcome:
        session = self.session
        self._bind_session()

        if not self.llm_client.is_configured:
            return self._fail(session, NOT_CONFIGURED_NOTICE, kind)

        session.busy = True
        session.choices = []
        try:
            with MetricsTimer("turn"), PhaseTimer(f"{kind} completion", logger):
                raw_reply = await self.llm_client.complete(messages, response_format="json")
        except LLMClientError as e:
            session.busy = False
            return self._fail(session, failure_notice.format(error=redact_secrets(str(e))), kind)

        try:
            parsed = self.parser.parse(raw_reply)
            result = parsed.result
            session.character = reconcile(session.character, result.character_update)
            session.append(TurnRole.NARRATOR, result.narrative if result.narrative.strip() else SILENT_NARRATIVE)
            session.choices = list(result.choices)
            session.event_art_keyword = result.event_art_keyword

            if result.game_over and not session.terminal:
                session.terminal = True
                logger.info("Game reached a terminal state", turn_kind=kind)
                self._clear_save()
            elif not session.terminal:
                self._persist(session)
        finally:
            session.busy = False

        if (collector := get_metrics_collector()):
            collector.record_event(f"turn_{kind}")

        logger.info(
            "Turn completed",
            turn_kind=kind,
            parse_stage=parsed.stage,
            history_length=len(session.turn_log),
            game_over=session.terminal
        )
        return TurnOutcome(
            succeeded=True,
            character=session.character,
            narrative=session.turn_log[-1].content,
            choices=list(session.choices),
            game_over=session.terminal,
            event_art_keyword=session.event_art_keyword,
            parse_stage=parsed.stage
        )

    def _fail(self, session: GameSession, notice: str, kind: str) -> TurnOutcome:
        session.append(TurnRole.SYSTEM_NOTICE, notice)
        if not session.terminal:
            self._persist(session)
        if (collector := get_metrics_collector()):
            collector.record_event(f"turn_{kind}_failed")
        logger.warning("Turn failed", turn_kind=kind, notice=notice)
        return TurnOutcome(
            succeeded=False,
            character=session.character,
            notice=notice,
            choices=list(session.choices),
            game_over=session.terminal,
            event_art_keyword=session.event_art_keyword
        )

    # ------------------------------------------------------------------
    # Memory compaction
    # ------------------------------------------------------------------

    async def run_compaction(self) -> bool:
        """Fold old turns into the summary if due.

        A result is applied only if the session was not replaced while the
        summary was being generated.

        Returns:
            True if the summary and watermark advanced
        """
        session = self.session
        result = await self.compactor.maybe_compact(
            list(session.turn_log),
            session.summary,
            session.compacted_through,
            busy=session.busy,
            terminal=session.terminal
        )
        if result is None:
            return False
        if session is not self.session:
            logger.info("Discarding compaction result for a replaced session")
            return False

        session.summary = result.summary
        session.compacted_through = result.watermark
        if not session.terminal:
            self._persist(session)
        return True

    # ------------------------------------------------------------------
    # Settings and save files
    # ------------------------------------------------------------------

    def update_settings(self, settings: LLMSettings) -> None:
        """Switch the completion endpoint and persist the choice.

        Raises:
            SaveStoreError: If the settings cannot be written
        """
        self.llm_client.configure(settings)
        self.save_store.save_settings(settings)

    async def test_connection(self, settings: LLMSettings) -> Tuple[bool, str]:
        """Check candidate settings without applying them."""
        return await self.llm_client.test_connection(settings)

    def export_save(self) -> Tuple[str, str]:
        """Render the current session as a save file.

        Raises:
            InvalidActionError: If no game has been started
        """
        self._ensure_started()
        return self.save_store.export_snapshot(self.session.to_snapshot(self.settings))

    def import_save(self, text: str) -> SessionView:
        """Replace the session with an uploaded save file.

        Settings carried by the file are applied; an empty API key keeps the
        current one.

        Raises:
            SessionBusyError: If a completion is in flight
            SaveImportError: If the file is not a valid snapshot
        """
        self._ensure_idle()
        snapshot = self.save_store.import_snapshot(text)

        if snapshot.settings is not None:
            settings = snapshot.settings
            if not settings.api_key:
                settings = settings.model_copy(update={"api_key": self.settings.api_key})
            self.update_settings(settings)

        self.session = GameSession.from_snapshot(snapshot)
        self._bind_session()
        if not self.session.terminal:
            self._persist(self.session)
        logger.info("Imported save", history_length=len(self.session.turn_log))
        return self.view()

    # ------------------------------------------------------------------
    # Guards and persistence helpers
    # ------------------------------------------------------------------

    def _ensure_idle(self) -> None:
        if self.session.busy:
            raise SessionBusyError("天道推演中，请稍候")

    def _ensure_started(self) -> None:
        if not self.session.started:
            raise InvalidActionError("尚未开始游戏")

    def _ensure_playable(self) -> None:
        self._ensure_idle()
        self._ensure_started()
        if self.session.terminal:
            raise GameOverError("道途已终，请开启新的轮回")

    def _bind_session(self) -> None:
        set_session_id(self.session.session_id)

    def _persist(self, session: GameSession) -> None:
        try:
            self.save_store.persist(session.to_snapshot(self.settings))
        except SaveStoreError as e:
            logger.error("Auto-save failed", error=str(e))

    def _clear_save(self) -> None:
        try:
            self.save_store.clear()
        except SaveStoreError as e:
            logger.error("Failed to clear save", error=str(e))
