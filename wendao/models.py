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
"""Pydantic models for the Wendao game service.

This module defines the canonical character state, the untrusted
state-update (delta) shape proposed by the model, the parsed turn result,
turn-log entries, save snapshots and the HTTP request/response schemas.

Wire names are camelCase because that is what the model emits and what save
files contain; Python attributes are snake_case and both are accepted on
input.
"""

import json
import math
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from wendao.config import DEFAULT_LLM_BASE_URL, DEFAULT_LLM_MODEL, normalize_base_url

# Internal version constant for save snapshot evolution
SAVE_VERSION = 2

NONE_SENTINEL = "无"
DEFAULT_ATTRIBUTE_VALUE = 10
DEFAULT_ART_KEYWORD = "mystery"


class CharacterAttribute(str, Enum):
    """Closed set of character attributes accepted into canonical state."""
    STRENGTH = "根骨"
    WISDOM = "悟性"
    AGILITY = "身法"
    LUCK = "机缘"
    CHARISMA = "魅力"
    WILLPOWER = "道心"


ATTRIBUTE_NAMES = tuple(attribute.value for attribute in CharacterAttribute)

# (current, max) pairs; bound repair keeps max >= current for each of them
PROGRESS_PAIRS = (
    ("cultivation", "max_cultivation"),
    ("body_refinement", "max_body_refinement"),
)
RESOURCE_PAIRS = (
    ("health", "max_health"),
    ("mana", "max_mana"),
    ("soul", "max_soul"),
)
BOUNDED_PAIRS = PROGRESS_PAIRS + RESOURCE_PAIRS

CURRENCY_FIELD = "spirit_stones"
NUMERIC_FIELDS = tuple(
    name for pair in BOUNDED_PAIRS for name in pair
) + (CURRENCY_FIELD,)
TEXT_FIELDS = ("name", "realm", "body_realm")
LIST_FIELDS = ("inventory", "techniques", "status_effects")
EQUIPMENT_SLOTS = ("weapon", "armor", "relic")


def coerce_int(value: Any) -> Optional[int]:
    """Coerce an untrusted scalar to int, or None when it is not numeric.

    Finite floats are truncated toward zero and numeric strings are parsed.
    Booleans are rejected even though they subclass int.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            return None
        return int(number) if math.isfinite(number) else None
    return None


def coerce_text_item(value: Any) -> Optional[str]:
    """Coerce an untrusted list element or slot value to a string.

    Mappings collapse to their ``name`` entry when present (the model
    sometimes emits items as objects); other values use their string form.
    Returns None for nulls and blank strings.
    """
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        return text or None
    if isinstance(value, dict):
        name = value.get("name")
        if name is not None and str(name).strip():
            return str(name).strip()
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, (list, tuple)):
        return json.dumps(list(value), ensure_ascii=False)
    return str(value)


def coerce_text_list(value: Any) -> List[str]:
    """Coerce an untrusted sequence to a list of strings, dropping blanks."""
    if not isinstance(value, (list, tuple)):
        return []
    items = []
    for element in value:
        text = coerce_text_item(element)
        if text is not None:
            items.append(text)
    return items


class WireModel(BaseModel):
    """Base model using camelCase wire names and accepting snake_case."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True
    )


# ============================================================================
# Canonical Game State
# ============================================================================


class EquipmentState(WireModel):
    """The three fixed equipment slots.

    Attributes:
        weapon: Primary weapon (武器)
        armor: Body armor (防具)
        relic: Special trinket actively wielded (法宝)
    """
    weapon: str = NONE_SENTINEL
    armor: str = "布衣"
    relic: str = NONE_SENTINEL

    @field_validator("weapon", "armor", "relic", mode="before")
    @classmethod
    def coerce_slot(cls, v: Any) -> str:
        return coerce_text_item(v) or NONE_SENTINEL


class ItemDetails(WireModel):
    """Identified item record. An item without an entry is unidentified.

    Attributes:
        rank: Rank tier (e.g. 黄阶下品)
        description: Flavor description
        effects: Effect descriptions
        requirements: Usage requirements
    """
    rank: str = ""
    description: str = ""
    effects: List[str] = Field(default_factory=list)
    requirements: List[str] = Field(default_factory=list)

    @field_validator("rank", "description", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> str:
        return coerce_text_item(v) or ""

    @field_validator("effects", "requirements", mode="before")
    @classmethod
    def coerce_lines(cls, v: Any) -> List[str]:
        if isinstance(v, str):
            return [v] if v.strip() else []
        return coerce_text_list(v)


def _default_attributes() -> Dict[str, int]:
    return {name: DEFAULT_ATTRIBUTE_VALUE for name in ATTRIBUTE_NAMES}


class CharacterState(WireModel):
    """Canonical character record owned by the turn orchestrator.

    Defaults describe a freshly reincarnated mortal, so ``CharacterState()``
    is the fixed initial state of every new game. Older saves that lack newer
    fields load with these defaults.
    """
    name: str = "修仙者"
    realm: str = "凡人"
    body_realm: str = "凡胎"

    cultivation: int = 0
    max_cultivation: int = 100
    body_refinement: int = 0
    max_body_refinement: int = 100

    health: int = 100
    max_health: int = 100
    mana: int = 50
    max_mana: int = 50
    soul: int = 30
    max_soul: int = 30

    spirit_stones: int = Field(default=0, ge=0)

    attributes: Dict[str, int] = Field(default_factory=_default_attributes)
    inventory: List[str] = Field(default_factory=list)
    item_knowledge: Dict[str, ItemDetails] = Field(default_factory=dict)
    equipment: EquipmentState = Field(default_factory=EquipmentState)
    techniques: List[str] = Field(default_factory=list)
    status_effects: List[str] = Field(default_factory=list)

    @field_validator("attributes", mode="before")
    @classmethod
    def restrict_attributes(cls, v: Any) -> Dict[str, int]:
        """Keep only closed-set attributes, filling missing ones with defaults."""
        attributes = _default_attributes()
        if isinstance(v, dict):
            for key, raw in v.items():
                value = coerce_int(raw)
                if key in attributes and value is not None:
                    attributes[key] = value
        return attributes

    @field_validator("inventory", "techniques", "status_effects", mode="before")
    @classmethod
    def coerce_lists(cls, v: Any) -> List[str]:
        return coerce_text_list(v)


class CharacterUpdate(WireModel):
    """Partial state update proposed by the model.

    Every field is optional: an absent field means "unchanged", never zero.
    Values that cannot be coerced to the field type are dropped (become
    None) instead of failing validation. Mappings and lists stay loose here;
    the reconciler applies the attribute whitelist and element sanitizing.
    """
    name: Optional[str] = None
    realm: Optional[str] = None
    body_realm: Optional[str] = None

    cultivation: Optional[int] = None
    max_cultivation: Optional[int] = None
    body_refinement: Optional[int] = None
    max_body_refinement: Optional[int] = None
    health: Optional[int] = None
    max_health: Optional[int] = None
    mana: Optional[int] = None
    max_mana: Optional[int] = None
    soul: Optional[int] = None
    max_soul: Optional[int] = None
    spirit_stones: Optional[int] = None

    attributes: Optional[Dict[str, Any]] = None
    inventory: Optional[List[Any]] = None
    item_knowledge: Optional[Dict[str, Any]] = None
    equipment: Optional[Dict[str, Any]] = None
    techniques: Optional[List[Any]] = None
    status_effects: Optional[List[Any]] = None

    @field_validator(*NUMERIC_FIELDS, mode="before")
    @classmethod
    def coerce_numeric(cls, v: Any) -> Optional[int]:
        return coerce_int(v)

    @field_validator(*TEXT_FIELDS, mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> Optional[str]:
        if isinstance(v, (str, int, float)) and not isinstance(v, bool):
            return str(v)
        return None

    @field_validator("attributes", "item_knowledge", "equipment", mode="before")
    @classmethod
    def coerce_mapping(cls, v: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(v, dict):
            return None
        return {str(key): value for key, value in v.items()}

    @field_validator(*LIST_FIELDS, mode="before")
    @classmethod
    def coerce_sequence(cls, v: Any) -> Optional[List[Any]]:
        if isinstance(v, (list, tuple)):
            return list(v)
        return None


class TurnResult(WireModel):
    """Structured result of one model turn (the parser's output).

    Attributes:
        narrative: Narrative text shown to the player (may be empty on total failure)
        character_update: Proposed partial state update
        choices: Suggested next actions
        game_over: Whether the story reached a terminal state
        event_art_keyword: Visual keyword for the scene illustration
    """
    narrative: str = ""
    character_update: CharacterUpdate = Field(default_factory=CharacterUpdate)
    choices: List[str] = Field(default_factory=list)
    game_over: bool = False
    event_art_keyword: str = DEFAULT_ART_KEYWORD

    @field_validator("narrative", mode="before")
    @classmethod
    def coerce_narrative(cls, v: Any) -> str:
        if v is None:
            return ""
        return v if isinstance(v, str) else str(v)

    @field_validator("character_update", mode="before")
    @classmethod
    def coerce_update(cls, v: Any) -> Any:
        if isinstance(v, (dict, CharacterUpdate)):
            return v
        return {}

    @field_validator("choices", mode="before")
    @classmethod
    def coerce_choices(cls, v: Any) -> List[str]:
        return coerce_text_list(v)

    @field_validator("game_over", mode="before")
    @classmethod
    def coerce_game_over(cls, v: Any) -> bool:
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            return v.strip().lower() == "true"
        return False

    @field_validator("event_art_keyword", mode="before")
    @classmethod
    def coerce_keyword(cls, v: Any) -> str:
        text = coerce_text_item(v) if not isinstance(v, (dict, list)) else None
        return text or DEFAULT_ART_KEYWORD


# ============================================================================
# Turn Log, Settings and Save Snapshot
# ============================================================================


class TurnRole(str, Enum):
    """Author of a turn-log entry."""
    PLAYER = "player"
    NARRATOR = "narrator"
    SYSTEM_NOTICE = "system-notice"


# Roles written by earlier save formats
LEGACY_ROLES = {
    "user": TurnRole.PLAYER,
    "assistant": TurnRole.NARRATOR,
    "model": TurnRole.NARRATOR,
    "system": TurnRole.SYSTEM_NOTICE,
}


class TurnEntry(WireModel):
    """One entry of the append-only turn log."""
    role: TurnRole
    content: str

    @field_validator("role", mode="before")
    @classmethod
    def map_legacy_role(cls, v: Any) -> Any:
        if isinstance(v, str) and v in LEGACY_ROLES:
            return LEGACY_ROLES[v]
        return v

    @field_validator("content", mode="before")
    @classmethod
    def coerce_content(cls, v: Any) -> str:
        if v is None:
            return ""
        return v if isinstance(v, str) else str(v)


class LLMSettings(WireModel):
    """Completion endpoint settings chosen by the player.

    Attributes:
        base_url: OpenAI-compatible base URL
        api_key: Credential sent as a bearer token
        model: Model identifier
    """
    base_url: str = DEFAULT_LLM_BASE_URL
    api_key: str = ""
    model: str = DEFAULT_LLM_MODEL

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        v = v.strip()
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError(f"baseUrl must start with http:// or https://, got: {v}")
        return normalize_base_url(v)

    @field_validator("api_key", "model")
    @classmethod
    def strip_value(cls, v: str) -> str:
        return v.strip()

    @property
    def is_configured(self) -> bool:
        """Whether a credential has been provided."""
        return bool(self.api_key)


class SaveData(WireModel):
    """Persisted snapshot of a game session.

    ``character`` and ``history`` are required; everything else defaults so
    snapshots written by older versions still load.
    """
    version: int = SAVE_VERSION
    character: CharacterState
    history: List[TurnEntry]
    summary: str = ""
    summarized_count: int = Field(default=0, ge=0)
    timestamp: int = 0
    settings: Optional[LLMSettings] = None
    game_over: bool = False
    choices: List[str] = Field(default_factory=list)
    event_art_keyword: str = DEFAULT_ART_KEYWORD

    @model_validator(mode="after")
    def clamp_watermark(self) -> "SaveData":
        if self.summarized_count > len(self.history):
            self.summarized_count = len(self.history)
        return self


class StartLocation(WireModel):
    """A selectable origin for a new game."""
    id: str
    name: str
    description: str
    bonus: str
    type: Literal["combat", "alchemy", "social", "balanced", "custom"]


# ============================================================================
# HTTP API Models
# ============================================================================


class StartGameRequest(WireModel):
    """Request to start a new game from an origin."""
    origin_id: str = Field(
        ...,
        min_length=1,
        description="Start location identifier",
        examples=["sect", "custom"]
    )
    custom_prompt: Optional[str] = Field(
        None,
        max_length=2000,
        description="Player-written origin, only used with the custom origin"
    )


class ActionRequest(WireModel):
    """Free-text player action."""
    action: str = Field(
        ...,
        min_length=1,
        max_length=2000,
        description="Player's action or intent for this turn",
        examples=["闭关修炼三月"]
    )


class IdentifyRequest(WireModel):
    """Request to identify an inventory item."""
    item_name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Inventory item to identify"
    )


class ImportSaveRequest(WireModel):
    """Save file content to import."""
    content: str = Field(
        ...,
        min_length=1,
        description="JSON text of an exported save file"
    )


class TurnOutcomeResponse(WireModel):
    """Result of one orchestrated turn.

    Attributes:
        succeeded: False when the completion call failed (see notice)
        narrative: Narrator text, empty when the turn failed
        notice: System notice appended for a failed turn
        choices: Suggested next actions
        game_over: Whether the game reached a terminal state
        event_art_keyword: Visual keyword for the scene
        character: Canonical state after reconciliation
    """
    succeeded: bool
    narrative: str = ""
    notice: Optional[str] = None
    choices: List[str] = Field(default_factory=list)
    game_over: bool = False
    event_art_keyword: str = DEFAULT_ART_KEYWORD
    character: CharacterState


class SessionView(WireModel):
    """Read-only view of the current game session."""
    session_id: str
    phase: Literal["idle", "awaiting-completion"]
    started: bool
    game_over: bool
    character: CharacterState
    history: List[TurnEntry]
    summary: str
    summarized_count: int
    choices: List[str]
    event_art_keyword: str


class SettingsView(WireModel):
    """Completion endpoint settings without the credential."""
    base_url: str
    model: str
    api_key_set: bool
    stub_mode: bool = False


class ConnectionTestResponse(WireModel):
    """Outcome of a completion endpoint connection test."""
    success: bool
    message: str


class HealthResponse(BaseModel):
    """Response model for health check endpoint.

    Attributes:
        status: Service status ("healthy" or "degraded")
        service: Service name
        llm_configured: Whether a completion credential is available
    """
    status: str = Field(
        ...,
        description="Service health status",
        examples=["healthy", "degraded"]
    )
    service: str = Field(
        default="wendao",
        description="Service name"
    )
    llm_configured: bool = Field(
        False,
        description="Whether a completion endpoint credential is configured"
    )


class ErrorDetail(BaseModel):
    """Structured error response model.

    Attributes:
        type: Machine-readable error type
        message: Human-readable error message
        request_id: Request correlation ID (if available)
    """
    type: str = Field(
        ...,
        description="Machine-readable error type",
        examples=["session_busy", "game_over", "invalid_save"]
    )
    message: str = Field(
        ...,
        description="Human-readable error message"
    )
    request_id: Optional[str] = Field(
        None,
        description="Request correlation ID for tracking"
    )


class ErrorResponse(BaseModel):
    """Error response wrapper."""
    error: ErrorDetail = Field(
        ...,
        description="Error details"
    )


class DebugParseRequest(BaseModel):
    """Request model for debug parse endpoint.

    Attributes:
        llm_response: Raw completion text to parse
        trace_id: Optional trace ID for request correlation
    """
    llm_response: str = Field(
        ...,
        description="Raw completion text to run through the parser",
        min_length=1
    )
    trace_id: Optional[str] = Field(
        default="debug-request",
        description="Optional trace ID for request tracking"
    )
