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
"""API route handlers for the Wendao game service.

This module defines the HTTP endpoints:
- GET /health: Service health check
- GET /metrics: Service metrics (optional, requires ENABLE_METRICS=true)
- GET /origins: Selectable start locations
- GET /game: Current session view
- POST /game/start, /game/action, /game/hint, /game/identify: Play turns
- POST /game/new: Discard the session and the save
- GET /game/export, POST /game/import: Save file round trip
- GET /settings, PUT /settings, POST /settings/test: Completion endpoint settings
- POST /debug/parse: Debug endpoint for reply parsing (optional, requires
  ENABLE_DEBUG_ENDPOINTS=true)

Turn endpoints schedule memory compaction as a background task that runs
after the response has been sent, when the orchestrator is idle again.
"""

from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Response, status

from wendao.config import Settings, get_settings
from wendao.game_data import START_LOCATIONS
from wendao.logging import StructuredLogger, get_request_id, sanitize_for_log
from wendao.metrics import get_metrics_collector
from wendao.models import (
    ActionRequest,
    ConnectionTestResponse,
    DebugParseRequest,
    HealthResponse,
    IdentifyRequest,
    ImportSaveRequest,
    LLMSettings,
    SessionView,
    SettingsView,
    StartGameRequest,
    StartLocation,
    TurnOutcomeResponse,
)
from wendao.services.llm_client import LLMClient
from wendao.services.response_parser import ResponseParser
from wendao.services.save_store import SaveImportError, SaveStoreError
from wendao.services.turn_orchestrator import (
    TurnOrchestrator,
    TurnOutcome,
    TurnRejectedError,
)

logger = StructuredLogger(__name__)

router = APIRouter()

_REJECTION_STATUS = {
    "session_busy": status.HTTP_409_CONFLICT,
    "game_over": status.HTTP_409_CONFLICT,
    "invalid_action": status.HTTP_400_BAD_REQUEST,
}


def create_error_response(
    error_type: str,
    message: str,
    status_code: int
) -> HTTPException:
    """Create a structured error response.

    Args:
        error_type: Machine-readable error type
        message: Human-readable error message
        status_code: HTTP status code

    Returns:
        HTTPException with structured error detail
    """
    request_id = get_request_id()

    error_detail = {
        "error": {
            "type": error_type,
            "message": message,
            "request_id": request_id if request_id else None
        }
    }

    return HTTPException(
        status_code=status_code,
        detail=error_detail
    )


def rejection_response(error: TurnRejectedError) -> HTTPException:
    """Map a rejected operation onto a structured HTTP error."""
    if (collector := get_metrics_collector()):
        collector.record_event(f"rejected_{error.error_type}")
    return create_error_response(
        error_type=error.error_type,
        message=str(error),
        status_code=_REJECTION_STATUS.get(error.error_type, status.HTTP_400_BAD_REQUEST)
    )


def get_turn_orchestrator() -> TurnOrchestrator:
    """Dependency that provides the TurnOrchestrator owning the game session.

    This is a placeholder that must be overridden by the application.
    The application lifespan in main.py provides the actual implementation.

    Raises:
        NotImplementedError: If not overridden by the application
    """
    raise NotImplementedError(
        "get_turn_orchestrator dependency must be overridden. "
        "This should be configured in wendao.main module."
    )


def get_llm_client() -> LLMClient:
    """Dependency that provides the LLMClient.

    This is a placeholder that must be overridden by the application.

    Raises:
        NotImplementedError: If not overridden by the application
    """
    raise NotImplementedError(
        "get_llm_client dependency must be overridden. "
        "This should be configured in wendao.main module."
    )


def to_response(outcome: TurnOutcome) -> TurnOutcomeResponse:
    return TurnOutcomeResponse(
        succeeded=outcome.succeeded,
        narrative=outcome.narrative,
        notice=outcome.notice,
        choices=outcome.choices,
        game_over=outcome.game_over,
        event_art_keyword=outcome.event_art_keyword,
        character=outcome.character
    )


# ============================================================================
# Game Endpoints
# ============================================================================


@router.get(
    "/origins",
    response_model=List[StartLocation],
    response_model_by_alias=True,
    summary="List start locations"
)
async def list_origins() -> List[StartLocation]:
    """Return the selectable start locations."""
    return START_LOCATIONS


@router.get(
    "/game",
    response_model=SessionView,
    response_model_by_alias=True,
    summary="Current game session"
)
async def get_game(
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator)
) -> SessionView:
    """Return the character, turn log, choices and session flags."""
    return orchestrator.view()


@router.post(
    "/game/start",
    response_model=TurnOutcomeResponse,
    response_model_by_alias=True,
    summary="Start a new game",
    responses={
        400: {"description": "Unknown start location"},
        409: {"description": "A turn is already in progress"},
    }
)
async def start_game(
    request: StartGameRequest,
    background_tasks: BackgroundTasks,
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator)
) -> TurnOutcomeResponse:
    """Reset to the initial character and generate the opening scene.

    The custom start location uses ``customPrompt`` (or a random origin when
    it is blank).
    """
    logger.info("Processing start request", origin=sanitize_for_log(request.origin_id, 32))
    try:
        outcome = await orchestrator.start_game(request.origin_id, request.custom_prompt)
    except TurnRejectedError as e:
        raise rejection_response(e) from e
    background_tasks.add_task(orchestrator.run_compaction)
    return to_response(outcome)


@router.post(
    "/game/action",
    response_model=TurnOutcomeResponse,
    response_model_by_alias=True,
    summary="Play a player action",
    responses={
        200: {
            "description": "Turn processed (check 'succeeded' for completion failures)",
            "content": {
                "application/json": {
                    "example": {
                        "succeeded": True,
                        "narrative": "春去秋来，山中不知岁月……",
                        "notice": None,
                        "choices": ["继续闭关", "出关查看"],
                        "gameOver": False,
                        "eventArtKeyword": "mountain cave"
                    }
                }
            }
        },
        400: {"description": "Blank action or no game started"},
        409: {"description": "A turn is in progress or the game has ended"},
    }
)
async def submit_action(
    request: ActionRequest,
    background_tasks: BackgroundTasks,
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator)
) -> TurnOutcomeResponse:
    """Process a free-text player action.

    A completion failure is not an HTTP error: it is reported as a system
    notice in the turn log and in the response, and state is unchanged.
    """
    logger.info("Processing action request", action_preview=sanitize_for_log(request.action, 50))
    try:
        outcome = await orchestrator.submit_action(request.action)
    except TurnRejectedError as e:
        raise rejection_response(e) from e
    background_tasks.add_task(orchestrator.run_compaction)
    return to_response(outcome)


@router.post(
    "/game/hint",
    response_model=TurnOutcomeResponse,
    response_model_by_alias=True,
    summary="Ask for a hint"
)
async def request_hint(
    background_tasks: BackgroundTasks,
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator)
) -> TurnOutcomeResponse:
    """Ask the game master for guidance based on the current realm."""
    try:
        outcome = await orchestrator.request_hint()
    except TurnRejectedError as e:
        raise rejection_response(e) from e
    background_tasks.add_task(orchestrator.run_compaction)
    return to_response(outcome)


@router.post(
    "/game/identify",
    response_model=TurnOutcomeResponse,
    response_model_by_alias=True,
    summary="Identify an inventory item"
)
async def identify_item(
    request: IdentifyRequest,
    background_tasks: BackgroundTasks,
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator)
) -> TurnOutcomeResponse:
    """Spend spiritual sense to learn an item's rank, effects and requirements."""
    try:
        outcome = await orchestrator.identify_item(request.item_name)
    except TurnRejectedError as e:
        raise rejection_response(e) from e
    background_tasks.add_task(orchestrator.run_compaction)
    return to_response(outcome)


@router.post(
    "/game/new",
    response_model=SessionView,
    response_model_by_alias=True,
    summary="Discard the current game"
)
async def new_game(
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator)
) -> SessionView:
    """Clear the session and the persisted save. Available after game over."""
    try:
        orchestrator.new_game()
    except TurnRejectedError as e:
        raise rejection_response(e) from e
    return orchestrator.view()


@router.get(
    "/game/export",
    summary="Download the current game as a save file"
)
async def export_save(
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator)
) -> Response:
    """Return the session snapshot as a JSON attachment (API key omitted)."""
    try:
        filename, content = orchestrator.export_save()
    except TurnRejectedError as e:
        raise rejection_response(e) from e
    return Response(
        content=content,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )


@router.post(
    "/game/import",
    response_model=SessionView,
    response_model_by_alias=True,
    summary="Load a save file",
    responses={
        400: {"description": "Invalid save file"},
        409: {"description": "A turn is in progress"},
    }
)
async def import_save(
    request: ImportSaveRequest,
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator)
) -> SessionView:
    """Replace the current session with an uploaded snapshot."""
    try:
        return orchestrator.import_save(request.content)
    except TurnRejectedError as e:
        raise rejection_response(e) from e
    except SaveImportError as e:
        logger.warning("Rejected save import", error=str(e))
        if (collector := get_metrics_collector()):
            collector.record_event("invalid_save")
        raise create_error_response(
            error_type="invalid_save",
            message=str(e),
            status_code=status.HTTP_400_BAD_REQUEST
        ) from e
    except SaveStoreError as e:
        logger.error("Failed to store imported save", error=str(e))
        raise create_error_response(
            error_type="storage_error",
            message="Failed to store the imported save",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
        ) from e


# ============================================================================
# Settings Endpoints
# ============================================================================


def settings_view(llm_client: LLMClient) -> SettingsView:
    return SettingsView(
        base_url=llm_client.settings.base_url,
        model=llm_client.settings.model,
        api_key_set=llm_client.settings.is_configured,
        stub_mode=llm_client.stub_mode
    )


@router.get(
    "/settings",
    response_model=SettingsView,
    response_model_by_alias=True,
    summary="Current completion endpoint settings"
)
async def get_endpoint_settings(
    llm_client: LLMClient = Depends(get_llm_client)
) -> SettingsView:
    """Return the endpoint settings. The API key itself is never returned."""
    return settings_view(llm_client)


@router.put(
    "/settings",
    response_model=SettingsView,
    response_model_by_alias=True,
    summary="Update completion endpoint settings"
)
async def update_endpoint_settings(
    request: LLMSettings,
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
    llm_client: LLMClient = Depends(get_llm_client)
) -> SettingsView:
    """Apply and persist new endpoint settings."""
    try:
        orchestrator.update_settings(request)
    except SaveStoreError as e:
        logger.error("Failed to persist settings", error=str(e))
        raise create_error_response(
            error_type="storage_error",
            message="Settings were applied but could not be saved",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
        ) from e
    return settings_view(llm_client)


@router.post(
    "/settings/test",
    response_model=ConnectionTestResponse,
    summary="Test completion endpoint settings"
)
async def test_endpoint_settings(
    request: LLMSettings,
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator)
) -> ConnectionTestResponse:
    """Send a minimal request with the candidate settings without applying them."""
    success, message = await orchestrator.test_connection(request)
    return ConnectionTestResponse(success=success, message=message)


# ============================================================================
# Operational Endpoints
# ============================================================================


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Health check endpoint",
    description=(
        "Check service health status. Returns 'degraded' while no completion "
        "endpoint credential is configured, since turns cannot be played."
    )
)
async def health_check(
    llm_client: LLMClient = Depends(get_llm_client),
    settings: Settings = Depends(get_settings)
) -> HealthResponse:
    """Health check endpoint.

    Args:
        llm_client: LLM client (injected)
        settings: Application settings (injected)

    Returns:
        HealthResponse with status and credential availability
    """
    logger.debug("Health check requested")
    configured = llm_client.is_configured
    return HealthResponse(
        status="healthy" if configured else "degraded",
        service=settings.service_name,
        llm_configured=configured
    )


@router.get(
    "/metrics",
    status_code=status.HTTP_200_OK,
    summary="Metrics endpoint",
    description=(
        "Get service metrics including request counts, event counters, latencies "
        "and parse conformance. Only available when ENABLE_METRICS is true."
    ),
    responses={404: {"description": "Metrics disabled"}}
)
async def get_metrics(settings: Settings = Depends(get_settings)):
    """Get service metrics.

    Raises:
        HTTPException: If metrics are disabled
    """
    if not settings.enable_metrics:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Metrics endpoint is disabled. Set ENABLE_METRICS=true to enable."
        )

    collector = get_metrics_collector()
    if not collector:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Metrics collector not initialized"
        )

    return collector.get_metrics()


@router.post(
    "/debug/parse",
    status_code=status.HTTP_200_OK,
    summary="Debug endpoint to test reply parsing",
    description=(
        "Run raw model output through the response parser and return the "
        "structured result with the stage that produced it. Only available "
        "when ENABLE_DEBUG_ENDPOINTS is true."
    ),
    responses={404: {"description": "Debug endpoints disabled"}}
)
async def debug_parse(
    request: DebugParseRequest,
    settings: Settings = Depends(get_settings)
):
    """Debug endpoint to test reply parsing.

    This endpoint should NOT be enabled in production environments.

    Raises:
        HTTPException: If debug endpoints are disabled
    """
    if not settings.enable_debug_endpoints:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Debug endpoints are disabled. Set ENABLE_DEBUG_ENDPOINTS=true to enable."
        )

    parsed = ResponseParser().parse(request.llm_response, trace_id=request.trace_id)
    return {
        "is_valid": parsed.is_valid,
        "stage": parsed.stage,
        "error_type": parsed.error_type,
        "error_details": parsed.error_details,
        "result": parsed.result.model_dump(by_alias=True, exclude_none=True)
    }
