from __future__ import annotations

"""HTTP API surface for local QuestBox operations."""

import logging
from typing import Any, Literal
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .catalog import CatalogError
from .rewards import RewardPurchaseError
from .service import QuestBoxService, QuestUnavailableError
from .telemetry import VALID_SOURCES, sanitize_actor_id

_LOGGER = logging.getLogger(__name__)

PIN_FIELD_PATTERN = r"^\d{4}$"
REWARD_ERROR_STATUS = {
    "REWARD_INSUFFICIENT_XP": 400,
    "REWARD_APPROVAL_REQUIRED": 403,
    "REWARD_LIMIT_REACHED": 409,
}


class CompletionRequest(BaseModel):
    task_id: str = Field(min_length=1, max_length=128)
    actor_id: str | None = Field(default=None, max_length=200)


class TimerRequest(BaseModel):
    task_id: str = Field(min_length=1, max_length=128)
    action: Literal["start", "pause", "resume", "reset"]
    actor_id: str | None = Field(default=None, max_length=200)


class PurchaseRequest(BaseModel):
    """Reward purchase; `pin` is only needed for rewards that need approval."""

    reward_id: str = Field(min_length=1, max_length=128)
    pin: str | None = Field(default=None, pattern=PIN_FIELD_PATTERN)
    actor_id: str | None = Field(default=None, max_length=200)


class ResetRequest(BaseModel):
    pin: str = Field(pattern=PIN_FIELD_PATTERN)
    actor_id: str | None = Field(default=None, max_length=200)


class ResetAllRequest(BaseModel):
    confirm: bool = False
    actor_id: str | None = Field(default=None, max_length=200)


class RewardLimitModel(BaseModel):
    type: Literal["daily", "weekly", "monthly", "none"] = "none"
    count: int | None = None


class CustomRewardRequest(BaseModel):
    """Guardian-created reward, approved with the acting profile's PIN."""

    profile_id: str
    pin: str = Field(pattern=PIN_FIELD_PATTERN)
    name: str = Field(max_length=120)
    description: str = Field(default="", max_length=500)
    cost: int
    limit: RewardLimitModel = Field(default_factory=RewardLimitModel)
    needs_approval: bool = False


class TaskUpdateRequest(BaseModel):
    profile_id: str
    pin: str = Field(pattern=PIN_FIELD_PATTERN)
    name: str | None = Field(default=None, max_length=120)
    description: str | None = Field(default=None, max_length=500)
    xp: int | None = None
    difficulty: Literal["easy", "medium", "hard"] | None = None


def error_response(exc: Exception, trace_id: str) -> JSONResponse:
    """Map service exceptions to stable status codes and JSON bodies."""

    if isinstance(exc, RewardPurchaseError):
        status = REWARD_ERROR_STATUS.get(exc.code, 400)
        return JSONResponse(status_code=status, content={**exc.to_dict(), "trace_id": trace_id})
    if isinstance(exc, QuestUnavailableError):
        status = 409 if exc.code == "QUEST_UNAVAILABLE" else 400
        return JSONResponse(status_code=status, content={**exc.to_dict(), "trace_id": trace_id})
    if isinstance(exc, CatalogError):
        return JSONResponse(status_code=400, content={**exc.to_dict(), "trace_id": trace_id})
    if isinstance(exc, PermissionError):
        return JSONResponse(status_code=403, content={"code": "PIN_REJECTED", "message": str(exc), "trace_id": trace_id})
    if isinstance(exc, KeyError):
        message = exc.args[0] if exc.args else "Not found"
        return JSONResponse(status_code=404, content={"code": "NOT_FOUND", "message": str(message), "trace_id": trace_id})
    return JSONResponse(status_code=400, content={"code": "BAD_REQUEST", "message": str(exc), "trace_id": trace_id})


def create_app(service: QuestBoxService) -> FastAPI:
    """Create API routes backed by `QuestBoxService` with source/actor attribution."""

    app = FastAPI(title="QuestBox API", version="0.1")

    @app.middleware("http")
    async def trace_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
        incoming = (request.headers.get("x-questbox-trace-id") or "").strip()
        trace_id = sanitize_actor_id(incoming) if incoming else f"api:{uuid4()}"
        if not trace_id or trace_id == "unknown":
            trace_id = f"api:{uuid4()}"
        request.state.trace_id = trace_id
        try:
            response = await call_next(request)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.exception("Unhandled error serving %s", request.url.path)
            service.telemetry.log_event(
                "risk.flagged",
                actor="system",
                actor_id="api:unknown",
                source="api",
                trace_id=trace_id,
                data={
                    "reason": "api_internal_error",
                    "endpoint": request.url.path,
                    "error_type": exc.__class__.__name__,
                },
            )
            response = JSONResponse(
                status_code=500,
                content={"code": "INTERNAL_SERVER_ERROR", "message": "Internal server error", "trace_id": trace_id},
            )
        response.headers["X-Questbox-Trace-Id"] = trace_id
        return response

    def request_context(request: Request, body_actor_id: str | None = None) -> tuple[str, str | None, str]:
        """Resolve `(source, actor_id, trace_id)` with header precedence."""

        source = request.headers.get("x-questbox-source", "api").strip().lower()
        if source not in VALID_SOURCES:
            source = "api"
        header_actor_id = (request.headers.get("x-questbox-actor-id") or "").strip()
        actor_id = header_actor_id or (body_actor_id or "").strip() or None
        trace_id = getattr(request.state, "trace_id", None)
        if not isinstance(trace_id, str) or not trace_id:
            trace_id = f"api:{uuid4()}"
        return source, actor_id, trace_id

    @app.get("/v1/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "version": "0.1",
            "store": service.store.last_load_status,
            "profiles": len(service.config.profiles),
        }

    @app.get("/v1/profiles")
    def list_profiles() -> list[dict[str, Any]]:
        return service.list_profiles()

    @app.get("/v1/profiles/{profile_id}/progress")
    def get_progress(profile_id: str) -> dict[str, Any]:
        try:
            return service.get_progress(profile_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/v1/profiles/{profile_id}/quests")
    def list_quests(profile_id: str) -> dict[str, Any]:
        try:
            return service.list_quests(profile_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/v1/profiles/{profile_id}/rewards")
    def list_rewards(profile_id: str) -> dict[str, Any]:
        try:
            return service.list_rewards(profile_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/v1/profiles/{profile_id}/scorecard")
    def get_scorecard(profile_id: str) -> dict[str, Any]:
        try:
            return service.get_scorecard(profile_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post("/v1/profiles/{profile_id}/completions")
    def complete_task(profile_id: str, body: CompletionRequest, request: Request) -> Any:
        source, actor_id, trace_id = request_context(request, body.actor_id)
        try:
            return service.complete_task(
                profile_id, body.task_id, source=source, actor_id=actor_id, trace_id=trace_id
            )
        except (KeyError, ValueError) as exc:
            return error_response(exc, trace_id)

    @app.post("/v1/profiles/{profile_id}/timers")
    def update_timer(profile_id: str, body: TimerRequest, request: Request) -> Any:
        source, actor_id, trace_id = request_context(request, body.actor_id)
        handlers = {
            "start": service.start_timer,
            "pause": service.pause_timer,
            "resume": service.resume_timer,
            "reset": service.reset_timer,
        }
        try:
            return handlers[body.action](
                profile_id, body.task_id, source=source, actor_id=actor_id, trace_id=trace_id
            )
        except (KeyError, ValueError) as exc:
            return error_response(exc, trace_id)

    @app.post("/v1/profiles/{profile_id}/purchases")
    def purchase_reward(profile_id: str, body: PurchaseRequest, request: Request) -> Any:
        source, actor_id, trace_id = request_context(request, body.actor_id)
        try:
            return service.purchase_reward(
                profile_id, body.reward_id, pin=body.pin, source=source, actor_id=actor_id, trace_id=trace_id
            )
        except (KeyError, ValueError, PermissionError) as exc:
            return error_response(exc, trace_id)

    @app.post("/v1/profiles/{profile_id}/reset")
    def reset_profile(profile_id: str, body: ResetRequest, request: Request) -> Any:
        source, actor_id, trace_id = request_context(request, body.actor_id)
        try:
            return service.reset_profile(profile_id, body.pin, source=source, actor_id=actor_id, trace_id=trace_id)
        except (KeyError, PermissionError) as exc:
            return error_response(exc, trace_id)

    @app.post("/v1/reset-all")
    def reset_all(body: ResetAllRequest, request: Request) -> Any:
        header_confirm = (request.headers.get("x-questbox-confirm") or "").strip().lower() == "true"
        if not (body.confirm and header_confirm):
            raise HTTPException(
                status_code=400,
                detail="Reset-all requires body confirm=true and header X-Questbox-Confirm: true.",
            )
        source, actor_id, trace_id = request_context(request, body.actor_id)
        return service.reset_all(confirm=True, source=source, actor_id=actor_id, trace_id=trace_id)

    @app.get("/v1/leaderboard")
    def leaderboard() -> list[dict[str, Any]]:
        return service.leaderboard()

    @app.get("/v1/export")
    def export_progress() -> dict[str, Any]:
        return service.export_progress()

    @app.get("/v1/catalog")
    def list_catalog() -> dict[str, Any]:
        return service.list_catalog()

    @app.post("/v1/catalog/generated/tasks")
    def add_generated_task(payload: dict[str, Any], request: Request) -> Any:
        source, actor_id, trace_id = request_context(request)
        try:
            return service.add_generated_task(payload, source=source, actor_id=actor_id, trace_id=trace_id)
        except CatalogError as exc:
            return error_response(exc, trace_id)

    @app.post("/v1/catalog/generated/rewards")
    def add_generated_reward(payload: dict[str, Any], request: Request) -> Any:
        source, actor_id, trace_id = request_context(request)
        try:
            return service.add_generated_reward(payload, source=source, actor_id=actor_id, trace_id=trace_id)
        except CatalogError as exc:
            return error_response(exc, trace_id)

    @app.post("/v1/catalog/rewards")
    def add_custom_reward(body: CustomRewardRequest, request: Request) -> Any:
        source, actor_id, trace_id = request_context(request)
        payload = {
            "name": body.name,
            "description": body.description,
            "cost": body.cost,
            "limit": body.limit.model_dump(exclude_none=True),
            "needsApproval": body.needs_approval,
        }
        try:
            return service.add_custom_reward(
                body.profile_id, payload, body.pin, source=source, actor_id=actor_id, trace_id=trace_id
            )
        except (KeyError, ValueError, PermissionError) as exc:
            return error_response(exc, trace_id)

    @app.patch("/v1/catalog/tasks/{task_id}")
    def update_task(task_id: str, body: TaskUpdateRequest, request: Request) -> Any:
        source, actor_id, trace_id = request_context(request)
        changes = body.model_dump(exclude_none=True, exclude={"profile_id", "pin"})
        try:
            return service.update_task(
                body.profile_id, task_id, changes, body.pin, source=source, actor_id=actor_id, trace_id=trace_id
            )
        except (KeyError, ValueError, PermissionError) as exc:
            return error_response(exc, trace_id)

    return app
