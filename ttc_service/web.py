"""FastAPI application exposing the TT&C gateway.

Run with ``uvicorn --factory ttc_service.web:create_app``.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ttc_core.baseline import BaselineScorer
from ttc_core.persistence import ModelStore
from ttc_core.pipeline import STATUS_DENIED, STATUS_FORWARD_ERROR, CommandPipeline, PipelineResult
from ttc_core.policy import PolicyEngine
from ttc_core.state import CommandContext
from ttc_core.windows import WindowDetector

from .clients import SatelliteClient, SOCAuditClient
from .config import Settings, get_settings
from .models import CommandRequest, CommandResponse, PolicyRuleInfo, PolicyRulesEnvelope

logger = logging.getLogger(__name__)


def build_pipeline(settings: Settings) -> tuple[CommandPipeline, List[Callable[[], None]]]:
    """Wire the core pipeline to its HTTP collaborators.

    Returns the pipeline and the close callbacks of the clients it owns.
    """

    closers: List[Callable[[], None]] = []

    forwarder = SatelliteClient(settings.satellite_sim_url, timeout=settings.forward_timeout)
    closers.append(forwarder.close)

    audit = None
    if settings.space_soc_url:
        audit = SOCAuditClient(
            settings.space_soc_url,
            timeout=settings.audit_timeout,
            retries=settings.audit_retries,
        )
        closers.append(audit.close)
    else:
        logger.info("SPACE_SOC_URL not set; audit events are only logged locally")

    store = None
    if settings.model_path is not None:
        store = ModelStore(settings.model_path, secret=settings.model_encryption_key)

    pipeline = CommandPipeline(
        policy=PolicyEngine(),
        windows=WindowDetector(settings.window_config()),
        scorer=BaselineScorer(settings.scorer_config(), store=store),
        forwarder=forwarder,
        audit=audit,
        forward_timeout=settings.forward_timeout,
        audit_timeout=settings.audit_timeout,
        component=settings.service_name,
    )
    return pipeline, closers


def _http_status(result: PipelineResult) -> int:
    if result.status == STATUS_DENIED:
        return 403
    if result.status == STATUS_FORWARD_ERROR:
        return 504 if result.outcome is not None and result.outcome.timed_out else 502
    return 200


def _build_router(settings: Settings, pipeline: CommandPipeline) -> APIRouter:
    router = APIRouter()

    def resolve_role(authorization: Optional[str] = Header(default=None)) -> str:
        if not authorization:
            raise HTTPException(status_code=401, detail="missing bearer token")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise HTTPException(status_code=401, detail="malformed authorization header")
        return settings.role_for_token(token.strip())

    @router.get("/health")
    def health() -> dict:
        return {"status": "ok", "service": settings.service_name}

    # Plain ``def`` so that FastAPI runs each request on its worker thread pool.
    @router.post("/command", response_model=CommandResponse)
    def submit_command(payload: CommandRequest, role: str = Depends(resolve_role)) -> JSONResponse:
        deadline = None
        if settings.request_deadline is not None:
            deadline = time.monotonic() + settings.request_deadline

        context = CommandContext(
            command=payload.command,
            operator_role=role,
            satellite_id=payload.satellite_id or "",
            mission_phase=settings.mission_phase,
        )
        result = pipeline.process(context, payload.params, deadline=deadline)
        response = CommandResponse.model_validate(result.as_response())
        return JSONResponse(
            status_code=_http_status(result),
            content=response.model_dump(mode="json", by_alias=True),
        )

    @router.get("/api/v1/model/stats")
    def model_stats() -> dict:
        return {
            "scorer": pipeline.scorer.statistics(),
            "windows": pipeline.windows.snapshot(),
        }

    @router.get("/api/v1/policy/rules", response_model=PolicyRulesEnvelope)
    def policy_rules() -> PolicyRulesEnvelope:
        return PolicyRulesEnvelope(
            missionPhase=settings.mission_phase.value,
            rules=[PolicyRuleInfo(**rule) for rule in pipeline.policy.describe()],
        )

    return router


def create_app(settings: Optional[Settings] = None, *, pipeline: Optional[CommandPipeline] = None) -> FastAPI:
    settings = settings or get_settings()
    closers: List[Callable[[], None]] = []
    if pipeline is None:
        pipeline, closers = build_pipeline(settings)

    app = FastAPI(title="TT&C Security Gateway", version="0.1.0")
    app.state.settings = settings
    app.state.pipeline = pipeline
    app.include_router(_build_router(settings, pipeline))

    @app.exception_handler(RequestValidationError)
    async def _invalid_payload(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [{"loc": list(error.get("loc", ())), "msg": error.get("msg", "")} for error in exc.errors()]
        return JSONResponse(status_code=400, content={"error": "invalid request payload", "detail": errors})

    @app.on_event("shutdown")
    def _shutdown() -> None:
        pipeline.close()
        for close in closers:
            close()

    logger.info(
        "TT&C gateway ready (mission phase %s, satellite %s, Space-SOC %s)",
        settings.mission_phase.value,
        settings.satellite_sim_url,
        settings.space_soc_url or "disabled",
    )
    return app


__all__ = ["build_pipeline", "create_app"]
