"""FastAPI application for the merge-gates REST API.

Exposes the review gate, coverage gate, and bug SLA operations to CI jobs,
webhook handlers, and schedulers. Supports optional API key authentication.

Usage:
    uvicorn api.app:create_app --factory
"""

from __future__ import annotations

import importlib.metadata
import logging
from datetime import datetime
from pathlib import Path

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from api.schemas import (
    BlockDeploymentRequest,
    BlockDeploymentResponse,
    BypassRequest,
    ErrorResponse,
    HealthResponse,
    NewCodeRequest,
    QualityGateRequest,
    TestFailuresRequest,
)
from gate.services import GateServices, build_services
from shared.config import load_config
from shared.errors import AuthorizationError, DisabledError, GateError, NotFoundError, StoreError
from shared.models import (
    BugRecord,
    EfficiencyComparison,
    EfficiencyStats,
    EmergencyBypassRecord,
    EmergencyBypassResult,
    GateDecision,
    NewCodeResult,
    QualityGateStats,
    ReviewCoverageStats,
    TestFailureResult,
    TimeoutScanResult,
)

logger = logging.getLogger(__name__)

_ERROR_STATUS: list[tuple[type[GateError], int, str]] = [
    (NotFoundError, 404, "not_found"),
    (AuthorizationError, 403, "unauthorized"),
    (DisabledError, 409, "disabled"),
    (StoreError, 503, "store_unavailable"),
]


# --- Configuration ---


class APIConfig:
    """API configuration with sensible defaults.

    Attributes:
        api_key: Optional API key for authentication. Empty string disables auth.
        config_path: Optional path to a merge-gates YAML config.
    """

    def __init__(self, api_key: str = "", config_path: str = "") -> None:
        self.api_key = api_key
        self.config_path = config_path


# --- App factory ---


def create_app(
    config: APIConfig | None = None,
    services: GateServices | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: API configuration. Uses defaults if not provided.
        services: Pre-built gate services. Built from config lazily if not provided.

    Returns:
        Configured FastAPI app.
    """
    if config is None:
        config = APIConfig()

    try:
        version = importlib.metadata.version("merge-gates")
    except importlib.metadata.PackageNotFoundError:
        version = "0.1.0"

    app = FastAPI(
        title="merge-gates API",
        description="Merge and release quality gates for source-control events.",
        version=version,
        responses={
            401: {"model": ErrorResponse},
            403: {"model": ErrorResponse},
            404: {"model": ErrorResponse},
            409: {"model": ErrorResponse},
        },
    )
    app.state.config = config
    if services is not None:
        app.state.services = services

    # --- Error mapping ---

    @app.exception_handler(GateError)
    async def gate_error_handler(request: Request, exc: GateError) -> JSONResponse:
        for error_type, status_code, category in _ERROR_STATUS:
            if isinstance(exc, error_type):
                break
        else:
            status_code, category = 500, "gate_error"
        if status_code >= 500:
            logger.error("Request %s failed: %s", request.url.path, exc, exc_info=exc)
            detail = "Gate store unavailable." if isinstance(exc, StoreError) else "Gate error."
        else:
            detail = str(exc)
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(detail=detail, category=category).model_dump(),
        )

    # --- Dependencies ---

    async def verify_api_key(
        request: Request,
        x_api_key: str | None = Header(default=None),
    ) -> None:
        """Verify API key if authentication is configured."""
        cfg: APIConfig = request.app.state.config
        if not cfg.api_key:
            return  # Auth disabled
        if x_api_key != cfg.api_key:
            raise HTTPException(status_code=401, detail="Invalid or missing API key.")

    def get_services() -> GateServices:
        if not hasattr(app.state, "services"):
            path = Path(config.config_path) if config.config_path else None
            app.state.services = build_services(load_config(config_path=path))
        return app.state.services

    auth = [Depends(verify_api_key)]

    # --- Routes ---

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(status="ok", version=version)

    @app.post(
        "/merge-requests/{mr_id}/evaluate", response_model=GateDecision, dependencies=auth
    )
    def evaluate_merge(mr_id: str) -> GateDecision:
        """Evaluate review policy for a merge request."""
        return get_services().review.evaluate_merge(mr_id)

    @app.post(
        "/merge-requests/{mr_id}/bypass",
        response_model=EmergencyBypassResult,
        dependencies=auth,
    )
    def authorize_bypass(mr_id: str, req: BypassRequest) -> EmergencyBypassResult:
        """Authorize an emergency bypass (admins only)."""
        return get_services().review.authorize_emergency_bypass(mr_id, req.user_id, req.reason)

    @app.get(
        "/merge-requests/{mr_id}/bypasses",
        response_model=list[EmergencyBypassRecord],
        dependencies=auth,
    )
    def list_bypasses(mr_id: str) -> list[EmergencyBypassRecord]:
        return get_services().review.list_bypasses(mr_id)

    @app.get(
        "/projects/{project_id}/review-coverage",
        response_model=ReviewCoverageStats,
        dependencies=auth,
    )
    def review_coverage(project_id: str, start: datetime, end: datetime) -> ReviewCoverageStats:
        return get_services().review.calculate_review_coverage(project_id, start, end)

    @app.post("/coverage/quality-gate", response_model=GateDecision, dependencies=auth)
    def quality_gate(req: QualityGateRequest) -> GateDecision:
        """Check a commit's coverage against thresholds."""
        return get_services().coverage.check_quality_gate(
            req.project_id,
            req.commit_id,
            req.line_threshold,
            req.branch_threshold,
            req.function_threshold,
        )

    @app.post("/coverage/new-code", response_model=NewCodeResult, dependencies=auth)
    def new_code(req: NewCodeRequest) -> NewCodeResult:
        return get_services().coverage.check_new_code_coverage(
            req.project_id, req.commit_id, req.new_code_lines
        )

    @app.post("/coverage/test-failures", response_model=TestFailureResult, dependencies=auth)
    def test_failures(req: TestFailuresRequest) -> TestFailureResult:
        return get_services().coverage.check_test_failures(
            req.project_id, req.commit_id, req.test_results
        )

    @app.post("/deployments/block", response_model=BlockDeploymentResponse, dependencies=auth)
    def block_deployment(req: BlockDeploymentRequest) -> BlockDeploymentResponse:
        get_services().coverage.block_deployment(req.project_id, req.commit_id, req.reason)
        return BlockDeploymentResponse(project_id=req.project_id, commit_id=req.commit_id)

    @app.get(
        "/projects/{project_id}/quality-gate-stats",
        response_model=QualityGateStats,
        dependencies=auth,
    )
    def quality_gate_stats(project_id: str, start: datetime, end: datetime) -> QualityGateStats:
        return get_services().coverage.get_quality_gate_stats(project_id, start, end)

    @app.post("/bugs/sla-scan", response_model=TimeoutScanResult, dependencies=auth)
    def sla_scan() -> TimeoutScanResult:
        """Run one bug SLA scan now."""
        return get_services().bug_sla.scan_for_timeouts()

    @app.get("/bugs/efficiency", response_model=EfficiencyStats, dependencies=auth)
    def efficiency(
        start: datetime,
        end: datetime,
        project_id: str | None = None,
        assignee_id: str | None = None,
    ) -> EfficiencyStats:
        return get_services().bug_sla.calculate_efficiency(project_id, assignee_id, start, end)

    @app.get(
        "/bugs/efficiency/compare", response_model=EfficiencyComparison, dependencies=auth
    )
    def compare_efficiency(
        period1_start: datetime,
        period1_end: datetime,
        period2_start: datetime,
        period2_end: datetime,
        project_id: str | None = None,
    ) -> EfficiencyComparison:
        return get_services().bug_sla.compare_efficiency(
            project_id, (period1_start, period1_end), (period2_start, period2_end)
        )

    @app.get("/bugs/long-pending", response_model=list[BugRecord], dependencies=auth)
    def long_pending(project_id: str | None = None, hours: int = 72) -> list[BugRecord]:
        return get_services().bug_sla.get_long_pending_bugs(project_id, hours)

    return app
