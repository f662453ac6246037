"""Request and response schemas for the merge-gates REST API."""

from __future__ import annotations

from pydantic import BaseModel, Field

from shared.models import TestResults


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = ""


class ErrorResponse(BaseModel):
    detail: str
    category: str = ""


class BypassRequest(BaseModel):
    """Request an emergency bypass for a merge request."""

    user_id: str = Field(min_length=1)
    reason: str = ""


class QualityGateRequest(BaseModel):
    project_id: str
    commit_id: str
    line_threshold: float | None = None
    branch_threshold: float | None = None
    function_threshold: float | None = None


class NewCodeRequest(BaseModel):
    project_id: str
    commit_id: str
    new_code_lines: int = 0


class TestFailuresRequest(BaseModel):
    __test__ = False

    project_id: str
    commit_id: str
    test_results: TestResults


class BlockDeploymentRequest(BaseModel):
    project_id: str
    commit_id: str
    reason: str = Field(min_length=1)


class BlockDeploymentResponse(BaseModel):
    project_id: str
    commit_id: str
    blocked: bool = True
