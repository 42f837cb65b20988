"""FastAPI app factory.

Thin HTTP layer over the engine: the Enroll API, manual stop, the inbound
reply webhook and a cron-style scheduler tick.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .contracts import EnrollmentError, WorkflowEnrollment
from .engine import WorkflowEngine
from .errors import (
    DuplicateEnrollmentError,
    EnrollmentNotFoundError,
    WorkflowDisabledError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)

logger = logging.getLogger(__name__)


class EnrollRequest(BaseModel):
    contact_ids: List[str] = Field(default_factory=list)
    skip_duplicates: bool = True


class EnrollResponse(BaseModel):
    workflow_id: str
    total: int
    enrolled: int
    skipped: int
    failed: int
    errors: List[EnrollmentError]
    message: str


class StopRequest(BaseModel):
    reason: str = "Stopped manually"


class ReplyEvent(BaseModel):
    contact_id: str
    channel: Literal["sms", "email"]


def create_app(engine: Optional[WorkflowEngine] = None) -> FastAPI:
    engine = engine or WorkflowEngine.from_config()

    app = FastAPI(
        title="enrollflow",
        description="Workflow enrollment and execution engine.",
    )
    app.state.engine = engine

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/workflows/{workflow_id}/enroll", response_model=EnrollResponse)
    async def enroll(workflow_id: str, req: EnrollRequest) -> EnrollResponse:
        if not req.contact_ids:
            raise HTTPException(status_code=400, detail="contact_ids must be a non-empty list")
        limit = engine.config.max_enroll_batch
        if len(req.contact_ids) > limit:
            raise HTTPException(
                status_code=400, detail=f"Cannot enroll more than {limit} contacts at once"
            )
        try:
            result = await engine.enrollments.enroll_contacts(
                workflow_id, req.contact_ids, skip_duplicates=req.skip_duplicates
            )
        except WorkflowNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except (WorkflowDisabledError, WorkflowValidationError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        message = f"Enrolled {result.enrolled} contact(s)"
        if result.skipped:
            message += f", {result.skipped} skipped (already enrolled)"
        if result.failed:
            message += f", {result.failed} failed"
        return EnrollResponse(
            workflow_id=workflow_id,
            total=result.total,
            enrolled=result.enrolled,
            skipped=result.skipped,
            failed=result.failed,
            errors=result.errors,
            message=message,
        )

    @app.get("/workflows/{workflow_id}/enroll")
    async def enrollment_status(
        workflow_id: str, contact_id: Optional[str] = None
    ) -> Dict[str, Any]:
        if contact_id is not None:
            enrollment = await engine.enrollments.find_enrollment(workflow_id, contact_id)
            return {
                "enrolled": enrollment is not None and enrollment.status == "active",
                "enrollment": enrollment.model_dump(mode="json") if enrollment else None,
            }
        try:
            counts = await engine.enrollments.enrollment_counts(workflow_id)
        except WorkflowNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"workflow_id": workflow_id, "counts": counts}

    @app.get("/enrollments/{enrollment_id}", response_model=WorkflowEnrollment)
    async def get_enrollment(enrollment_id: str) -> WorkflowEnrollment:
        try:
            return await engine.enrollments.get_enrollment(enrollment_id)
        except EnrollmentNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post("/enrollments/{enrollment_id}/stop")
    async def stop_enrollment(
        enrollment_id: str, req: Optional[StopRequest] = None
    ) -> Dict[str, Any]:
        reason = req.reason if req else StopRequest().reason
        try:
            stopped = await engine.enrollments.stop_enrollment(enrollment_id, reason)
        except EnrollmentNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        if not stopped:
            raise HTTPException(status_code=409, detail="Enrollment has already ended")
        return {"enrollment_id": enrollment_id, "stopped": True}

    @app.post("/enrollments/{enrollment_id}/pause")
    async def pause_enrollment(enrollment_id: str) -> Dict[str, Any]:
        try:
            paused = await engine.enrollments.pause_enrollment(enrollment_id)
        except EnrollmentNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"enrollment_id": enrollment_id, "paused": paused}

    @app.post("/enrollments/{enrollment_id}/resume")
    async def resume_enrollment(enrollment_id: str) -> Dict[str, Any]:
        try:
            resumed = await engine.enrollments.resume_enrollment(enrollment_id)
        except EnrollmentNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except DuplicateEnrollmentError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"enrollment_id": enrollment_id, "resumed": resumed}

    @app.post("/webhooks/replies")
    async def reply_received(event: ReplyEvent) -> Dict[str, Any]:
        flagged = await engine.enrollments.on_reply_received(event.contact_id, event.channel)
        return {"flagged": flagged}

    @app.post("/scheduler/tick")
    async def scheduler_tick() -> Dict[str, Any]:
        summary = await engine.tick()
        return summary.as_dict()

    return app
