"""Visit routes: registration, attendance and cancellation."""

from datetime import date
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Request

from vms.api.deps import ActorRole, WorkflowDep
from vms.core.config import settings
from vms.core.errors import NotFoundError
from vms.core.policy import Permission
from vms.core.rate_limit import limiter
from vms.db.session import DbSession
from vms.models.visit import Visit
from vms.schemas.visit import (
    QuotaSummary,
    RegistrationResponse,
    SignInRequest,
    VisitRegistration,
    VisitResponse,
)
from vms.services.visit_status import display_status

router = APIRouter()


def visit_response(visit: Visit, today: date) -> VisitResponse:
    response = VisitResponse.model_validate(visit)
    response.display_status = display_status(visit, today)
    return response


@router.post("/", response_model=RegistrationResponse, status_code=201)
@limiter.limit(settings.registration_rate_limit)
def register_visit(
    request: Request,
    body: VisitRegistration,
    workflow: WorkflowDep,
    actor_role: ActorRole,
    background_tasks: BackgroundTasks,
):
    """Register a visit, creating the visitor on first registration."""
    result = workflow.register_visit(body, actor_role)
    background_tasks.add_task(workflow.dispatch)
    return RegistrationResponse(
        visit=visit_response(result.visit, workflow.clock.today()),
        entity_id=result.entity.id,
        entity_created=result.entity_created,
        capacity_pending=result.capacity_pending,
        quota=QuotaSummary(
            monthly_count=result.quota.monthly_count,
            yearly_count=result.quota.yearly_count,
            host_daily_count=result.quota.host_daily_count,
            reasons=result.quota.reasons,
        ),
    )


@router.get("/{visit_id}", response_model=VisitResponse)
def get_visit(visit_id: int, db: DbSession, workflow: WorkflowDep, actor_role: ActorRole):
    workflow.capabilities.require(actor_role, Permission.VISIT_VIEW)
    visit = db.get(Visit, visit_id)
    if visit is None:
        raise NotFoundError(f"Visit {visit_id} not found")
    return visit_response(visit, workflow.clock.today())


@router.post("/{visit_id}/sign-in", response_model=VisitResponse)
def sign_in(
    visit_id: int,
    workflow: WorkflowDep,
    actor_role: ActorRole,
    background_tasks: BackgroundTasks,
    body: Optional[SignInRequest] = None,
):
    body = body or SignInRequest()
    visit = workflow.sign_in(visit_id, actor_role, body.id_number, body.visit_purpose)
    background_tasks.add_task(workflow.dispatch)
    return visit_response(visit, workflow.clock.today())


@router.post("/{visit_id}/sign-out", response_model=VisitResponse)
def sign_out(visit_id: int, workflow: WorkflowDep, actor_role: ActorRole, background_tasks: BackgroundTasks):
    visit = workflow.sign_out(visit_id, actor_role)
    background_tasks.add_task(workflow.dispatch)
    return visit_response(visit, workflow.clock.today())


@router.post("/{visit_id}/cancel", response_model=VisitResponse)
def cancel_visit(visit_id: int, workflow: WorkflowDep, actor_role: ActorRole, background_tasks: BackgroundTasks):
    visit = workflow.cancel_visit(visit_id, actor_role)
    background_tasks.add_task(workflow.dispatch)
    return visit_response(visit, workflow.clock.today())
