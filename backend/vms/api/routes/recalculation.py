"""Manual recalculation and sweep triggers."""

from fastapi import APIRouter, BackgroundTasks

from vms.api.deps import ActorRole, WorkflowDep
from vms.schemas.visit import (
    BulkRecalculationResponse,
    RecalculationResponse,
    StatusChangeResponse,
    SweepResponse,
)

router = APIRouter()


@router.post("/entities/{entity_id}", response_model=RecalculationResponse)
def recalculate_entity(
    entity_id: int, workflow: WorkflowDep, actor_role: ActorRole, background_tasks: BackgroundTasks
):
    result = workflow.recalculate_entity(entity_id, actor_role)
    background_tasks.add_task(workflow.dispatch)
    return RecalculationResponse(
        entity_id=result.entity_id,
        changes=[
            StatusChangeResponse(
                visit_id=c.visit_id,
                old_status=c.old_status,
                new_status=c.new_status,
                cause=c.cause.value,
                reasons=list(c.reasons),
            )
            for c in result.changes
        ],
        entity_old_status=result.entity_change.old_status if result.entity_change else None,
        entity_new_status=result.entity_change.new_status if result.entity_change else None,
    )


@router.post("/run", response_model=BulkRecalculationResponse)
def recalculate_all(workflow: WorkflowDep, actor_role: ActorRole, background_tasks: BackgroundTasks):
    """Recalculate every visitor. Same work as the nightly job."""
    result = workflow.recalculate_all(actor_role)
    background_tasks.add_task(workflow.dispatch)
    return BulkRecalculationResponse(
        entities=result.entities,
        changes=result.changes,
        entity_status_changes=result.entity_status_changes,
        failures=result.failures,
    )


@router.post("/sign-out-sweep", response_model=SweepResponse)
def sign_out_sweep(workflow: WorkflowDep, actor_role: ActorRole):
    return SweepResponse(signed_out=workflow.sign_out_sweep(actor_role))
