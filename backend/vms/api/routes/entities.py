"""Visitor (entity) administration routes."""

from typing import List

from fastapi import APIRouter, BackgroundTasks

from vms.api.deps import ActorRole, WorkflowDep
from vms.api.routes.visits import visit_response
from vms.schemas.entity import EntityCreate, EntityResponse, EntityStatusUpdate, EntityUpdate
from vms.schemas.visit import VisitResponse

router = APIRouter()


@router.post("/", response_model=EntityResponse, status_code=201)
def create_entity(data: EntityCreate, workflow: WorkflowDep, actor_role: ActorRole):
    return workflow.entities.create_entity(data, actor_role)


@router.get("/{entity_id}", response_model=EntityResponse)
def get_entity(entity_id: int, workflow: WorkflowDep, actor_role: ActorRole):
    return workflow.entities.get_entity(entity_id, actor_role)


@router.patch("/{entity_id}", response_model=EntityResponse)
def update_entity(entity_id: int, data: EntityUpdate, workflow: WorkflowDep, actor_role: ActorRole):
    return workflow.entities.update_entity(entity_id, data, actor_role)


@router.delete("/{entity_id}", status_code=204)
def delete_entity(entity_id: int, workflow: WorkflowDep, actor_role: ActorRole):
    """Delete a visitor with no visit history. Refused otherwise."""
    workflow.entities.delete_entity(entity_id, actor_role)


@router.put("/{entity_id}/status", response_model=EntityResponse)
def set_entity_status(
    entity_id: int,
    data: EntityStatusUpdate,
    workflow: WorkflowDep,
    actor_role: ActorRole,
    background_tasks: BackgroundTasks,
):
    """Ban, suspend or reinstate a visitor; pending visits follow."""
    entity = workflow.set_entity_status(entity_id, data.status, actor_role)
    background_tasks.add_task(workflow.dispatch)
    return entity


@router.get("/{entity_id}/visits", response_model=List[VisitResponse])
def list_entity_visits(entity_id: int, workflow: WorkflowDep, actor_role: ActorRole):
    today = workflow.clock.today()
    return [
        visit_response(row["visit"], today)
        for row in workflow.entities.list_visits(entity_id, actor_role)
    ]
