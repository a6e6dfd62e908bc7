# waflow/api/v1/flows.py
"""Conversation flow API endpoints"""
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from waflow.api.deps import get_owner_id
from waflow.core.errors import NotFoundError, ValidationError
from waflow.db.session import get_db
from waflow.models.flow import Flow
from waflow.schemas.flow import (
    ConnectionsUpdate,
    FlowCreate,
    FlowExecuteRequest,
    FlowResponse,
    FlowUpdate,
    FunctionsUpdate,
)
from waflow.schemas.function import FunctionRunResponse
from waflow.services.flow_engine import execute_function_node

log = logging.getLogger("waflow.api.flows")

router = APIRouter()


def flow_to_response(flow: Flow) -> Dict[str, Any]:
    return {
        "id": flow.id,
        "owner_id": flow.owner_id,
        "name": flow.name,
        "description": flow.description,
        "trigger": {
            "match_type": flow.trigger_match_type or "any",
            "match_text": flow.trigger_match_text or "",
        },
        "first_node": flow.first_node or "",
        "connections": flow.connections or [],
        "functions": flow.functions or [],
        "created_at": flow.created_at,
        "updated_at": flow.updated_at,
    }


def _get_flow(db: Session, owner_id: str, flow_id: int) -> Flow:
    flow = db.query(Flow).filter(
        Flow.id == flow_id,
        Flow.owner_id == owner_id
    ).first()
    if not flow:
        raise NotFoundError("Flow not found")
    return flow


def _dump(items) -> List[Dict[str, Any]]:
    return [item.model_dump() for item in items]


def _check_unique_names(functions) -> None:
    names = [f.name for f in functions]
    if len(names) != len(set(names)):
        raise ValidationError("Function names must be unique within a flow")


@router.get("", response_model=List[FlowResponse])
def list_flows(
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    """List flows, most recently updated first"""
    flows = db.query(Flow).filter(
        Flow.owner_id == owner_id
    ).order_by(Flow.updated_at.desc(), Flow.id.desc()).all()
    return [flow_to_response(f) for f in flows]


@router.post("", response_model=FlowResponse, status_code=201)
def create_flow(
    data: FlowCreate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    """
    Create a flow

    - **trigger**: match_type (any, includes, starts_with, exact) and match_text
    - **first_node**: template name, or `custom:<name>` for a custom message
    - **connections**: edges (source_node, button, target_type, target, next_node)
    - **functions**: functions embedded in the flow
    """
    flow = Flow(
        owner_id=owner_id,
        name=data.name,
        description=data.description,
        trigger_match_type=data.trigger.match_type,
        trigger_match_text=data.trigger.match_text,
        first_node=data.first_node or "",
        connections=_dump(data.connections),
        functions=_dump(data.functions),
    )
    db.add(flow)
    db.commit()
    db.refresh(flow)

    log.info(f"✅ Flow '{flow.name}' ({flow.id}) created for owner {owner_id}")
    return flow_to_response(flow)


@router.post("/execute", response_model=FunctionRunResponse)
async def execute_flow_function(
    data: FlowExecuteRequest,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    """Run a named function of a flow outside a conversation"""
    result, next_node = await execute_function_node(
        db,
        owner_id,
        data.function_name,
        data.input,
        context=data.context,
        flow_id=data.flow_id,
    )
    return FunctionRunResponse(
        output=result.output,
        logs=result.logs,
        duration_ms=result.duration_ms,
        next_node=next_node,
    )


@router.get("/{flow_id}", response_model=FlowResponse)
def get_flow(
    flow_id: int,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    return flow_to_response(_get_flow(db, owner_id, flow_id))


@router.put("/{flow_id}", response_model=FlowResponse)
def update_flow(
    flow_id: int,
    data: FlowUpdate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    """Update a flow (partial)"""
    flow = _get_flow(db, owner_id, flow_id)

    if data.name is not None:
        flow.name = data.name
    if data.description is not None:
        flow.description = data.description
    if data.trigger is not None:
        flow.trigger_match_type = data.trigger.match_type
        flow.trigger_match_text = data.trigger.match_text
    if data.first_node is not None:
        flow.first_node = data.first_node
    if data.connections is not None:
        flow.connections = _dump(data.connections)
    if data.functions is not None:
        _check_unique_names(data.functions)
        flow.functions = _dump(data.functions)

    db.commit()
    db.refresh(flow)
    return flow_to_response(flow)


@router.put("/{flow_id}/connections", response_model=FlowResponse)
def update_connections(
    flow_id: int,
    data: ConnectionsUpdate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    """Replace the connection list"""
    flow = _get_flow(db, owner_id, flow_id)
    flow.connections = _dump(data.connections)
    db.commit()
    db.refresh(flow)

    log.info(f"🔗 Flow {flow.id}: {len(data.connections)} connections saved")
    return flow_to_response(flow)


@router.put("/{flow_id}/functions", response_model=FlowResponse)
def update_functions(
    flow_id: int,
    data: FunctionsUpdate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    """Replace the embedded functions"""
    flow = _get_flow(db, owner_id, flow_id)
    _check_unique_names(data.functions)
    flow.functions = _dump(data.functions)
    db.commit()
    db.refresh(flow)
    return flow_to_response(flow)


@router.delete("/{flow_id}")
def delete_flow(
    flow_id: int,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    flow = _get_flow(db, owner_id, flow_id)
    db.delete(flow)
    db.commit()

    log.info(f"🗑️ Flow {flow_id} deleted")
    return {"message": "Flow deleted", "id": flow_id}
