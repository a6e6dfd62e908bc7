# waflow/api/v1/functions.py
"""Standalone function API endpoints and the sandbox test-run"""
import logging
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from waflow.api.deps import get_owner_id
from waflow.core.errors import DuplicateNameError, NotFoundError
from waflow.db.session import get_db
from waflow.models.function import FunctionDefinition
from waflow.schemas.function import (
    FunctionCreate,
    FunctionResponse,
    FunctionRunResponse,
    FunctionTestRequest,
    FunctionUpdate,
)
from waflow.services.sandbox import run_user_function

log = logging.getLogger("waflow.api.functions")

router = APIRouter()


def _get_function(db: Session, owner_id: str, function_id: int) -> FunctionDefinition:
    fn = db.query(FunctionDefinition).filter(
        FunctionDefinition.id == function_id,
        FunctionDefinition.owner_id == owner_id
    ).first()
    if not fn:
        raise NotFoundError("Function not found")
    return fn


def _name_taken(db: Session, owner_id: str, name: str, exclude_id: int = None) -> bool:
    query = db.query(FunctionDefinition).filter(
        FunctionDefinition.owner_id == owner_id,
        FunctionDefinition.name == name
    )
    if exclude_id is not None:
        query = query.filter(FunctionDefinition.id != exclude_id)
    return query.first() is not None


def _commit(db: Session, name: str) -> None:
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateNameError(f'A function named "{name}" already exists')


@router.get("", response_model=List[FunctionResponse])
def list_functions(
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    return db.query(FunctionDefinition).filter(
        FunctionDefinition.owner_id == owner_id
    ).order_by(FunctionDefinition.name).all()


@router.post("", response_model=FunctionResponse, status_code=201)
def create_function(
    data: FunctionCreate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    """
    Create a standalone function

    - **code**: Python source defining `handler(input, context)`
    - **input_key**: context key that receives the reply text
    - **timeout_ms**: clamped to the configured bounds
    """
    if _name_taken(db, owner_id, data.name):
        raise DuplicateNameError(f'A function named "{data.name}" already exists')

    fn = FunctionDefinition(
        owner_id=owner_id,
        name=data.name,
        description=data.description or "",
        code=data.code,
        input_key=data.input_key or "input",
        timeout_ms=data.timeout_ms,
        next_node=data.next_node or "",
    )
    db.add(fn)
    _commit(db, data.name)
    db.refresh(fn)

    log.info(f"✅ Function '{fn.name}' created for owner {owner_id}")
    return fn


@router.post("/test", response_model=FunctionRunResponse)
async def test_function(
    data: FunctionTestRequest,
    owner_id: str = Depends(get_owner_id)
):
    """Run code through the sandbox without saving it"""
    context = {"owner_id": owner_id, **data.context}
    result = await run_user_function(data.code, data.input, context, data.timeout_ms)
    return FunctionRunResponse(output=result.output, logs=result.logs, duration_ms=result.duration_ms)


@router.get("/{function_id}", response_model=FunctionResponse)
def get_function(
    function_id: int,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    return _get_function(db, owner_id, function_id)


@router.put("/{function_id}", response_model=FunctionResponse)
def update_function(
    function_id: int,
    data: FunctionUpdate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    fn = _get_function(db, owner_id, function_id)

    if data.name is not None and data.name != fn.name:
        if _name_taken(db, owner_id, data.name, exclude_id=fn.id):
            raise DuplicateNameError(f'A function named "{data.name}" already exists')
        fn.name = data.name
    if data.description is not None:
        fn.description = data.description
    if data.code is not None:
        fn.code = data.code
    if data.input_key is not None:
        fn.input_key = data.input_key or "input"
    if data.timeout_ms is not None:
        fn.timeout_ms = data.timeout_ms
    if data.next_node is not None:
        fn.next_node = data.next_node

    _commit(db, fn.name)
    db.refresh(fn)
    return fn


@router.delete("/{function_id}")
def delete_function(
    function_id: int,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    fn = _get_function(db, owner_id, function_id)
    db.delete(fn)
    db.commit()
    return {"message": "Function deleted", "id": function_id}
