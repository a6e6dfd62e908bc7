# waflow/api/v1/custom_messages.py
"""Custom message API endpoints"""
import logging
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from waflow.api.deps import get_owner_id
from waflow.core.errors import DuplicateNameError, NotFoundError
from waflow.db.session import get_db
from waflow.models.custom_message import CustomMessage
from waflow.schemas.custom_message import (
    CustomMessageCreate,
    CustomMessageResponse,
    CustomMessageUpdate,
)

log = logging.getLogger("waflow.api.custom_messages")

router = APIRouter()


def _get_message(db: Session, owner_id: str, message_id: int) -> CustomMessage:
    message = db.query(CustomMessage).filter(
        CustomMessage.id == message_id,
        CustomMessage.owner_id == owner_id
    ).first()
    if not message:
        raise NotFoundError("Custom message not found")
    return message


def _ensure_unique(db: Session, owner_id: str, name: str, exclude_id: int = None) -> None:
    query = db.query(CustomMessage).filter(
        CustomMessage.owner_id == owner_id,
        CustomMessage.name == name
    )
    if exclude_id is not None:
        query = query.filter(CustomMessage.id != exclude_id)
    if query.first() is not None:
        raise DuplicateNameError(f'A custom message named "{name}" already exists')


def _commit(db: Session, name: str) -> None:
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateNameError(f'A custom message named "{name}" already exists')


@router.get("", response_model=List[CustomMessageResponse])
def list_custom_messages(
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    return db.query(CustomMessage).filter(
        CustomMessage.owner_id == owner_id
    ).order_by(CustomMessage.created_at.desc()).all()


@router.post("", response_model=CustomMessageResponse, status_code=201)
def create_custom_message(
    data: CustomMessageCreate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    """
    Create a custom message

    - **content**: text with `{{placeholder}}` tokens filled from function output
    - **buttons**: quick_reply, url, call or flow buttons
    """
    _ensure_unique(db, owner_id, data.name)

    message = CustomMessage(
        owner_id=owner_id,
        name=data.name,
        content=data.content,
        buttons=[b.model_dump() for b in data.buttons],
    )
    db.add(message)
    _commit(db, data.name)
    db.refresh(message)

    log.info(f"✅ Custom message '{message.name}' created ({len(message.placeholders)} placeholders)")
    return message


@router.get("/{message_id}", response_model=CustomMessageResponse)
def get_custom_message(
    message_id: int,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    return _get_message(db, owner_id, message_id)


@router.put("/{message_id}", response_model=CustomMessageResponse)
def update_custom_message(
    message_id: int,
    data: CustomMessageUpdate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    message = _get_message(db, owner_id, message_id)

    if data.name is not None and data.name != message.name:
        _ensure_unique(db, owner_id, data.name, exclude_id=message.id)
        message.name = data.name
    if data.content is not None:
        message.content = data.content
    if data.buttons is not None:
        message.buttons = [b.model_dump() for b in data.buttons]

    _commit(db, message.name)
    db.refresh(message)
    return message


@router.delete("/{message_id}")
def delete_custom_message(
    message_id: int,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    message = _get_message(db, owner_id, message_id)
    db.delete(message)
    db.commit()
    return {"message": "Custom message deleted", "id": message_id}
