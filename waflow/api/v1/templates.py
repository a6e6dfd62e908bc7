# waflow/api/v1/templates.py
"""
Message templates of the owner's WhatsApp Business account.
The flow builder uses the names as template node targets.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from waflow.api.deps import get_owner_id
from waflow.core.errors import NotFoundError
from waflow.db.session import get_db
from waflow.services.sender import get_sender_for_owner

router = APIRouter()
log = logging.getLogger("waflow.api.templates")


class TemplateSummary(BaseModel):
    id: Optional[str] = None
    name: str
    status: Optional[str] = None
    category: Optional[str] = None
    language: Optional[str] = None


class TemplateListResponse(BaseModel):
    templates: List[TemplateSummary] = Field(default_factory=list)


@router.get("", response_model=TemplateListResponse)
async def list_templates(
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
) -> Dict[str, Any]:
    """List templates straight from the Cloud API"""
    sender = get_sender_for_owner(db, owner_id)
    if sender is None:
        raise NotFoundError("WhatsApp account not configured")

    templates = await sender.list_templates()
    return {"templates": templates}
