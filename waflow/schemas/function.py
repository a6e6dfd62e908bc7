# waflow/schemas/function.py
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime

from waflow.core.config import FUNCTION_DEFAULT_TIMEOUT_MS
from waflow.services.sandbox import clamp_timeout


class FunctionCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = ""
    code: str = Field(..., min_length=1)
    input_key: str = Field("input", validation_alias=AliasChoices("input_key", "inputKey"))
    timeout_ms: int = Field(FUNCTION_DEFAULT_TIMEOUT_MS, validation_alias=AliasChoices("timeout_ms", "timeoutMs"))
    next_node: Optional[str] = Field("", validation_alias=AliasChoices("next_node", "nextNode", "nextTemplate"))

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Function name is required")
        return v

    @field_validator("timeout_ms", mode="before")
    @classmethod
    def clamp(cls, v):
        return clamp_timeout(v)


class FunctionUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    code: Optional[str] = Field(None, min_length=1)
    input_key: Optional[str] = Field(None, validation_alias=AliasChoices("input_key", "inputKey"))
    timeout_ms: Optional[int] = Field(None, validation_alias=AliasChoices("timeout_ms", "timeoutMs"))
    next_node: Optional[str] = Field(None, validation_alias=AliasChoices("next_node", "nextNode", "nextTemplate"))

    @field_validator("timeout_ms", mode="before")
    @classmethod
    def clamp(cls, v):
        return None if v is None else clamp_timeout(v)


class FunctionResponse(BaseModel):
    id: int
    owner_id: Optional[str]
    name: str
    description: Optional[str]
    code: str
    input_key: str
    timeout_ms: int
    next_node: Optional[str]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class FunctionTestRequest(BaseModel):
    """Run arbitrary code through the sandbox"""
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(..., min_length=1)
    input: Any = None
    context: Dict[str, Any] = Field(default_factory=dict)
    timeout_ms: Optional[int] = Field(None, validation_alias=AliasChoices("timeout_ms", "timeoutMs"))


class FunctionRunResponse(BaseModel):
    success: bool = True
    output: Any = None
    logs: List[str] = Field(default_factory=list)
    duration_ms: int = 0
    next_node: Optional[str] = None
