# waflow/schemas/flow.py
"""Pydantic schemas for flows, their connections and embedded functions"""
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime

from waflow.core.config import FUNCTION_DEFAULT_TIMEOUT_MS
from waflow.services.sandbox import clamp_timeout

TriggerMatchType = Literal["any", "includes", "starts_with", "exact"]
TargetType = Literal["template", "custom_message", "function"]


class TriggerSchema(BaseModel):
    match_type: TriggerMatchType = Field("any", validation_alias=AliasChoices("match_type", "matchType"))
    match_text: str = Field("", validation_alias=AliasChoices("match_text", "matchText"))


class ConnectionSchema(BaseModel):
    """
    One edge of the flow graph.

    Accepts the flow builder's camelCase keys (sourceTemplate, targetType,
    nextTemplate, outputMapping) as well as snake_case.
    """
    model_config = ConfigDict(populate_by_name=True)

    source_node: str = Field(
        ..., min_length=1,
        validation_alias=AliasChoices("source_node", "sourceNode", "sourceTemplate", "source"),
    )
    button: Optional[str] = None
    target_type: TargetType = Field(
        "template", validation_alias=AliasChoices("target_type", "targetType"),
    )
    target: str = Field(..., min_length=1)
    next_node: Optional[str] = Field(
        None, validation_alias=AliasChoices("next_node", "nextNode", "nextTemplate"),
    )
    output_mapping: Optional[Dict[str, str]] = Field(
        None, validation_alias=AliasChoices("output_mapping", "outputMapping"),
    )

    @field_validator("button", "next_node", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class FunctionSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = ""
    code: str = Field(..., min_length=1)
    input_key: str = Field("input", validation_alias=AliasChoices("input_key", "inputKey"))
    timeout_ms: int = Field(
        FUNCTION_DEFAULT_TIMEOUT_MS, validation_alias=AliasChoices("timeout_ms", "timeoutMs"),
    )
    next_node: Optional[str] = Field(
        None, validation_alias=AliasChoices("next_node", "nextNode", "nextTemplate"),
    )

    @field_validator("timeout_ms", mode="before")
    @classmethod
    def clamp(cls, v):
        return clamp_timeout(v)

    @field_validator("input_key", mode="before")
    @classmethod
    def default_input_key(cls, v):
        return v or "input"


class FlowBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field("New Flow", min_length=1, max_length=255)
    description: Optional[str] = None
    trigger: TriggerSchema = Field(default_factory=TriggerSchema)
    first_node: Optional[str] = Field(
        "", validation_alias=AliasChoices("first_node", "firstNode", "firstTemplate"),
    )
    connections: List[ConnectionSchema] = Field(default_factory=list)
    functions: List[FunctionSchema] = Field(default_factory=list)

    @model_validator(mode="after")
    def unique_function_names(self):
        names = [f.name for f in self.functions]
        if len(names) != len(set(names)):
            raise ValueError("Function names must be unique within a flow")
        return self


class FlowCreate(FlowBase):
    pass


class FlowUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    trigger: Optional[TriggerSchema] = None
    first_node: Optional[str] = Field(
        None, validation_alias=AliasChoices("first_node", "firstNode", "firstTemplate"),
    )
    connections: Optional[List[ConnectionSchema]] = None
    functions: Optional[List[FunctionSchema]] = None


class ConnectionsUpdate(BaseModel):
    connections: List[ConnectionSchema]


class FunctionsUpdate(BaseModel):
    functions: List[FunctionSchema]


class FlowResponse(BaseModel):
    id: int
    owner_id: Optional[str]
    name: str
    description: Optional[str] = None
    trigger: TriggerSchema
    first_node: Optional[str]
    connections: List[Dict[str, Any]]
    functions: List[Dict[str, Any]]
    created_at: datetime
    updated_at: datetime


class FlowExecuteRequest(BaseModel):
    """Run one of a flow's functions outside a conversation"""
    model_config = ConfigDict(populate_by_name=True)

    flow_id: Optional[int] = Field(None, validation_alias=AliasChoices("flow_id", "flowId"))
    function_name: str = Field(..., min_length=1, validation_alias=AliasChoices("function_name", "functionName"))
    input: Any = None
    context: Dict[str, Any] = Field(default_factory=dict)
