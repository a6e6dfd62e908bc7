# waflow/schemas/custom_message.py
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from typing import List, Literal, Optional
from datetime import datetime


class CustomMessageButton(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["quick_reply", "url", "call", "flow"]
    text: str = Field(..., min_length=1)
    payload: Optional[str] = ""
    url: Optional[str] = ""
    phone: Optional[str] = ""
    flow_id: Optional[str] = Field("", validation_alias=AliasChoices("flow_id", "flowId"))
    flow_action: Literal["navigate", "data_exchange"] = Field(
        "navigate", validation_alias=AliasChoices("flow_action", "flowAction"),
    )

    @model_validator(mode="after")
    def check_target(self):
        if self.type == "url" and not self.url:
            raise ValueError("url buttons need a url")
        if self.type == "call" and not self.phone:
            raise ValueError("call buttons need a phone number")
        return self


class CustomMessageCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)
    buttons: List[CustomMessageButton] = Field(default_factory=list)


class CustomMessageUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    content: Optional[str] = Field(None, min_length=1)
    buttons: Optional[List[CustomMessageButton]] = None


class CustomMessageResponse(BaseModel):
    id: int
    owner_id: Optional[str]
    name: str
    content: str
    buttons: List[dict]
    placeholders: List[str]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
