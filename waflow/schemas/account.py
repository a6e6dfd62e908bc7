# waflow/schemas/account.py
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime


class AccountUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phone_number_id: str = Field(..., min_length=1, validation_alias=AliasChoices("phone_number_id", "phoneNumberId"))
    business_account_id: str = Field(..., min_length=1, validation_alias=AliasChoices("business_account_id", "businessAccountId"))
    access_token: Optional[str] = Field(None, validation_alias=AliasChoices("access_token", "accessToken"))
    webhook_verify_token: Optional[str] = Field(
        None, validation_alias=AliasChoices("webhook_verify_token", "webhookVerifyToken"),
    )


class AccountResponse(BaseModel):
    id: int
    owner_id: Optional[str]
    phone_number_id: str
    business_account_id: str
    webhook_verify_token: str
    access_token_set: bool
    is_connected: bool
    webhook_path: Optional[str] = None
    created_at: datetime
    updated_at: datetime
