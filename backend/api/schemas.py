from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Request bodies arrive camelCased from the web client."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class PauseRequestCreate(CamelModel):
    kind: Optional[str] = None
    subscription_id: Optional[str] = None
    pause_start_date: Optional[str] = None
    pause_end_date: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class SkipRequestCreate(CamelModel):
    delivery_id: Optional[int] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class WithdrawPauseRequestCreate(CamelModel):
    pause_request_id: Optional[int] = None


class SubscriptionRecordCreate(CamelModel):
    kind: Optional[str] = None
    frequency: Optional[str] = None
    start_date: Optional[str] = None
    title: Optional[str] = Field(default=None, max_length=200)
    servings: Optional[int] = None
    price: Optional[float] = None
    selections: list = Field(default_factory=list)


class DecisionRequest(CamelModel):
    status: Optional[str] = None
    admin_note: Optional[str] = Field(default=None, max_length=1000)


class StatusUpdateRequest(CamelModel):
    status: Optional[str] = None


class AcceptanceUpdateRequest(CamelModel):
    acceptance_status: Optional[str] = None
