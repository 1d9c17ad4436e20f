# handoff_escrow/schemas.py
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import as_utc


class _FromOrm(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    @field_validator("*", mode="after")
    @classmethod
    def _utc(cls, value):
        if isinstance(value, datetime):
            return as_utc(value)
        return value


class OpenTransactionIn(BaseModel):
    seller_id: str = Field(..., min_length=1)
    # validated by the engine so that errors share one shape
    amount: Any
    currency: str = "usd"
    meeting_lat: Any
    meeting_lng: Any


class ConfirmCodeIn(BaseModel):
    confirmation_code: str = Field(..., min_length=1)


class ConfirmQrIn(BaseModel):
    qr_code_data: str = Field(..., min_length=1)


class LocationIn(BaseModel):
    lat: Any
    lng: Any


class PayeeAccountIn(BaseModel):
    email: str


class PayeeAccountOut(BaseModel):
    account_ref: str
    onboarding_url: Optional[str]


class HandoffOut(_FromOrm):
    id: str
    transaction_id: str
    meeting_lat: float
    meeting_lng: float
    confirmation_code: str
    qr_payload: str
    buyer_confirmed: bool
    seller_confirmed: bool
    confirmed_at: Optional[datetime]
    expires_at: datetime
    created_at: Optional[datetime]


class TransactionOut(_FromOrm):
    id: str
    buyer_id: str
    seller_id: str
    amount: int
    currency: str
    status: str
    gateway_intent_id: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    handoff: Optional[HandoffOut] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status_value(cls, value):
        return getattr(value, "value", value)


class PaymentHandleOut(BaseModel):
    id: Optional[str]
    client_secret: Optional[str]


class OpenTransactionOut(BaseModel):
    transaction: TransactionOut
    handoff: HandoffOut
    payment_intent: PaymentHandleOut


class ConfirmOut(BaseModel):
    handoff: HandoffOut
    transaction_status: str
    payment_released: bool
    message: str


class LocationOut(BaseModel):
    delivered: int

