from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CreateBookingRequest(BaseModel):
    customer_id: str
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None

    provider_id: str
    provider_name: str
    provider_email: str

    service_type: str
    description: str = ""
    location: str
    booking_type: Literal["immediate", "long-term"] = "immediate"
    date: Optional[str] = None
    time: Optional[str] = None
    special_requests: Optional[str] = None
    budget: Optional[str] = None

    @field_validator("customer_email", "provider_email")
    @classmethod
    def email_has_at(cls, v: str) -> str:
        v = (v or "").strip()
        if "@" not in v:
            raise ValueError("must be an email address")
        return v

    @field_validator("customer_id", "customer_name", "provider_id", "provider_name", "location")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @property
    def timeframe(self) -> str:
        if self.booking_type == "immediate":
            return "ASAP"
        if self.date:
            return f"{self.date} at {self.time}" if self.time else self.date
        return "Flexible"


class BookingWithPaymentResponse(BaseModel):
    redirect_url: str
    booking_id: str
    payment_id: str


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    status: str
    customer_id: str
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    provider_id: str
    provider_name: str
    provider_email: str
    service_type: str
    description: str
    location: str
    timeframe: str
    special_requests: Optional[str] = None
    booking_type: str
    budget: Optional[str] = None
    amount: int
    requested_at: datetime
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    booking_id: str
    attempt: int
    status: str
    amount: int
    commission: int
    provider_amount: int
    currency: str
    redirect_url: Optional[str] = None
    failure_reason: Optional[str] = None
    refund_reason: Optional[str] = None
    held_at: datetime
    auto_refund_at: datetime
    confirmed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class PaymentInitResponse(BaseModel):
    payment_id: str
    redirect_url: str


class GatewayCallback(BaseModel):
    status: str = Field(min_length=1)


class RefundRequest(BaseModel):
    reason: str = "customer_request"
