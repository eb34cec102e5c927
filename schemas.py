import datetime as dt
from datetime import date, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import TransactionType


class ActionResult(BaseModel):
    success: bool
    error: Optional[str] = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, **extra: Any) -> "ActionResult":
        return cls(success=True, extra=extra)

    @classmethod
    def fail(cls, error: str) -> "ActionResult":
        return cls(success=False, error=error)

    def payload(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.error is not None:
            data["error"] = self.error
        data.update(self.extra)
        return data


class OwnerIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    apartment_id: str = Field(..., min_length=1, max_length=20)
    email: Optional[str] = Field(default=None, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=40)
    is_active: bool = True

    @field_validator("email", "phone", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class TagIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=80)
    description: Optional[str] = None
    color: Optional[str] = Field(default=None, max_length=9)
    parent_id: Optional[int] = None
    month_year: Optional[int] = Field(default=None, ge=190001, le=299912)

    @field_validator("month_year")
    @classmethod
    def _valid_month(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and not 1 <= value % 100 <= 12:
            raise ValueError("month_year must be YYYYMM")
        return value


class PatternIn(BaseModel):
    pattern: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    apply_to_existing: bool = False


class TransactionIn(BaseModel):
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    description: str = Field(..., min_length=1, max_length=500)
    date: dt.date
    owner_id: Optional[int] = None
    reference: Optional[str] = Field(default=None, max_length=120)
    category: Optional[str] = Field(default=None, max_length=120)
    tag_ids: list[int] = Field(default_factory=list)


class ImportedTransaction(BaseModel):
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    description: Optional[str]
    bank_description: Optional[str]
    date: datetime
    reference: Optional[str] = None
    serial: Optional[str] = None


class LpgReadingIn(BaseModel):
    owner_id: int
    previous_reading: float = Field(..., ge=0)
    current_reading: float = Field(..., ge=0)


class LpgRefillIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    bill_amount_cents: int = Field(..., ge=0)
    gallons_refilled: float = Field(..., ge=0)
    refill_date: date
    efficiency_percentage: float = Field(default=0.0, ge=0)
    tag_id: Optional[int] = None
    readings: list[LpgReadingIn] = Field(..., min_length=1)


class LpgEntryOut(BaseModel):
    owner_id: int
    previous_reading: float
    current_reading: float
    consumption: float
    percentage: float
    subtotal_cents: int
    total_amount_cents: int


class PaymentOut(BaseModel):
    id: int
    date: datetime
    amount_cents: int


class MonthlyPaymentOut(BaseModel):
    owner_id: int
    owner_name: str
    apartment_id: str
    amount_paid_cents: int
    payment_count: int
    last_payment_date: Optional[datetime]
    payments: list[PaymentOut]
    status: Literal["paid", "pending"]


class AuditLogFilters(BaseModel):
    event_type: Optional[str] = None
    entity_type: Optional[str] = None
    user_email: Optional[str] = None
    entity_id: Optional[str] = None
    is_system_event: Optional[bool] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    search: Optional[str] = None


class BalanceIn(BaseModel):
    balance_cents: int
    as_of: datetime
