"""
Pydantic models for cart lines, stock entries, and reconciliation state.
"""
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, Field, computed_field, field_validator

CENT = Decimal("0.01")


def round_money(value: Decimal) -> Decimal:
    """Round to cents using round-half-up"""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class StockEntry(BaseModel):
    """Last known stock for a record"""
    record_id: int = Field(..., description="Record identifier")
    quantity: int = Field(..., ge=0, description="Units in stock")


class StockChange(BaseModel):
    """Event published when a cached stock value changes"""
    record_id: int
    quantity: int = Field(..., ge=0)


class CartLine(BaseModel):
    """Single record in the cart"""
    record_id: int = Field(..., description="Record identifier")
    title: str = Field("", description="Record title")
    image_url: str = Field("", description="Cover image URL")
    group_name: str = Field("", description="Artist or group name")
    unit_price: Decimal = Field(Decimal("0"), ge=0, description="Price per unit")
    quantity: int = Field(0, ge=0, description="Units in the cart")
    stock: int = Field(0, ge=0, description="Stock reported with the line")

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Quantity cannot be negative")
        return v

    @computed_field
    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class CartState(BaseModel):
    """Cart contents for one viewing context"""
    owner_email: str = Field("", description="Cart owner")
    lines: List[CartLine] = Field(default_factory=list, description="Lines in insertion order")
    enabled: bool = Field(True, description="Administrator-controlled cart flag")
    error: Optional[str] = Field(None, description="Set when the last resync could not reach the backend")

    def line_for(self, record_id: int) -> Optional[CartLine]:
        return next((line for line in self.lines if line.record_id == record_id), None)


class CartAggregates(BaseModel):
    """Derived totals shown in navbar and summary badges"""
    item_count: int = 0
    total_price: Decimal = Decimal("0.00")


class OperationState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


class PendingOperation(BaseModel):
    """Snapshot taken right before an optimistic mutation, used for exact rollback"""
    owner_email: str
    record_id: int
    delta: int = Field(..., description="+1 to add, -1 to remove")
    previous_quantity: int = Field(..., ge=0)
    previous_stock: Optional[int] = Field(None, description="None when the stock was unknown")
    previous_line: Optional[CartLine] = None
    previous_index: Optional[int] = Field(None, description="Position of the line before the mutation")
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("delta")
    @classmethod
    def validate_delta(cls, v: int) -> int:
        if v not in (1, -1):
            raise ValueError("delta must be +1 or -1")
        return v


class RecordInfo(BaseModel):
    """Authoritative record data returned by the backend"""
    record_id: int
    title: str = ""
    image_url: str = ""
    group_name: str = ""
    price: Decimal = Decimal("0")
    stock: int = 0


class CartStatus(BaseModel):
    enabled: bool = True


class MutationResult(BaseModel):
    """Outcome of an add or remove call"""
    record_id: int
    state: OperationState
    line: Optional[CartLine] = Field(None, description="Resulting line, None when removed")
    stock: Optional[int] = None
    discarded: bool = Field(False, description="True when the completion arrived for a closed context")


class LoginRequest(BaseModel):
    """Request model for binding a user identity"""
    email: str = Field(..., description="User email")
    is_admin: bool = Field(False, description="Whether the user is an administrator")
    token: Optional[str] = Field(None, description="Bearer token for the shop backend")


class CartEnabledRequest(BaseModel):
    enabled: bool


class OrderRequest(BaseModel):
    payment_method: Optional[str] = Field(None, description="Payment method label")


class AddItemRequest(BaseModel):
    """Catalog data the client already shows for a record it adds to the cart"""
    price: Decimal = Field(Decimal("0"), ge=0)
    title: str = ""
    image_url: str = ""
    group_name: str = ""
    stock: int = Field(0, ge=0)

    def to_record(self, record_id: int) -> RecordInfo:
        return RecordInfo(record_id=record_id, **self.model_dump())


class CartResponse(BaseModel):
    """Response model for cart retrieval"""
    owner_email: str
    lines: List[CartLine] = Field(default_factory=list)
    enabled: bool = True
    error: Optional[str] = None
    item_count: int = 0
    total_price: Decimal = Decimal("0.00")
    viewing_as_admin: bool = False


class OperationTransition(BaseModel):
    """Published whenever an (owner, record) pair changes state"""
    owner_email: str
    record_id: int
    state: OperationState
