from enum import Enum
from typing import Optional
from datetime import datetime
from decimal import Decimal

from sqlmodel import SQLModel, Field


class PaymentMethod(str, Enum):
    GATEWAY = "gateway"
    WALLET = "wallet"
    MIXED = "mixed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class SagaState(str, Enum):
    PENDING = "pending"
    WALLET_RESERVED = "wallet_reserved"
    GATEWAY_REQUESTED = "gateway_requested"
    COMPLETED = "completed"
    COMPENSATING = "compensating"
    FAILED = "failed"
    REFUNDED = "refunded"


# saga states a crash can leave behind; the reconciliation sweep resumes them
IN_FLIGHT_SAGA_STATES = (
    SagaState.PENDING,
    SagaState.WALLET_RESERVED,
    SagaState.GATEWAY_REQUESTED,
    SagaState.COMPENSATING,
)


class GatewayRefundStatus(str, Enum):
    NOT_REQUIRED = "not_required"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    MANUAL_REVIEW = "manual_review"


class Payment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)

    appointment_id: int = Field(foreign_key="appointment.id", index=True)
    patient_id: int = Field(foreign_key="user.id", index=True)

    amount: Decimal = Field(max_digits=12, decimal_places=2)
    method: PaymentMethod
    wallet_amount_used: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    gateway_amount_paid: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)

    status: PaymentStatus = Field(default=PaymentStatus.PENDING, index=True)
    saga_state: SagaState = Field(default=SagaState.PENDING, index=True)

    # idempotency key towards the gateway, never changes
    transaction_id: str = Field(index=True, unique=True)
    provider_transaction_id: Optional[str] = Field(default=None, index=True)
    checkout_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    completed_at: Optional[datetime] = None

    refund_amount: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    wallet_refund_amount: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    gateway_refund_amount: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    gateway_refund_status: Optional[GatewayRefundStatus] = None
    gateway_refund_reference: Optional[str] = None
    refund_reason: Optional[str] = None
    refunded_at: Optional[datetime] = None
    refunded_by: Optional[int] = Field(default=None, foreign_key="user.id")

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow, index=True)


# =========================
# REQUEST SCHEMAS
# =========================

class PaymentProcess(SQLModel):
    appointment_id: int
    patient_id: Optional[int] = None
    total_amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    wallet_amount_to_use: Decimal = Field(default=Decimal("0"), ge=0, max_digits=12, decimal_places=2)


class PaymentVerify(SQLModel):
    transaction_id: str
    provider_transaction_id: Optional[str] = None
    status: Optional[str] = None


class RefundRequest(SQLModel):
    reason: str = Field(min_length=1)
    amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2)
