from enum import Enum
from typing import List, Optional
from datetime import datetime
from decimal import Decimal

from sqlmodel import SQLModel, Field


class Wallet(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    patient_id: int = Field(foreign_key="user.id", unique=True, index=True)

    # written only by WalletLedger, always together with a WalletTransaction
    balance: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class WalletTransaction(SQLModel, table=True):
    """Append-only ledger entry. Never updated, never deleted."""

    id: Optional[int] = Field(default=None, primary_key=True)
    wallet_id: int = Field(foreign_key="wallet.id", index=True)

    type: TransactionType = Field(index=True)
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    description: str

    related_appointment_id: Optional[int] = Field(default=None, foreign_key="appointment.id")
    related_payment_id: Optional[int] = Field(default=None, foreign_key="payment.id", index=True)

    balance_before: Decimal = Field(max_digits=12, decimal_places=2)
    balance_after: Decimal = Field(max_digits=12, decimal_places=2)

    date: datetime = Field(default_factory=datetime.utcnow, index=True)


# =========================
# SCHEMAS
# =========================

class WalletAdjust(SQLModel):
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    description: str = Field(min_length=1)
    related_appointment_id: Optional[int] = None
    related_payment_id: Optional[int] = None


class WalletSummary(SQLModel):
    patient_id: int
    balance: Decimal
    # set on manual adjustments: the entry that produced this balance
    last_transaction: Optional[WalletTransaction] = None


class TransactionPage(SQLModel):
    patient_id: int
    balance: Decimal
    total: int
    page: int
    page_size: int
    items: List[WalletTransaction]
