from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from medibook.core.permissions import Action
from medibook.core.security import ensure_patient_scope, require
from medibook.dependencies import get_ledger
from medibook.models.user import User
from medibook.models.wallet import TransactionPage, TransactionType, WalletAdjust, WalletSummary
from medibook.services.wallet_ledger import WalletLedger

router = APIRouter(prefix="/wallets", tags=["wallets"])


@router.get("/{patient_id}", response_model=WalletSummary)
def get_wallet(
    patient_id: int,
    ledger: WalletLedger = Depends(get_ledger),
    current_user: User = Depends(require(Action.VIEW_WALLET)),
):
    ensure_patient_scope(current_user, patient_id)
    wallet = ledger.get_wallet(patient_id)
    return WalletSummary(patient_id=patient_id, balance=wallet.balance)


@router.get("/{patient_id}/transactions", response_model=TransactionPage)
def list_transactions(
    patient_id: int,
    type: Optional[TransactionType] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    ledger: WalletLedger = Depends(get_ledger),
    current_user: User = Depends(require(Action.VIEW_WALLET)),
):
    ensure_patient_scope(current_user, patient_id)
    return ledger.list_transactions(patient_id, type, date_from, date_to, page, page_size)


@router.get("/{patient_id}/integrity")
def check_integrity(
    patient_id: int,
    ledger: WalletLedger = Depends(get_ledger),
    current_user: User = Depends(require(Action.ADJUST_WALLET)),
):
    balance = ledger.get_balance(patient_id)
    reconstructed = ledger.reconstruct_balance(patient_id)
    return {
        "patient_id": patient_id,
        "balance": str(balance),
        "reconstructed_balance": str(reconstructed),
        "consistent": balance == reconstructed,
    }


# =========================
# MANUAL ADJUSTMENTS
# =========================
@router.post("/{patient_id}/credit", response_model=WalletSummary)
def credit_wallet(
    patient_id: int,
    data: WalletAdjust,
    ledger: WalletLedger = Depends(get_ledger),
    current_user: User = Depends(require(Action.ADJUST_WALLET)),
):
    wallet = ledger.credit(
        patient_id, data.amount, data.description, data.related_appointment_id, data.related_payment_id
    )
    return WalletSummary(patient_id=patient_id, balance=wallet.balance, last_transaction=ledger.last_entry)


@router.post("/{patient_id}/debit", response_model=WalletSummary)
def debit_wallet(
    patient_id: int,
    data: WalletAdjust,
    ledger: WalletLedger = Depends(get_ledger),
    current_user: User = Depends(require(Action.ADJUST_WALLET)),
):
    wallet = ledger.debit(
        patient_id, data.amount, data.description, data.related_appointment_id, data.related_payment_id
    )
    return WalletSummary(patient_id=patient_id, balance=wallet.balance, last_transaction=ledger.last_entry)
