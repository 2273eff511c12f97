"""
Wallet ledger.

The only writer of ``Wallet.balance``. Each mutation appends a
``WalletTransaction`` carrying the balance before and after, and both rows
are committed together, so the balance can always be rebuilt from the log.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlmodel import Session, select

from medibook.core.errors import InsufficientBalance, NotFound, ValidationError
from medibook.core.locks import wallet_locks
from medibook.models.user import Role, User
from medibook.models.wallet import TransactionPage, TransactionType, Wallet, WalletTransaction

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT)


class WalletLedger:
    def __init__(self, session: Session):
        self.session = session
        # the entry appended by the most recent credit/debit on this instance
        self.last_entry: Optional[WalletTransaction] = None

    # =========================
    # READS
    # =========================

    def get_wallet(self, patient_id: int) -> Wallet:
        """Return the patient's wallet, creating an empty one on first access."""
        wallet = self.session.exec(select(Wallet).where(Wallet.patient_id == patient_id)).first()
        if wallet:
            return wallet

        with wallet_locks.hold(str(patient_id)):
            return self._get_or_create(patient_id)

    def get_balance(self, patient_id: int) -> Decimal:
        return self.get_wallet(patient_id).balance

    def has_sufficient_balance(self, patient_id: int, amount) -> bool:
        return self.get_balance(patient_id) >= to_money(amount)

    def list_transactions(
        self,
        patient_id: int,
        type: Optional[TransactionType] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> TransactionPage:
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive")

        wallet = self.get_wallet(patient_id)

        filters = [WalletTransaction.wallet_id == wallet.id]
        if type is not None:
            filters.append(WalletTransaction.type == type)
        if date_from is not None:
            filters.append(WalletTransaction.date >= date_from)
        if date_to is not None:
            filters.append(WalletTransaction.date < date_to)

        total = self.session.exec(
            select(func.count()).select_from(WalletTransaction).where(*filters)
        ).one()

        items = self.session.exec(
            select(WalletTransaction)
            .where(*filters)
            .order_by(WalletTransaction.date.desc(), WalletTransaction.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()

        return TransactionPage(
            patient_id=patient_id,
            balance=wallet.balance,
            total=total,
            page=page,
            page_size=page_size,
            items=list(items),
        )

    def reconstruct_balance(self, patient_id: int) -> Decimal:
        """Sum of credits minus sum of debits over the wallet's log."""
        wallet = self.get_wallet(patient_id)
        entries = self.session.exec(
            select(WalletTransaction).where(WalletTransaction.wallet_id == wallet.id)
        ).all()
        total = Decimal("0")
        for entry in entries:
            if entry.type == TransactionType.CREDIT:
                total += entry.amount
            else:
                total -= entry.amount
        return to_money(total)

    def has_entry(self, payment_id: int, type: TransactionType) -> bool:
        entry = self.session.exec(
            select(WalletTransaction).where(
                WalletTransaction.related_payment_id == payment_id,
                WalletTransaction.type == type,
            )
        ).first()
        return entry is not None

    # =========================
    # WRITES
    # =========================

    def credit(
        self,
        patient_id: int,
        amount,
        description: str,
        related_appointment_id: Optional[int] = None,
        related_payment_id: Optional[int] = None,
    ) -> Wallet:
        amount = self._positive(amount)
        with wallet_locks.hold(str(patient_id)):
            wallet = self._get_or_create(patient_id)
            return self._append(
                wallet, TransactionType.CREDIT, amount, description,
                related_appointment_id, related_payment_id,
            )

    def debit(
        self,
        patient_id: int,
        amount,
        description: str,
        related_appointment_id: Optional[int] = None,
        related_payment_id: Optional[int] = None,
    ) -> Wallet:
        amount = self._positive(amount)
        with wallet_locks.hold(str(patient_id)):
            wallet = self._get_or_create(patient_id)
            if wallet.balance < amount:
                raise InsufficientBalance(available=wallet.balance, requested=amount)
            return self._append(
                wallet, TransactionType.DEBIT, amount, description,
                related_appointment_id, related_payment_id,
            )

    # =========================
    # INTERNALS (wallet lock held)
    # =========================

    def _positive(self, amount) -> Decimal:
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        return amount

    def _get_or_create(self, patient_id: int) -> Wallet:
        wallet = self._select_for_update(patient_id)
        if wallet:
            return wallet

        patient = self.session.get(User, patient_id)
        if not patient or patient.role != Role.PATIENT:
            raise NotFound(f"Patient {patient_id} not found")

        self.session.add(Wallet(patient_id=patient_id, balance=Decimal("0")))
        self.session.commit()
        logger.info(f"Created wallet for patient {patient_id}")
        return self._select_for_update(patient_id)

    def _select_for_update(self, patient_id: int) -> Optional[Wallet]:
        return self.session.exec(
            select(Wallet)
            .where(Wallet.patient_id == patient_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()

    def _append(
        self,
        wallet: Wallet,
        type: TransactionType,
        amount: Decimal,
        description: str,
        related_appointment_id: Optional[int],
        related_payment_id: Optional[int],
    ) -> Wallet:
        before = to_money(wallet.balance)
        after = before + amount if type == TransactionType.CREDIT else before - amount

        wallet.balance = after
        wallet.updated_at = datetime.utcnow()

        self.session.add(wallet)
        entry = WalletTransaction(
            wallet_id=wallet.id,
            type=type,
            amount=amount,
            description=description,
            related_appointment_id=related_appointment_id,
            related_payment_id=related_payment_id,
            balance_before=before,
            balance_after=after,
        )
        self.session.add(entry)
        self.session.commit()
        self.session.refresh(entry)
        self.session.refresh(wallet)
        self.last_entry = entry

        logger.info(f"Wallet of patient {wallet.patient_id}: {type.value} {amount} ({before} -> {after})")
        return wallet
