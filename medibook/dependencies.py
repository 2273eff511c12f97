from fastapi import Depends
from sqlmodel import Session

from medibook.database import get_session
from medibook.services.appointments import AppointmentService
from medibook.services.gateway import GatewayClient, get_gateway
from medibook.services.settlement import SettlementEngine
from medibook.services.wallet_ledger import WalletLedger


def get_ledger(session: Session = Depends(get_session)) -> WalletLedger:
    return WalletLedger(session)


def get_settlement(
    session: Session = Depends(get_session),
    gateway: GatewayClient = Depends(get_gateway),
) -> SettlementEngine:
    return SettlementEngine(session, gateway)


def get_appointment_service(
    session: Session = Depends(get_session),
    settlement: SettlementEngine = Depends(get_settlement),
) -> AppointmentService:
    return AppointmentService(session, settlement)
