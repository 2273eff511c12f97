"""
Payment gateway client.

``GatewayClient`` is the capability the settlement engine needs. There is a
real implementation over httpx and a fake one used in development and tests.
Every failure (timeout, transport error, non-2xx, malformed body) surfaces
as ``GatewayError``.
"""

import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

import httpx

from medibook.core.config import get_settings

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    pass


@dataclass
class CheckoutResult:
    provider_transaction_id: str
    checkout_reference: Optional[str] = None


@dataclass
class VerificationResult:
    success: bool
    status: str


@dataclass
class RefundResult:
    success: bool
    refund_reference: Optional[str] = None


class GatewayClient(Protocol):
    def initiate(self, amount: Decimal, correlation_id: str, description: str) -> CheckoutResult: ...

    def verify(self, provider_transaction_id: str) -> VerificationResult: ...

    def refund(self, provider_transaction_id: str, amount: Decimal, reason: str) -> RefundResult: ...


# =========================
# HTTP CLIENT
# =========================

class HttpGatewayClient:
    def __init__(
        self,
        base_url: str,
        merchant_id: str,
        api_key: str,
        timeout: float,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._merchant_id = merchant_id
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as exc:
            raise GatewayError(f"Gateway timed out on {method} {path}") from exc
        except httpx.HTTPStatusError as exc:
            raise GatewayError(f"Gateway returned HTTP {exc.response.status_code} on {method} {path}") from exc
        except httpx.HTTPError as exc:
            raise GatewayError(f"Gateway unreachable: {exc}") from exc
        except ValueError as exc:
            raise GatewayError(f"Gateway sent an unreadable response on {method} {path}") from exc

    def initiate(self, amount: Decimal, correlation_id: str, description: str) -> CheckoutResult:
        data = self._request(
            "POST",
            "/payments",
            json={
                "amount": f"{amount:.2f}",
                "orderId": correlation_id,
                "merchantId": self._merchant_id,
                "description": description,
            },
            # same correlation id, same charge
            headers={"Idempotency-Key": correlation_id},
        )
        if not data.get("transactionId"):
            raise GatewayError("Gateway response is missing transactionId")
        return CheckoutResult(
            provider_transaction_id=data["transactionId"],
            checkout_reference=data.get("paymentUrl"),
        )

    def verify(self, provider_transaction_id: str) -> VerificationResult:
        data = self._request("GET", f"/payments/{provider_transaction_id}")
        status = str(data.get("status", "unknown"))
        return VerificationResult(success=status == "completed", status=status)

    def refund(self, provider_transaction_id: str, amount: Decimal, reason: str) -> RefundResult:
        data = self._request(
            "POST",
            f"/payments/{provider_transaction_id}/refunds",
            json={"amount": f"{amount:.2f}", "reason": reason, "merchantId": self._merchant_id},
        )
        return RefundResult(
            success=bool(data.get("success", False)),
            refund_reference=data.get("refundTransactionId"),
        )


# =========================
# FAKE CLIENT
# =========================

@dataclass
class FakeGatewayClient:
    """In-memory gateway. Put operation names in ``fail_on`` to make them raise.

    Like the real one, a repeated ``initiate`` with the same correlation id
    returns the charge created the first time.
    """

    fail_on: Set[str] = field(default_factory=set)
    verify_status: str = "completed"
    calls: List[Tuple[str, Tuple[Any, ...]]] = field(default_factory=list)
    charges: Dict[str, CheckoutResult] = field(default_factory=dict)

    def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if name in self.fail_on:
            raise GatewayError(f"Simulated gateway failure on {name}")

    def initiate(self, amount: Decimal, correlation_id: str, description: str) -> CheckoutResult:
        self._call("initiate", amount, correlation_id, description)
        if correlation_id not in self.charges:
            self.charges[correlation_id] = CheckoutResult(
                provider_transaction_id=f"FAKE{uuid.uuid4().hex[:12].upper()}",
                checkout_reference=f"https://fake-gateway.local/pay?orderId={correlation_id}",
            )
        return self.charges[correlation_id]

    def verify(self, provider_transaction_id: str) -> VerificationResult:
        self._call("verify", provider_transaction_id)
        return VerificationResult(success=self.verify_status == "completed", status=self.verify_status)

    def refund(self, provider_transaction_id: str, amount: Decimal, reason: str) -> RefundResult:
        self._call("refund", provider_transaction_id, amount, reason)
        return RefundResult(success=True, refund_reference=f"REF{uuid.uuid4().hex[:12].upper()}")

    def calls_to(self, name: str) -> List[Tuple[Any, ...]]:
        return [args for call, args in self.calls if call == name]


# =========================
# WEBHOOK SIGNATURE
# =========================

def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(body, secret), signature)


@lru_cache
def get_gateway() -> GatewayClient:
    settings = get_settings()
    if settings.GATEWAY_MODE == "http":
        logger.info(f"Using HTTP payment gateway at {settings.GATEWAY_BASE_URL}")
        return HttpGatewayClient(
            base_url=settings.GATEWAY_BASE_URL,
            merchant_id=settings.GATEWAY_MERCHANT_ID,
            api_key=settings.GATEWAY_API_KEY,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )
    logger.warning("Using fake payment gateway (GATEWAY_MODE=fake)")
    return FakeGatewayClient()
