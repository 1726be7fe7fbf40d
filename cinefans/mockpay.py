from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Tuple, List, Dict, Any
import os
import uuid
import hmac
import hashlib
import base64
import json

from .errors import Invalid
from .helpers import now_ts
from .model.paymentsession import PaymentSessionStore

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")

# provider status -> what we do with the order
STATUS_APPROVED = "approved"
STATUS_PENDING = "pending"
STATUS_FAILED = "failed"
STATUS_REFUNDED = "refunded"

PROVIDER_STATUS = {
    "approved": STATUS_APPROVED,
    "authorized": STATUS_PENDING,
    "pending": STATUS_PENDING,
    "in_process": STATUS_PENDING,
    "in_mediation": STATUS_PENDING,
    "rejected": STATUS_FAILED,
    "cancelled": STATUS_FAILED,
    "refunded": STATUS_REFUNDED,
    "charged_back": STATUS_REFUNDED,
}


def map_status(provider_status: Optional[str]) -> str:
    return PROVIDER_STATUS.get((provider_status or "").lower(), STATUS_PENDING)


# ----------------------------
# Payment Adapter Interface
# ----------------------------
@dataclass
class CheckoutLine:
    title: str
    quantity: int
    unit_price: int  # cents


@dataclass
class CheckoutRequest:
    external_reference: str
    amount: int  # cents
    currency: str
    payer_email: str
    items: List[CheckoutLine] = field(default_factory=list)
    back_urls: Dict[str, str] = field(default_factory=dict)
    notification_url: Optional[str] = None


@dataclass
class CheckoutSession:
    checkout_ref: str
    redirect_url: str


@dataclass
class ProviderPayment:
    id: str
    status: str  # raw provider status
    external_reference: Optional[str]
    amount: int  # cents
    currency: str
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentAdapter(ABC):
    name: str = "abstract"

    @abstractmethod
    async def create_checkout(
            self, request: CheckoutRequest
    ) -> CheckoutSession: ...

    # None if the provider does not know the payment
    @abstractmethod
    async def fetch_payment(
            self, payment_id: str
    ) -> Optional[ProviderPayment]: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # (payment_id, idempotency_key)
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        data = event.get("data") or {}
        return str(data.get("id") or ""), event.get("id")

    def event_kind(self, event: dict) -> str:
        return event.get("type", "")


def sign(payload: bytes, secret: str = MOCK_SECRET) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """
    In-process stand-in for a hosted checkout. The checkout session id
    doubles as the payment id; its status changes when the buyer presses a
    button on /mockpay/{psid}.
    """

    name = "mock"

    def __init__(self, store: PaymentSessionStore, base_url: str = "",
                 secret: str = MOCK_SECRET) -> None:
        self.store = store
        self.base_url = base_url.rstrip("/")
        self.secret = secret

    async def create_checkout(
            self, request: CheckoutRequest
    ) -> CheckoutSession:
        psid = f"mock_{uuid.uuid4().hex}"
        title = ", ".join(line.title for line in request.items) or "Order"
        await self.store.save_payment_session(psid, {
            "order_id": request.external_reference,
            "title": title[:200],
            "amount": request.amount,
            "currency": request.currency,
            "payer_email": request.payer_email,
            "success_url": request.back_urls.get("success"),
            "failure_url": request.back_urls.get("failure"),
            "pending_url": request.back_urls.get("pending"),
            "notification_url": request.notification_url,
            "status": "pending",
            "created_at": now_ts(),
        })
        return CheckoutSession(
            checkout_ref=psid,
            redirect_url=f"{self.base_url}/mockpay/{psid}",
        )

    async def fetch_payment(
            self, payment_id: str
    ) -> Optional[ProviderPayment]:
        ps = await self.store.get_payment_session(payment_id)
        if not ps:
            return None
        return ProviderPayment(
            id=payment_id,
            status=ps.get("status") or "pending",
            external_reference=ps.get("order_id"),
            amount=int(ps.get("amount") or 0),
            currency=ps.get("currency") or "eur",
            raw=dict(ps),
        )

    def build_event(self, psid: str) -> dict:
        return {
            "id": f"evt_{uuid.uuid4().hex}",
            "type": "payment",
            "action": "payment.updated",
            "data": {"id": psid},
            "date_created": now_ts(),
        }

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        expected = sign(payload, self.secret)
        if not sig or not hmac.compare_digest(expected, sig):
            raise Invalid("Invalid signature")
        try:
            event = json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise Invalid("Invalid JSON")
        if not isinstance(event, dict) or not event.get("type"):
            raise Invalid("Malformed notification")
        return event
