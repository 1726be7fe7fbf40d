"""MercadoPago hosted checkout over its REST API."""

import hashlib
import hmac
import json
import os
from typing import Optional

import httpx
from loguru import logger

from .errors import Invalid, UpstreamFailure, UpstreamTimeout
from .helpers import to_units, to_cents
from .mockpay import (
    PaymentAdapter, CheckoutRequest, CheckoutSession, ProviderPayment,
)

MP_ACCESS_TOKEN = os.environ.get("MP_ACCESS_TOKEN", "")
MP_API_BASE = os.environ.get("MP_API_BASE", "https://api.mercadopago.com")
# optional; when set, x-signature headers are checked
MP_WEBHOOK_SECRET = os.environ.get("MP_WEBHOOK_SECRET", "")


class MercadoPago(PaymentAdapter):
    name = "mercadopago"

    def __init__(self, http: httpx.AsyncClient,
                 access_token: str = MP_ACCESS_TOKEN,
                 api_base: str = MP_API_BASE,
                 webhook_secret: str = MP_WEBHOOK_SECRET) -> None:
        self.http = http
        self.access_token = access_token
        self.api_base = api_base.rstrip("/")
        self.webhook_secret = webhook_secret

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    async def _call(self, method: str, path: str, **kw) -> httpx.Response:
        url = f"{self.api_base}{path}"
        try:
            return await self.http.request(
                method, url, headers=self._headers(), **kw
            )
        except httpx.TimeoutException as e:
            logger.error("mercadopago {} {} timed out: {}", method, path, e)
            raise UpstreamTimeout("Payment provider timed out")
        except httpx.HTTPError as e:
            logger.error("mercadopago {} {} failed: {}", method, path, e)
            raise UpstreamFailure("Payment provider unavailable")

    async def create_checkout(
            self, request: CheckoutRequest
    ) -> CheckoutSession:
        body = {
            "items": [
                {
                    "title": line.title,
                    "quantity": line.quantity,
                    "unit_price": to_units(line.unit_price),
                    "currency_id": request.currency.upper(),
                }
                for line in request.items
            ],
            "payer": {"email": request.payer_email},
            "back_urls": request.back_urls,
            "auto_return": "approved",
            "notification_url": request.notification_url,
            "external_reference": request.external_reference,
            "statement_descriptor": "CINEFANS",
        }
        resp = await self._call("POST", "/checkout/preferences", json=body)
        if resp.status_code >= 300:
            logger.error(
                "mercadopago preference failed status={} body={}",
                resp.status_code, resp.text[:500],
            )
            raise UpstreamFailure("Could not create the payment preference")
        data = resp.json()
        return CheckoutSession(
            checkout_ref=str(data["id"]),
            redirect_url=data.get("init_point")
            or data.get("sandbox_init_point", ""),
        )

    async def fetch_payment(
            self, payment_id: str
    ) -> Optional[ProviderPayment]:
        resp = await self._call("GET", f"/v1/payments/{payment_id}")
        if resp.status_code == 404:
            return None
        if resp.status_code >= 300:
            logger.error(
                "mercadopago payment {} lookup failed status={}",
                payment_id, resp.status_code,
            )
            raise UpstreamFailure("Could not load the payment")
        data = resp.json()
        return ProviderPayment(
            id=str(data.get("id", payment_id)),
            status=data.get("status") or "pending",
            external_reference=data.get("external_reference"),
            amount=to_cents(data.get("transaction_amount")),
            currency=(data.get("currency_id") or "").lower(),
            raw=data,
        )

    def _check_signature(self, event: dict, headers: dict) -> None:
        # x-signature: "ts=<ts>,v1=<hex hmac>" over the manifest below
        sig = headers.get("x-signature") or ""
        parts = dict(
            p.strip().split("=", 1) for p in sig.split(",") if "=" in p
        )
        ts, v1 = parts.get("ts"), parts.get("v1")
        if not ts or not v1:
            raise Invalid("Invalid signature")
        data_id = str((event.get("data") or {}).get("id", "")).lower()
        request_id = headers.get("x-request-id", "")
        manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
        expected = hmac.new(
            self.webhook_secret.encode(), manifest.encode(), hashlib.sha256
        ).hexdigest()
        if not hmac.compare_digest(expected, v1):
            raise Invalid("Invalid signature")

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        try:
            event = json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise Invalid("Invalid JSON")
        if not isinstance(event, dict) or not event.get("type") \
                or not isinstance(event.get("data"), dict):
            raise Invalid("Malformed notification")
        if self.webhook_secret:
            self._check_signature(event, headers)
        return event
