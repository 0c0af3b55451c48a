import base64
import hashlib
import hmac
import json
import logging
import os
import re
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional, TypedDict

import httpx

from .errors import SignatureError, UpstreamError, ValidationError
from .money import D, Money, from_minor, round_money

logger = logging.getLogger(__name__)

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")

STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
MERCADOPAGO_ACCESS_TOKEN = os.environ.get("MERCADOPAGO_ACCESS_TOKEN", "")
MERCADOPAGO_WEBHOOK_SECRET = os.environ.get("MERCADOPAGO_WEBHOOK_SECRET", "")
PIX_NOTIFICATION_URL = os.environ.get("PIX_NOTIFICATION_URL", "")

CARD_BACKEND = os.getenv(
    "CARD_BACKEND", "stripe" if STRIPE_SECRET_KEY else "mock"
).lower()
PIX_BACKEND = os.getenv(
    "PIX_BACKEND", "mercadopago" if MERCADOPAGO_ACCESS_TOKEN else "mock"
).lower()

STRIPE_API = "https://api.stripe.com/v1"
MERCADOPAGO_API = "https://api.mercadopago.com/v1"

# max age of a signed card webhook
SIGNATURE_TOLERANCE_SECONDS = 300


# ----------------------------
# Normalized shapes
# ----------------------------
class CardIntent(TypedDict):
    id: str
    client_secret: str
    status: str
    amount: int  # minor units
    currency: str
    metadata: Dict[str, str]


class PixPayment(TypedDict):
    id: str
    status: str
    amount: Money
    qr_code: str
    qr_code_base64: str
    metadata: Dict[str, str]


@dataclass
class PaymentEvent:
    """A provider notification reduced to what the reconciler needs."""
    provider: str  # card | pix
    payment_id: str
    status: str  # raw provider status
    amount: Optional[Money] = None
    currency: str = "BRL"
    metadata: Dict[str, str] = field(default_factory=dict)
    event_id: Optional[str] = None


def _load_json(payload: bytes) -> dict:
    try:
        event = json.loads(payload.decode())
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Invalid JSON")
    if not isinstance(event, dict):
        raise ValidationError("Invalid JSON")
    return event


def _parse_signature_header(header: str) -> Dict[str, list]:
    parts: Dict[str, list] = {}
    for chunk in header.split(","):
        if "=" not in chunk:
            continue
        k, v = chunk.split("=", 1)
        parts.setdefault(k.strip(), []).append(v.strip())
    return parts


def _response_json(r: httpx.Response) -> dict:
    try:
        body = r.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


# ----------------------------
# Card gateway interface
# ----------------------------
class CardGateway(ABC):
    provider = "card"
    min_amount = D("0.50")

    @abstractmethod
    async def create_intent(
        self, amount_minor: int, currency: str, metadata: Dict[str, str],
        idempotency_key: str, receipt_email: Optional[str] = None,
    ) -> CardIntent: ...

    @abstractmethod
    async def retrieve_intent(self, intent_id: str) -> CardIntent: ...

    @abstractmethod
    async def cancel_intent(self, intent_id: str) -> CardIntent: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    def parse_event(self, event: dict) -> Optional[PaymentEvent]:
        """Stripe-shaped event -> PaymentEvent; None for event types that do
        not concern orders."""
        kind = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        if kind.startswith("payment_intent."):
            if not obj.get("id"):
                raise ValidationError("event without payment intent id")
            return self.intent_event(obj, event_id=event.get("id"))
        if kind == "charge.refunded":
            intent_id = obj.get("payment_intent")
            if not intent_id:
                return None
            return PaymentEvent(
                provider=self.provider,
                payment_id=intent_id,
                status="refunded",
                currency=(obj.get("currency") or "brl").upper(),
                metadata=dict(obj.get("metadata") or {}),
                event_id=event.get("id"),
            )
        logger.debug("ignoring card event type %s", kind)
        return None

    def intent_event(
        self, intent: dict, event_id: Optional[str] = None
    ) -> PaymentEvent:
        amount_minor = intent.get("amount_received") or intent.get("amount")
        return PaymentEvent(
            provider=self.provider,
            payment_id=intent["id"],
            status=intent.get("status", ""),
            amount=(
                from_minor(amount_minor) if amount_minor is not None else None
            ),
            currency=(intent.get("currency") or "brl").upper(),
            metadata=dict(intent.get("metadata") or {}),
            event_id=event_id,
        )


def _as_intent(obj: dict) -> CardIntent:
    return {
        "id": obj["id"],
        "client_secret": obj.get("client_secret") or "",
        "status": obj.get("status", ""),
        "amount": int(obj.get("amount") or 0),
        "currency": obj.get("currency") or "brl",
        "metadata": dict(obj.get("metadata") or {}),
    }


class StripeGateway(CardGateway):
    def __init__(self, http: httpx.AsyncClient, secret_key: str,
                 webhook_secret: str):
        self.http = http
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    async def _request(self, method: str, path: str, data: dict = None,
                       idempotency_key: str = None) -> dict:
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            r = await self.http.request(
                method, f"{STRIPE_API}{path}", data=data, headers=headers,
                auth=(self.secret_key, ""),
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"card gateway unreachable: {e}") from e
        body = _response_json(r)
        if r.status_code >= 400:
            msg = (body.get("error") or {}).get("message") or r.text
            logger.error("card gateway %s %s -> %s: %s",
                         method, path, r.status_code, msg)
            raise UpstreamError(f"card gateway error: {msg}")
        return body

    async def create_intent(self, amount_minor, currency, metadata,
                            idempotency_key, receipt_email=None):
        data = {
            "amount": str(amount_minor),
            "currency": currency.lower(),
            "automatic_payment_methods[enabled]": "true",
        }
        for k, v in metadata.items():
            data[f"metadata[{k}]"] = v
        if receipt_email:
            data["receipt_email"] = receipt_email
        obj = await self._request("POST", "/payment_intents", data=data,
                                  idempotency_key=idempotency_key)
        return _as_intent(obj)

    async def retrieve_intent(self, intent_id):
        return _as_intent(
            await self._request("GET", f"/payment_intents/{intent_id}")
        )

    async def cancel_intent(self, intent_id):
        return _as_intent(
            await self._request("POST", f"/payment_intents/{intent_id}/cancel")
        )

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        header = headers.get("stripe-signature")
        if not header:
            raise SignatureError("Missing signature")
        parts = _parse_signature_header(header)
        ts = (parts.get("t") or [None])[0]
        signatures = parts.get("v1") or []
        if not ts or not signatures:
            raise SignatureError("Malformed signature header")
        try:
            ts_int = int(ts)
        except ValueError:
            raise SignatureError("Malformed signature timestamp")
        if abs(time.time() - ts_int) > SIGNATURE_TOLERANCE_SECONDS:
            raise SignatureError("Signature timestamp outside tolerance")

        signed = ts.encode() + b"." + payload
        expected = hmac.new(
            self.webhook_secret.encode(), signed, hashlib.sha256
        ).hexdigest()
        if not any(hmac.compare_digest(expected, s) for s in signatures):
            raise SignatureError("Invalid signature")
        return _load_json(payload)


class MockCardGateway(CardGateway):
    """In-process card gateway speaking Stripe's event shape, signed like
    MockPay (base64 HMAC in ``x-mockpay-signature``)."""

    def __init__(self, secret: str = MOCK_SECRET):
        self.secret = secret
        self.intents: Dict[str, dict] = {}
        self._by_idempotency_key: Dict[str, str] = {}

    async def create_intent(self, amount_minor, currency, metadata,
                            idempotency_key, receipt_email=None):
        existing = self._by_idempotency_key.get(idempotency_key)
        if existing:
            return _as_intent(self.intents[existing])
        intent_id = f"pi_mock_{uuid.uuid4().hex}"
        self.intents[intent_id] = {
            "id": intent_id,
            "client_secret": f"{intent_id}_secret_{uuid.uuid4().hex[:8]}",
            "status": "requires_payment_method",
            "amount": amount_minor,
            "amount_received": 0,
            "currency": currency.lower(),
            "metadata": dict(metadata),
        }
        self._by_idempotency_key[idempotency_key] = intent_id
        return _as_intent(self.intents[intent_id])

    def _get(self, intent_id: str) -> dict:
        intent = self.intents.get(intent_id)
        if intent is None:
            raise UpstreamError(f"card gateway error: no such intent "
                                f"{intent_id}")
        return intent

    async def retrieve_intent(self, intent_id):
        return _as_intent(self._get(intent_id))

    async def cancel_intent(self, intent_id):
        intent = self._get(intent_id)
        if intent["status"] == "succeeded":
            raise UpstreamError("card gateway error: intent already "
                                "succeeded")
        intent["status"] = "canceled"
        return _as_intent(intent)

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        if not sig or not hmac.compare_digest(self.sign(payload), sig):
            raise SignatureError("Invalid signature")
        return _load_json(payload)

    def emit(self, intent_id: str, status: str = "succeeded",
             amount_minor: Optional[int] = None,
             event_id: Optional[str] = None):
        """Settle an intent and build the signed webhook for it.
        Returns (payload, headers)."""
        intent = self._get(intent_id)
        intent["status"] = status
        if status == "succeeded":
            intent["amount_received"] = (
                intent["amount"] if amount_minor is None else amount_minor
            )
        kind = {
            "succeeded": "payment_intent.succeeded",
            "canceled": "payment_intent.canceled",
            "processing": "payment_intent.processing",
        }.get(status, "payment_intent.payment_failed")
        event = {
            "id": event_id or f"evt_{uuid.uuid4().hex}",
            "type": kind,
            "data": {"object": dict(intent)},
        }
        payload = json.dumps(event).encode()
        return payload, {
            "x-mockpay-signature": self.sign(payload),
            "content-type": "application/json",
        }


# ----------------------------
# PIX gateway interface
# ----------------------------
class PixGateway(ABC):
    provider = "pix"
    min_amount = D("0.01")

    @abstractmethod
    async def create_payment(
        self, amount: Money, description: str, payer_email: str,
        idempotency_key: str, metadata: Dict[str, str],
    ) -> PixPayment: ...

    @abstractmethod
    async def get_payment(self, payment_id: str) -> PixPayment: ...

    # returns the payment id the notification is about, None for
    # notifications that carry none
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> Optional[str]:
        ...

    def payment_event(
        self, payment: PixPayment, event_id: Optional[str] = None
    ) -> PaymentEvent:
        return PaymentEvent(
            provider=self.provider,
            payment_id=payment["id"],
            status=payment["status"],
            amount=payment["amount"],
            currency="BRL",
            metadata=dict(payment.get("metadata") or {}),
            event_id=event_id,
        )


def _notification_payment_id(body: dict) -> Optional[str]:
    data = body.get("data")
    if isinstance(data, dict) and data.get("id"):
        return str(data["id"])
    resource = body.get("resource")
    if isinstance(resource, str):
        m = re.search(r"/payments/(\d+)", resource)
        if m:
            return m.group(1)
        if resource.isdigit():
            return resource
    if body.get("type") == "payment" and body.get("id"):
        return str(body["id"])
    return None


class MercadoPagoGateway(PixGateway):
    def __init__(self, http: httpx.AsyncClient, access_token: str,
                 webhook_secret: str, notification_url: str = ""):
        self.http = http
        self.access_token = access_token
        self.webhook_secret = webhook_secret
        self.notification_url = notification_url

    async def _request(self, method: str, path: str, json_body: dict = None,
                       idempotency_key: str = None) -> dict:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        try:
            r = await self.http.request(
                method, f"{MERCADOPAGO_API}{path}", json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"PIX gateway unreachable: {e}") from e
        body = _response_json(r)
        if r.status_code >= 400:
            msg = body.get("message") or r.text
            logger.error("PIX gateway %s %s -> %s: %s",
                         method, path, r.status_code, msg)
            raise UpstreamError(f"PIX gateway error: {msg}")
        return body

    @staticmethod
    def _as_payment(obj: dict) -> PixPayment:
        poi = obj.get("point_of_interaction") or {}
        td = poi.get("transaction_data") or {}
        return {
            "id": str(obj["id"]),
            "status": obj.get("status", ""),
            "amount": round_money(obj.get("transaction_amount") or 0),
            "qr_code": td.get("qr_code") or "",
            "qr_code_base64": td.get("qr_code_base64") or "",
            "metadata": {
                k: str(v) for k, v in (obj.get("metadata") or {}).items()
                if v is not None
            },
        }

    async def create_payment(self, amount, description, payer_email,
                             idempotency_key, metadata):
        body = {
            "transaction_amount": float(round_money(amount)),
            "description": description,
            "payment_method_id": "pix",
            "payer": {"email": payer_email},
            "external_reference": metadata.get("order_id"),
            "metadata": metadata,
        }
        if self.notification_url:
            body["notification_url"] = self.notification_url
        obj = await self._request("POST", "/payments", json_body=body,
                                  idempotency_key=idempotency_key)
        return self._as_payment(obj)

    async def get_payment(self, payment_id):
        return self._as_payment(
            await self._request("GET", f"/payments/{payment_id}")
        )

    def verify_webhook(self, payload: bytes, headers: dict) -> Optional[str]:
        body = _load_json(payload)
        payment_id = _notification_payment_id(body)

        if not self.webhook_secret:
            raise SignatureError("Webhook secret not configured")
        header = headers.get("x-signature")
        if not header:
            raise SignatureError("Missing signature")
        parts = _parse_signature_header(header)
        ts = (parts.get("ts") or [None])[0]
        v1 = (parts.get("v1") or [None])[0]
        if not ts or not v1:
            raise SignatureError("Malformed signature header")

        manifest = "id:{};request-id:{};ts:{};".format(
            payment_id or "", headers.get("x-request-id", ""), ts
        )
        expected = hmac.new(
            self.webhook_secret.encode(), manifest.encode(), hashlib.sha256
        ).hexdigest()
        if not hmac.compare_digest(expected, v1):
            raise SignatureError("Invalid signature")
        return payment_id


class MockPixGateway(PixGateway):
    def __init__(self, secret: str = MOCK_SECRET):
        self.secret = secret
        self.payments: Dict[str, dict] = {}
        self._by_idempotency_key: Dict[str, str] = {}
        self._seq = 1000

    async def create_payment(self, amount, description, payer_email,
                             idempotency_key, metadata):
        existing = self._by_idempotency_key.get(idempotency_key)
        if existing:
            return dict(self.payments[existing])
        self._seq += 1
        payment_id = str(self._seq)
        qr = f"00020126580014br.gov.bcb.pix0136mock-{payment_id}5204000053039865802BR"
        self.payments[payment_id] = {
            "id": payment_id,
            "status": "pending",
            "amount": round_money(amount),
            "qr_code": qr,
            "qr_code_base64": base64.b64encode(qr.encode()).decode(),
            "metadata": dict(metadata),
        }
        self._by_idempotency_key[idempotency_key] = payment_id
        return dict(self.payments[payment_id])

    async def get_payment(self, payment_id):
        payment = self.payments.get(payment_id)
        if payment is None:
            raise UpstreamError(f"PIX gateway error: no such payment "
                                f"{payment_id}")
        return dict(payment)

    def set_status(self, payment_id: str, status: str,
                   amount: Optional[Decimal] = None) -> None:
        self.payments[payment_id]["status"] = status
        if amount is not None:
            self.payments[payment_id]["amount"] = round_money(amount)

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def verify_webhook(self, payload: bytes, headers: dict) -> Optional[str]:
        sig = headers.get("x-mockpay-signature")
        if not sig or not hmac.compare_digest(self.sign(payload), sig):
            raise SignatureError("Invalid signature")
        return _notification_payment_id(_load_json(payload))

    def notification(self, payment_id: str):
        payload = json.dumps({
            "action": "payment.updated",
            "type": "payment",
            "data": {"id": payment_id},
        }).encode()
        return payload, {
            "x-mockpay-signature": self.sign(payload),
            "content-type": "application/json",
        }


# ----------------------------
# Factories
# ----------------------------
def new_card_gateway(http: httpx.AsyncClient) -> CardGateway:
    if CARD_BACKEND == "stripe":
        return StripeGateway(http, STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET)
    return MockCardGateway()


def new_pix_gateway(http: httpx.AsyncClient) -> PixGateway:
    if PIX_BACKEND == "mercadopago":
        return MercadoPagoGateway(
            http, MERCADOPAGO_ACCESS_TOKEN, MERCADOPAGO_WEBHOOK_SECRET,
            PIX_NOTIFICATION_URL,
        )
    return MockPixGateway()
