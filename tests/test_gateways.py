import hashlib
import hmac
import json
import time

import pytest

from pdfstore.errors import SignatureError
from pdfstore.gateways import (
    SIGNATURE_TOLERANCE_SECONDS, MercadoPagoGateway, StripeGateway,
)


STRIPE_SECRET = "whsec_test"
MP_SECRET = "mp-secret"


def _stripe_headers(payload: bytes, ts: int = None,
                    secret: str = STRIPE_SECRET) -> dict:
    ts = int(time.time()) if ts is None else ts
    sig = hmac.new(secret.encode(), f"{ts}.".encode() + payload,
                   hashlib.sha256).hexdigest()
    return {"stripe-signature": f"t={ts},v1={sig}"}


def _mp_notification(payment_id: str, request_id: str = "req-1",
                     secret: str = MP_SECRET):
    payload = json.dumps({
        "action": "payment.updated",
        "type": "payment",
        "data": {"id": payment_id},
    }).encode()
    ts = str(int(time.time() * 1000))
    manifest = f"id:{payment_id};request-id:{request_id};ts:{ts};"
    v1 = hmac.new(secret.encode(), manifest.encode(),
                  hashlib.sha256).hexdigest()
    return payload, {
        "x-request-id": request_id,
        "x-signature": f"ts={ts},v1={v1}",
    }


@pytest.fixture
def stripe():
    return StripeGateway(None, "sk_test", STRIPE_SECRET)


@pytest.fixture
def mercadopago():
    return MercadoPagoGateway(None, "tok", MP_SECRET)


EVENT = json.dumps({
    "id": "evt_1",
    "type": "payment_intent.succeeded",
    "data": {"object": {"id": "pi_1", "status": "succeeded"}},
}).encode()


# ===============================================================================
# STRIPE
# ===============================================================================

def test_stripe_valid_signature(stripe):
    event = stripe.verify_webhook(EVENT, _stripe_headers(EVENT))
    assert event["id"] == "evt_1"
    assert event["data"]["object"]["id"] == "pi_1"


def test_stripe_accepts_any_listed_v1(stripe):
    good = _stripe_headers(EVENT)["stripe-signature"]
    ts, v1 = good.split(",")
    header = f"{ts},v1={'0' * 64},{v1}"
    assert stripe.verify_webhook(EVENT, {"stripe-signature": header})["id"] \
        == "evt_1"


def test_stripe_tampered_body(stripe):
    headers = _stripe_headers(EVENT)
    tampered = EVENT.replace(b"pi_1", b"pi_2")
    with pytest.raises(SignatureError, match="Invalid signature"):
        stripe.verify_webhook(tampered, headers)


def test_stripe_wrong_secret(stripe):
    headers = _stripe_headers(EVENT, secret="whsec_other")
    with pytest.raises(SignatureError, match="Invalid signature"):
        stripe.verify_webhook(EVENT, headers)


def test_stripe_stale_timestamp(stripe):
    stale = int(time.time()) - SIGNATURE_TOLERANCE_SECONDS - 1
    with pytest.raises(SignatureError, match="tolerance"):
        stripe.verify_webhook(EVENT, _stripe_headers(EVENT, ts=stale))


def test_stripe_future_timestamp(stripe):
    ahead = int(time.time()) + SIGNATURE_TOLERANCE_SECONDS + 60
    with pytest.raises(SignatureError, match="tolerance"):
        stripe.verify_webhook(EVENT, _stripe_headers(EVENT, ts=ahead))


@pytest.mark.parametrize("header,message", [
    ("garbage", "Malformed signature header"),
    ("t=123", "Malformed signature header"),
    ("v1=abc", "Malformed signature header"),
    ("t=soon,v1=abc", "Malformed signature timestamp"),
])
def test_stripe_malformed_header(stripe, header, message):
    with pytest.raises(SignatureError, match=message):
        stripe.verify_webhook(EVENT, {"stripe-signature": header})


def test_stripe_missing_header(stripe):
    with pytest.raises(SignatureError, match="Missing signature"):
        stripe.verify_webhook(EVENT, {})


# ===============================================================================
# MERCADO PAGO
# ===============================================================================

def test_mercadopago_valid_signature(mercadopago):
    payload, headers = _mp_notification("123")
    assert mercadopago.verify_webhook(payload, headers) == "123"


def test_mercadopago_tampered_payment_id(mercadopago):
    _, headers = _mp_notification("123")
    forged, _ = _mp_notification("999")
    with pytest.raises(SignatureError, match="Invalid signature"):
        mercadopago.verify_webhook(forged, headers)


def test_mercadopago_request_id_is_signed(mercadopago):
    payload, headers = _mp_notification("123")
    headers["x-request-id"] = "req-2"
    with pytest.raises(SignatureError, match="Invalid signature"):
        mercadopago.verify_webhook(payload, headers)


def test_mercadopago_without_secret_rejects_everything():
    gateway = MercadoPagoGateway(None, "tok", "")
    payload, headers = _mp_notification("123")
    with pytest.raises(SignatureError, match="not configured"):
        gateway.verify_webhook(payload, headers)


@pytest.mark.parametrize("header", ["garbage", "ts=123", "v1=abc"])
def test_mercadopago_malformed_header(mercadopago, header):
    payload, headers = _mp_notification("123")
    headers["x-signature"] = header
    with pytest.raises(SignatureError, match="Malformed signature header"):
        mercadopago.verify_webhook(payload, headers)


def test_mercadopago_missing_header(mercadopago):
    payload, headers = _mp_notification("123")
    del headers["x-signature"]
    with pytest.raises(SignatureError, match="Missing signature"):
        mercadopago.verify_webhook(payload, headers)
