import base64
import hashlib
import hmac
import json
import os
import sys

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from localserve.services.payment_gateway import (
    PaymentGateway,
    PaymentGatewayError,
    PaymentGatewayNotConfiguredError,
)
from localserve.services.pincode_lookup import PincodeLookup, PincodeLookupError, PincodeNotFoundError


def test_create_order_posts_amount_in_paise_with_basic_auth():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "order_abc", "amount": seen["body"]["amount"], "currency": "INR"})

    gateway = PaymentGateway(key_id="rzp_key", key_secret="rzp_secret", transport=httpx.MockTransport(handler))
    order = gateway.create_order(amount=149.5, receipt="receipt_sr_1")

    assert order["id"] == "order_abc"
    assert seen["path"] == "/v1/orders"
    assert seen["body"] == {"amount": 14950, "currency": "INR", "receipt": "receipt_sr_1"}
    expected_auth = base64.b64encode(b"rzp_key:rzp_secret").decode("ascii")
    assert seen["auth"] == f"Basic {expected_auth}"


def test_create_order_wraps_gateway_failures():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"description": "Authentication failed"}})

    gateway = PaymentGateway(key_id="rzp_key", key_secret="wrong", transport=httpx.MockTransport(handler))
    with pytest.raises(PaymentGatewayError, match="Error creating payment order"):
        gateway.create_order(amount=10)


def test_create_order_requires_order_id():
    gateway = PaymentGateway(
        key_id="rzp_key",
        key_secret="rzp_secret",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"status": "created"})),
    )
    with pytest.raises(PaymentGatewayError, match="no order id"):
        gateway.create_order(amount=10)


def test_unconfigured_gateway_refuses_work():
    gateway = PaymentGateway(key_id="", key_secret="")
    assert gateway.configured is False
    with pytest.raises(PaymentGatewayNotConfiguredError):
        gateway.create_order(amount=10)
    with pytest.raises(PaymentGatewayNotConfiguredError):
        gateway.verify_signature("order_1", "pay_1", "sig")


def test_create_order_rejects_non_positive_amounts():
    gateway = PaymentGateway(key_id="rzp_key", key_secret="rzp_secret")
    with pytest.raises(PaymentGatewayError, match="positive"):
        gateway.create_order(amount=0)


def test_verify_signature():
    gateway = PaymentGateway(key_id="rzp_key", key_secret="rzp_secret")
    signature = hmac.new(b"rzp_secret", b"order_1|pay_1", hashlib.sha256).hexdigest()

    assert gateway.verify_signature("order_1", "pay_1", signature) is True
    assert gateway.verify_signature("order_1", "pay_2", signature) is False
    assert gateway.verify_signature("order_1", "pay_1", "") is False


def _lookup(payload, status_code=200) -> PincodeLookup:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.startswith("/pincode/")
        return httpx.Response(status_code, json=payload)

    return PincodeLookup(transport=httpx.MockTransport(handler))


def test_pincode_lookup_success():
    lookup = _lookup(
        [
            {
                "Status": "Success",
                "PostOffice": [
                    {"Name": "Connaught Place", "District": "Central Delhi", "State": "Delhi"},
                    {"Name": "Janpath", "District": "New Delhi", "State": "Delhi"},
                ],
            }
        ]
    )
    location = lookup.lookup(" 110001 ")
    assert location.pincode == "110001"
    assert location.city == "Central Delhi"
    assert location.state == "Delhi"


def test_pincode_lookup_unknown_pincode():
    lookup = _lookup([{"Status": "Error", "PostOffice": None}])
    with pytest.raises(PincodeNotFoundError):
        lookup.lookup("999999")


def test_pincode_lookup_rejects_malformed_input_without_calling_out():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    lookup = PincodeLookup(transport=httpx.MockTransport(handler))
    with pytest.raises(PincodeNotFoundError):
        lookup.lookup("12ab56")


def test_pincode_lookup_upstream_failure():
    lookup = _lookup({"message": "unavailable"}, status_code=503)
    with pytest.raises(PincodeLookupError) as exc_info:
        lookup.lookup("110001")
    assert not isinstance(exc_info.value, PincodeNotFoundError)


def test_verify_signature_rejects_non_ascii_signatures():
    gateway = PaymentGateway(key_id="rzp_key", key_secret="rzp_secret")
    assert gateway.verify_signature(order_id="order_1", payment_id="pay_1", signature="é" * 64) is False
    assert gateway.verify_signature(order_id="order_1", payment_id="pay_1", signature="\ud800") is False


@pytest.mark.parametrize(
    "body",
    [
        {"text": "<html>gateway maintenance</html>"},
        {"json": [{"id": "order_abc"}]},
    ],
)
def test_create_order_rejects_malformed_bodies(body):
    gateway = PaymentGateway(
        key_id="rzp_key",
        key_secret="rzp_secret",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, **body)),
    )
    with pytest.raises(PaymentGatewayError):
        gateway.create_order(amount=10)


def test_pincode_lookup_malformed_post_office():
    lookup = _lookup([{"Status": "Success", "PostOffice": ["Connaught Place"]}])
    with pytest.raises(PincodeLookupError) as exc_info:
        lookup.lookup("110001")
    assert not isinstance(exc_info.value, PincodeNotFoundError)
