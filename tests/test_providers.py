import base64
import hashlib
import hmac
import json

import pytest
import requests
from bson import ObjectId

from conftest import fund, make_user
from smartsports.providers import (
    AirtelMoneyClient,
    MtnMomoClient,
    PaymentGateways,
    ProviderError,
    RSwitchClient,
    WalletProvider,
    msisdn,
    rswitch_signature,
)

CONFIG = {
    "MTN_MOMO_API_URL": "https://mtn.example/",
    "MTN_MOMO_SECONDARY_API_URL": "https://mtn-backup.example",
    "MTN_MOMO_API_USER_ID": "uid",
    "MTN_MOMO_API_KEY": "key",
    "MTN_MOMO_SUBSCRIPTION_KEY": "sub",
    "AIRTEL_MONEY_API_URL": "https://airtel.example",
    "RSWITCH_API_URL": "https://rswitch.example",
    "RSWITCH_SECRET_KEY": "rs-secret",
    "RSWITCH_MERCHANT_ID": "M-1",
    "PROVIDER_TIMEOUT_SECONDS": 5,
}


def response(status=200, body=None):
    r = requests.Response()
    r.status_code = status
    r._content = json.dumps(body).encode("utf-8") if body is not None else b""
    return r


class StubSession(requests.Session):
    def __init__(self, *replies):
        super().__init__()
        self.replies = list(replies)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def payment(**extra):
    p = {"_id": ObjectId(), "payment_reference": "SSR1700000000000123", "total_amount": 1239,
         "currency": "RWF", "customer_phone": "+250788123456", "customer_email": "fan@example.com"}
    p.update(extra)
    return p


def test_msisdn():
    assert msisdn("+250 788 123 456") == "250788123456"
    assert msisdn("") == ""


def test_rswitch_signature_sorts_keys():
    expected = hmac.new(b"s", b"a=1&b=two", hashlib.sha256).hexdigest()
    assert rswitch_signature({"b": "two", "a": 1}, "s") == expected


def test_mtn_token_is_cached_between_charges():
    session = StubSession(response(200, {"access_token": "tok", "expires_in": 3600}), response(202), response(202))
    client = MtnMomoClient("mtn_primary", CONFIG["MTN_MOMO_API_URL"], CONFIG, session)

    first = client.charge(payment())
    client.charge(payment())
    assert len(session.calls) == 3

    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", "https://mtn.example/collection/token/")
    assert kwargs["headers"]["Authorization"] == "Basic " + base64.b64encode(b"uid:key").decode()

    method, url, kwargs = session.calls[1]
    assert url == "https://mtn.example/collection/v1_0/requesttopay"
    assert kwargs["timeout"] == 5.0
    assert kwargs["headers"]["Authorization"] == "Bearer tok"
    assert kwargs["headers"]["X-Target-Environment"] == "sandbox"
    assert kwargs["headers"]["X-Reference-Id"] == first.external_reference
    assert kwargs["json"]["payer"] == {"partyIdType": "MSISDN", "partyId": "250788123456"}
    assert kwargs["json"]["amount"] == "1239"

    assert first.provider == "mtn_primary"
    assert first.status == "processing"


def test_mtn_status_mapping():
    session = StubSession(
        response(200, {"access_token": "tok"}),
        response(200, {"status": "SUCCESSFUL"}),
        response(200, {"status": "FAILED"}),
        response(200, {"status": "PENDING"}),
    )
    client = MtnMomoClient("mtn_primary", CONFIG["MTN_MOMO_API_URL"], CONFIG, session)
    p = payment(external_reference="ref-1")
    assert [client.get_status(p) for _ in range(3)] == ["completed", "failed", "processing"]
    assert session.calls[1][1].endswith("/collection/v1_0/requesttopay/ref-1")


def test_airtel_charge_and_status():
    session = StubSession(
        response(200, {"access_token": "air"}),
        response(200, {"data": {"transaction": {"id": "AT-77", "status": "TA"}}}),
        response(200, {"data": {"transaction": {"status": "TF"}}}),
    )
    client = AirtelMoneyClient("airtel_primary", CONFIG["AIRTEL_MONEY_API_URL"], CONFIG, session)
    result = client.charge(payment())
    assert result.external_reference == "AT-77"
    assert session.calls[1][2]["headers"]["X-Country"] == "RW"
    assert client.get_status(payment(external_reference="AT-77")) == "failed"


def test_rswitch_charge_signs_request():
    session = StubSession(response(200, {"transactionId": "RS-9", "paymentUrl": "https://pay.example/RS-9"}))
    client = RSwitchClient("rswitch", CONFIG["RSWITCH_API_URL"], CONFIG, session)
    result = client.charge(payment())
    assert result.external_reference == "RS-9"
    assert result.payment_url == "https://pay.example/RS-9"

    sent = dict(session.calls[0][2]["json"])
    signature = sent.pop("signature")
    assert signature == rswitch_signature(sent, "rs-secret")
    assert sent["merchantId"] == "M-1"


def test_rswitch_requires_transaction_id():
    client = RSwitchClient("rswitch", CONFIG["RSWITCH_API_URL"], CONFIG, StubSession(response(200, {})))
    with pytest.raises(ProviderError):
        client.charge(payment())


@pytest.mark.parametrize("reply", [requests.ConnectionError("down"), requests.Timeout("slow"), response(500, {})])
def test_transport_errors_become_provider_errors(reply):
    client = RSwitchClient("rswitch", CONFIG["RSWITCH_API_URL"], CONFIG, StubSession(reply))
    with pytest.raises(ProviderError) as exc:
        client.charge(payment())
    assert exc.value.provider == "rswitch"
    assert exc.value.message.startswith("request failed")


def test_invalid_json_response():
    bad = requests.Response()
    bad.status_code = 200
    bad._content = b"<html>"
    client = RSwitchClient("rswitch", CONFIG["RSWITCH_API_URL"], CONFIG, StubSession(bad))
    with pytest.raises(ProviderError) as exc:
        client.charge(payment())
    assert exc.value.message == "invalid JSON response"


def test_unconfigured_provider_fails_without_network():
    session = StubSession()
    client = RSwitchClient("rswitch", "", CONFIG, session)
    with pytest.raises(ProviderError) as exc:
        client.charge(payment())
    assert exc.value.message == "provider is not configured"
    assert session.calls == []


def test_failover_to_next_provider():
    session = StubSession(response(200, {"access_token": "tok"}), response(202))
    gw = PaymentGateways({**CONFIG, "MTN_MOMO_API_URL": ""}, session)
    result, attempts = gw.process(payment(payment_method="mtn_momo"))
    assert result.provider == "mtn_secondary"
    assert attempts == [{"provider": "mtn_primary", "error": "provider is not configured"}]
    assert session.calls[0][1].startswith("https://mtn-backup.example")


def test_every_provider_failing():
    gw = PaymentGateways({}, StubSession())
    result, attempts = gw.process(payment(payment_method="mtn_momo"))
    assert result is None
    assert [a["provider"] for a in attempts] == ["mtn_primary", "mtn_secondary"]

    assert gw.process(payment(payment_method="cash")) == (None, [])


def test_poll_needs_provider_and_reference():
    session = StubSession(response(200, {"access_token": "tok"}), response(200, {"status": "SUCCESSFUL"}))
    gw = PaymentGateways(CONFIG, session)
    assert gw.poll(payment(provider=None)) is None
    assert gw.poll(payment(provider="mtn_primary")) is None
    assert gw.poll(payment(provider="mtn_primary", external_reference="x")) == "completed"


def test_wallet_provider(app):
    uid = make_user(app, "payer@example.com")
    fund(app, uid, 2000)
    provider = WalletProvider()
    with app.app_context():
        result = provider.charge(payment(user_id=uid))
        assert result.status == "completed"
        assert result.external_reference

        with pytest.raises(ProviderError) as exc:
            provider.charge(payment(user_id=uid))
        assert exc.value.message == "Insufficient wallet balance."

        with pytest.raises(ProviderError):
            provider.charge(payment(user_id=None))
