import json
from decimal import Decimal

import httpx
import pytest

from application.dtos.payments import GatewayRefundRequest, InitPayment
from core.settings import BkashSettings
from infrastructure.external.payments.bkash_client import BkashClient
from infrastructure.external.payments.exceptions import GatewayError, GatewayRecoverableError

CONFIG = BkashSettings(
    base_url="https://bkash.test/v1.2.0-beta",
    app_key="key",
    app_secret="secret",
    username="merchant",
    password="pw",
    callback_url="https://billing.test/callback",
)


class FakeBkash:
    def __init__(self, responses: dict[str, httpx.Response]):
        self.responses = responses
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.split("/tokenized/checkout/")[-1]
        if path == "token/grant":
            return httpx.Response(200, json={"id_token": "tok-1", "expires_in": 3600})
        return self.responses[path]

    def paths(self) -> list[str]:
        return [r.url.path.split("/tokenized/checkout/")[-1] for r in self.requests]


def _client(fake: FakeBkash) -> BkashClient:
    return BkashClient(CONFIG, transport=httpx.MockTransport(fake))


@pytest.mark.asyncio
async def test_create_payment_caches_token():
    fake = FakeBkash({"create": httpx.Response(200, json={
        "statusCode": "0000", "paymentID": "PAY-1", "bkashURL": "https://pay.bka.sh/PAY-1",
        "transactionStatus": "Initiated",
    })})
    client = _client(fake)
    try:
        result = await client.init_payment(InitPayment(amount=Decimal("34.49"), reference="INV-20260310-0001"))
        await client.init_payment(InitPayment(amount=Decimal("10.00"), reference="INV-20260310-0002"))
    finally:
        await client.aclose()

    assert fake.paths() == ["token/grant", "create", "create"]
    grant = fake.requests[0]
    assert grant.headers["username"] == "merchant"
    assert json.loads(grant.content) == {"app_key": "key", "app_secret": "secret"}

    create = fake.requests[1]
    assert create.headers["Authorization"] == "tok-1"
    assert create.headers["X-APP-Key"] == "key"
    body = json.loads(create.content)
    assert body["amount"] == "34.49"
    assert body["merchantInvoiceNumber"] == "INV-20260310-0001"
    assert body["callbackURL"] == "https://billing.test/callback"

    assert result.status == "pending"
    assert result.provider_ref == "PAY-1"
    assert result.redirect_url == "https://pay.bka.sh/PAY-1"


@pytest.mark.asyncio
async def test_refund_maps_refund_trx_id():
    fake = FakeBkash({"payment/refund": httpx.Response(200, json={
        "statusCode": "0000", "refundTrxID": "RTX-7", "transactionStatus": "Completed",
    })})
    client = _client(fake)
    result = await client.refund(GatewayRefundRequest(
        payment_ref="TRX9", gateway_payment_id="PAY-123", amount=Decimal("20.00"), reason="duplicate charge",
    ))
    await client.aclose()

    body = json.loads(fake.requests[-1].content)
    assert body["paymentID"] == "PAY-123"
    assert body["trxID"] == "TRX9"
    assert body["amount"] == "20.00"
    assert result.refund_ref == "RTX-7"
    assert result.status == "success"


@pytest.mark.asyncio
async def test_status_code_failure_raises_gateway_error():
    fake = FakeBkash({"payment/refund": httpx.Response(200, json={
        "statusCode": "2001", "statusMessage": "Invalid App Key",
    })})
    client = _client(fake)
    with pytest.raises(GatewayError) as exc_info:
        await client.refund(GatewayRefundRequest(payment_ref="TRX9", amount=Decimal("1.00")))
    assert exc_info.value.details["provider_code"] == "2001"
    assert exc_info.value.message == "Invalid App Key"


@pytest.mark.asyncio
async def test_server_error_is_recoverable():
    fake = FakeBkash({"create": httpx.Response(503, text="unavailable")})
    client = _client(fake)
    with pytest.raises(GatewayRecoverableError):
        await client.init_payment(InitPayment(amount=Decimal("5.00"), reference="INV-1"))


def test_missing_credentials_rejected():
    with pytest.raises(RuntimeError):
        BkashClient(BkashSettings(app_key="key"))
