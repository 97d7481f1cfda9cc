"""Gateway client tests against an in-process httpx transport."""
from typing import Callable, List
from urllib.parse import parse_qs

import httpx
import pytest

from seat_redemption.config import GatewayConfig
from seat_redemption.core.exceptions import UpstreamGatewayError
from seat_redemption.core.records import OrderKind
from seat_redemption.core.signing import verify_sign
from seat_redemption.integrations.gateway import GatewayClient

CONFIG = GatewayConfig(pid="1001", key="merchant-secret", base_url="https://pay.example.com")


def make_client(handler: Callable[[httpx.Request], httpx.Response], seen: List[httpx.Request]) -> GatewayClient:
    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    return GatewayClient(OrderKind.CREDIT, CONFIG, timeout=1.0, transport=httpx.MockTransport(record))


@pytest.mark.unit
def test_build_pay_request_is_signed() -> None:
    client = GatewayClient(OrderKind.CREDIT, CONFIG)

    pay = client.build_pay_request("C1", "Seat order", "10.00", "https://shop.example.com/notify", device="1024")

    assert pay["method"] == "POST"
    assert pay["url"] == "https://pay.example.com/submit.php"
    assert pay["fields"]["device"] == "1024"
    assert pay["fields"]["sign_type"] == "MD5"
    assert verify_sign(pay["fields"], CONFIG.key)
    assert pay["pay_url"].startswith("https://pay.example.com/submit.php?")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_query_order_success() -> None:
    seen: List[httpx.Request] = []
    client = make_client(lambda r: httpx.Response(200, json={"code": 1, "status": 1, "money": "10.00"}), seen)

    body = await client.query_order(out_trade_no="C1")

    assert body["status"] == 1
    params = seen[0].url.params
    assert params["act"] == "order"
    assert params["pid"] == "1001"
    assert params["out_trade_no"] == "C1"
    assert "trade_no" not in params
    await client.close()


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response,error_code",
    [
        (httpx.Response(200, json={"code": -1, "msg": "order not found"}), "gateway_rejected"),
        (httpx.Response(200, text="<p>oops</p>"), "invalid_json"),
        (httpx.Response(200, json=["not", "a", "dict"]), "invalid_json"),
        (httpx.Response(500, text="boom"), "http_500"),
        (
            httpx.Response(
                403, text="<html>Checking your browser - Cloudflare</html>", headers={"content-type": "text/html"}
            ),
            "cf_challenge",
        ),
    ],
    ids=["rejected", "html", "list_body", "http_500", "challenge"],
)
async def test_query_order_failures(response: httpx.Response, error_code: str) -> None:
    client = make_client(lambda r: response, [])

    with pytest.raises(UpstreamGatewayError) as excinfo:
        await client.query_order(out_trade_no="C1")

    assert excinfo.value.payload["error_code"] == error_code
    await client.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_rejected_message_comes_from_gateway() -> None:
    client = make_client(lambda r: httpx.Response(200, json={"code": 0, "msg": "order not found"}), [])

    with pytest.raises(UpstreamGatewayError) as excinfo:
        await client.query_order(trade_no="T1")

    assert excinfo.value.message == "order not found"
    await client.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transport_errors_are_retried() -> None:
    seen: List[httpx.Request] = []

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(unreachable, seen)

    with pytest.raises(UpstreamGatewayError) as excinfo:
        await client.query_order(out_trade_no="C1")

    assert excinfo.value.payload["error_code"] == "network_error"
    assert len(seen) == 3
    await client.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_missing_config() -> None:
    client = GatewayClient(OrderKind.PURCHASE, GatewayConfig(base_url="https://pay.example.com"))

    with pytest.raises(UpstreamGatewayError) as excinfo:
        await client.query_order(out_trade_no="C1")
    assert excinfo.value.payload["error_code"] == "missing_config"

    with pytest.raises(UpstreamGatewayError):
        client.build_pay_request("C1", "Seat order", "10.00", "https://shop.example.com/notify")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refund_request_shape() -> None:
    seen: List[httpx.Request] = []
    client = make_client(lambda r: httpx.Response(200, json={"code": 1, "msg": "refund ok"}), seen)

    body = await client.refund_order("T1", "C1", "10")

    assert body["msg"] == "refund ok"
    request = seen[0]
    assert request.method == "POST"
    assert request.url.params["act"] == "refund"
    form = parse_qs(request.content.decode())
    assert form == {
        "pid": ["1001"],
        "key": ["merchant-secret"],
        "trade_no": ["T1"],
        "out_trade_no": ["C1"],
        "money": ["10.00"],
    }
    await client.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refund_requires_trade_no() -> None:
    client = make_client(lambda r: httpx.Response(200, json={"code": 1}), [])

    with pytest.raises(UpstreamGatewayError) as excinfo:
        await client.refund_order("", "C1", "10.00")

    assert excinfo.value.payload["error_code"] == "missing_trade_no"
