"""
EasyPay-style payment gateway client.

Implements:
- Signed pay requests (``submit.php``)
- Active order query (``api.php?act=order``)
- Server-side refund (``api.php?act=refund``)
- Retry with exponential backoff for transport errors
"""
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from seat_redemption.config import GatewayConfig
from seat_redemption.core.exceptions import UpstreamGatewayError
from seat_redemption.core.records import OrderKind
from seat_redemption.core.signing import build_sign, format_money
from seat_redemption.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SUCCESS_CODE = 1
PAID_STATUS = 1


def _snippet(text: str, limit: int = 200) -> str:
    return " ".join(text.split())[:limit]


def _looks_like_challenge(response: httpx.Response) -> bool:
    content_type = response.headers.get("content-type", "")
    body = response.text[:2000].lower()
    return "text/html" in content_type and ("cloudflare" in body or "cf-chl" in body)


class GatewayClient:
    """
    Client for one merchant account on an EasyPay-compatible gateway.

    Every request is bounded by ``timeout``; callers invoke it from inside
    order locks, so a stalled gateway must not hold the lock forever.
    """

    def __init__(
        self,
        kind: OrderKind,
        config: GatewayConfig,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        pay_path: str = "submit.php",
    ):
        """
        Initialize gateway client.

        Args:
            kind: Which order flavor this gateway backs
            config: Merchant pid, key and base URL
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
            pay_path: Path of the hosted pay page relative to the base URL
        """
        self.kind = kind
        self.config = config
        self.timeout = timeout
        self.pay_path = pay_path.strip("/")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _require_config(self) -> None:
        if not self.config.is_configured or not self.config.base_url:
            raise UpstreamGatewayError(
                f"{self.name} gateway is not configured",
                payload={"error_code": "missing_config"},
            )

    def build_pay_request(
        self,
        order_no: str,
        title: str,
        money: str,
        notify_url: str,
        return_url: Optional[str] = None,
        device: Optional[str] = None,
        pay_type: str = "epay",
    ) -> Dict[str, Any]:
        """
        Build the signed form a browser posts to open the pay page.

        Returns:
            Dict[str, Any]: ``{"method", "url", "fields", "pay_url"}``
        """
        self._require_config()
        fields: Dict[str, Any] = {
            "pid": self.config.pid,
            "type": pay_type,
            "out_trade_no": order_no,
            "name": title,
            "money": money,
            "notify_url": notify_url,
        }
        if return_url:
            fields["return_url"] = return_url
        if device:
            fields["device"] = device
        fields["sign"] = build_sign(fields, self.config.key)
        fields["sign_type"] = "MD5"
        url = f"{self.config.base_url}/{self.pay_path}"
        return {
            "method": "POST",
            "url": url,
            "fields": fields,
            "pay_url": f"{url}?{urlencode(fields)}",
        }

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        reraise=True,
    )
    async def _send(self, method: str, params: Dict[str, Any], data: Optional[Dict[str, Any]] = None) -> httpx.Response:
        return await self._http().request(method, "/api.php", params=params, data=data)

    async def _call(
        self, operation: str, method: str, params: Dict[str, Any], data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Send one API request and return the decoded body, or raise UpstreamGatewayError."""
        started = time.perf_counter()
        status = "error"
        try:
            try:
                response = await self._send(method, params, data)
            except httpx.HTTPError as e:
                logger.warning("gateway_transport_error", gateway=self.name, operation=operation, error=str(e))
                raise UpstreamGatewayError(
                    f"{self.name} gateway unreachable",
                    payload={"error_code": "network_error"},
                ) from e

            if _looks_like_challenge(response):
                raise UpstreamGatewayError(
                    f"{self.name} gateway answered with a browser challenge",
                    payload={"error_code": "cf_challenge"},
                )
            if response.status_code >= 400:
                raise UpstreamGatewayError(
                    f"{self.name} gateway returned HTTP {response.status_code}",
                    payload={"error_code": f"http_{response.status_code}"},
                )
            try:
                body = response.json()
            except ValueError as e:
                raise UpstreamGatewayError(
                    f"{self.name} gateway returned a non-JSON body",
                    payload={"error_code": "invalid_json", "body_snippet": _snippet(response.text)},
                ) from e
            if not isinstance(body, dict):
                raise UpstreamGatewayError(
                    f"{self.name} gateway returned an unexpected body",
                    payload={"error_code": "invalid_json"},
                )
            try:
                code = int(body.get("code"))
            except (TypeError, ValueError):
                code = None
            if code != SUCCESS_CODE:
                message = str(body.get("msg") or body.get("message") or "gateway rejected the request")
                raise UpstreamGatewayError(
                    message,
                    payload={"error_code": "gateway_rejected", "gateway_code": body.get("code")},
                )
            status = "ok"
            return body
        finally:
            metrics.record_gateway_call(self.name, operation, status, time.perf_counter() - started)

    async def query_order(
        self, out_trade_no: Optional[str] = None, trade_no: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Ask the gateway for the current state of an order.

        Args:
            out_trade_no: Our order number
            trade_no: Gateway trade number

        Returns:
            Dict[str, Any]: Gateway payload (``status`` 1 means paid)

        Raises:
            UpstreamGatewayError: On transport, HTTP, decoding or gateway errors
        """
        self._require_config()
        if not out_trade_no and not trade_no:
            raise UpstreamGatewayError(
                "order query needs out_trade_no or trade_no", payload={"error_code": "missing_order_no"}
            )
        params: Dict[str, Any] = {"act": "order", "pid": self.config.pid, "key": self.config.key}
        if trade_no:
            params["trade_no"] = trade_no
        if out_trade_no:
            params["out_trade_no"] = out_trade_no
        body = await self._call("query", "GET", params)
        logger.info(
            "gateway_order_queried",
            gateway=self.name,
            out_trade_no=out_trade_no,
            trade_no=body.get("trade_no"),
            status=body.get("status"),
        )
        return body

    async def refund_order(self, trade_no: str, out_trade_no: str, money: Any) -> Dict[str, Any]:
        """
        Refund a paid order in full.

        Raises:
            UpstreamGatewayError: If the refund is rejected or the gateway fails
        """
        self._require_config()
        if not trade_no:
            raise UpstreamGatewayError("refund needs a trade_no", payload={"error_code": "missing_trade_no"})
        amount = format_money(money)
        if amount is None:
            raise UpstreamGatewayError("refund amount is invalid", payload={"error_code": "invalid_money"})
        data = {
            "pid": self.config.pid,
            "key": self.config.key,
            "trade_no": trade_no,
            "out_trade_no": out_trade_no,
            "money": amount,
        }
        body = await self._call("refund", "POST", {"act": "refund"}, data)
        logger.info("gateway_order_refunded", gateway=self.name, out_trade_no=out_trade_no, money=amount)
        return body
