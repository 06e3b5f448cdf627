"""
Async MEXC spot (API v3) client over HTTP/2.

Raw payloads are decoded here, once, into the typed models. Private
endpoints are signed with HMAC-SHA256 over the query string.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from pmmbot.core.json_utils import dumps
from pmmbot.core.models import (
    Balance,
    BookSnapshot,
    Instrument,
    OrderStatus,
    OrderType,
    RestingOrder,
    Side,
)
from pmmbot.core.utils import to_decimal
from pmmbot.exchange.base import CancelOrderResult, OrderResult
from pmmbot.exchange.errors import (
    ExchangeAuthError,
    ExchangeError,
    ExchangeRejectedError,
    ExchangeTransportError,
)

log = logging.getLogger("pmmbot")

_STATUS = {
    "NEW": OrderStatus.NEW,
    "PARTIALLY_FILLED": OrderStatus.PARTIALLY_FILLED,
    "FILLED": OrderStatus.FILLED,
    "CANCELED": OrderStatus.CANCELED,
    # Cancelled after a partial fill: terminal, the fill is kept
    "PARTIALLY_CANCELED": OrderStatus.CANCELED,
    "EXPIRED": OrderStatus.EXPIRED,
    "REJECTED": OrderStatus.REJECTED,
}

_ORDER_TYPE = {
    OrderType.LIMIT: "LIMIT",
    OrderType.LIMIT_MAKER: "LIMIT_MAKER",
    OrderType.MARKET: "MARKET",
}


def _ms_to_sec(raw: Any, default: float) -> float:
    try:
        return int(raw) / 1000.0
    except (TypeError, ValueError):
        return default


def decode_order(raw: Dict[str, Any]) -> RestingOrder:
    """Decode an order payload from openOrders / order query / place response."""
    now = time.time()
    quantity = to_decimal(raw.get("origQty"))
    filled = min(to_decimal(raw.get("executedQty"), Decimal("0")), quantity)
    status = _STATUS.get(str(raw.get("status", "NEW")).upper(), OrderStatus.NEW)
    if status is OrderStatus.FILLED:
        filled = quantity
    created = _ms_to_sec(raw.get("time", raw.get("transactTime")), now)
    return RestingOrder(
        order_id=str(raw["orderId"]),
        side=Side(str(raw["side"]).lower()),
        price=to_decimal(raw.get("price")),
        quantity=quantity,
        filled_quantity=filled,
        status=status,
        created_at=created,
        updated_at=_ms_to_sec(raw.get("updateTime"), created),
    )


class MexcClient:
    """
    MEXC spot REST adapter.

    Public endpoints (depth, exchangeInfo) work without credentials, so the
    same client feeds live prices to the paper venue.
    """

    def __init__(
        self,
        base_url: str = "https://api.mexc.com",
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout: float = 5.0,
        recv_window_ms: int = 5000,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.api_secret = api_secret
        self.recv_window_ms = recv_window_ms
        # A shared client passed in is not closed by close()
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, http2=True, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # ─────────────────────────────────────────────────────────────────────
    # Transport
    # ─────────────────────────────────────────────────────────────────────

    def _sign(self, params: Dict[str, Any]) -> str:
        if not (self.api_key and self.api_secret):
            raise ExchangeAuthError("API key and secret are required for signed endpoints")
        params = {**params, "timestamp": int(time.time() * 1000), "recvWindow": self.recv_window_ms}
        query = urlencode(params)
        signature = hmac.new(self.api_secret.encode(), query.encode(), hashlib.sha256).hexdigest()
        return f"{query}&signature={signature}"

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        params = {k: v for k, v in (params or {}).items() if v is not None}
        headers = {"Content-Type": "application/json"}
        if signed:
            url = f"{path}?{self._sign(params)}"
            headers["X-MEXC-APIKEY"] = self.api_key or ""
            request_params = None
        else:
            url = path
            request_params = params or None

        try:
            resp = await self.client.request(method, url, params=request_params, headers=headers)
        except httpx.TimeoutException as exc:
            raise ExchangeTransportError(f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise ExchangeTransportError(f"{method} {path} transport error: {exc}") from exc

        if resp.status_code == 429 or resp.status_code >= 500:
            raise ExchangeTransportError(
                f"{method} {path} HTTP {resp.status_code}", status=resp.status_code
            )

        try:
            data = resp.json()
        except ValueError as exc:
            if resp.is_success:
                raise ExchangeTransportError(
                    f"{method} {path} returned non-JSON body", status=resp.status_code
                ) from exc
            data = resp.text

        if resp.status_code in (401, 403):
            raise ExchangeAuthError(self._error_text(data), code=self._error_code(data), status=resp.status_code)
        if resp.status_code >= 400:
            raise ExchangeRejectedError(self._error_text(data), code=self._error_code(data), status=resp.status_code)
        return data

    @staticmethod
    def _error_code(data: Any) -> Optional[int]:
        if isinstance(data, dict):
            try:
                return int(data.get("code"))
            except (TypeError, ValueError):
                return None
        return None

    @staticmethod
    def _error_text(data: Any) -> str:
        if isinstance(data, dict):
            return str(data.get("msg") or data.get("message") or data)
        return str(data)

    # ─────────────────────────────────────────────────────────────────────
    # Market data
    # ─────────────────────────────────────────────────────────────────────

    async def get_instrument(self, symbol: str) -> Instrument:
        data = await self._request("GET", "/api/v3/exchangeInfo", {"symbol": symbol})
        symbols = data.get("symbols") if isinstance(data, dict) else None
        if not symbols:
            raise ExchangeRejectedError(f"unknown symbol {symbol}")
        meta = next((s for s in symbols if s.get("symbol") == symbol), symbols[0])
        return Instrument(
            symbol=symbol,
            base_asset=str(meta["baseAsset"]),
            quote_asset=str(meta["quoteAsset"]),
            price_decimals=int(meta.get("quotePrecision", 4)),
            qty_decimals=int(meta.get("baseAssetPrecision", 2)),
        )

    async def get_top_of_book(self, symbol: str, depth: int = 5) -> BookSnapshot:
        data = await self._request("GET", "/api/v3/depth", {"symbol": symbol, "limit": depth})
        try:
            bids = [(to_decimal(px), to_decimal(qty)) for px, qty in data.get("bids", [])]
            asks = [(to_decimal(px), to_decimal(qty)) for px, qty in data.get("asks", [])]
        except (ValueError, TypeError) as exc:
            raise ExchangeError(f"malformed depth payload for {symbol}") from exc
        ts = _ms_to_sec(data.get("timestamp"), time.time())
        return BookSnapshot.from_levels(bids, asks, ts=ts)

    # ─────────────────────────────────────────────────────────────────────
    # Account
    # ─────────────────────────────────────────────────────────────────────

    async def get_balances(self) -> List[Balance]:
        data = await self._request("GET", "/api/v3/account", signed=True)
        return [
            Balance(
                asset=str(b["asset"]),
                available=to_decimal(b.get("free"), Decimal("0")),
                locked=to_decimal(b.get("locked"), Decimal("0")),
            )
            for b in data.get("balances", [])
        ]

    async def get_open_orders(self, symbol: str) -> List[RestingOrder]:
        data = await self._request("GET", "/api/v3/openOrders", {"symbol": symbol}, signed=True)
        return [decode_order(o) for o in data]

    async def get_order(self, symbol: str, order_id: str) -> RestingOrder:
        data = await self._request("GET", "/api/v3/order", {"symbol": symbol, "orderId": order_id}, signed=True)
        return decode_order(data)

    # ─────────────────────────────────────────────────────────────────────
    # Trading
    # ─────────────────────────────────────────────────────────────────────

    async def place_order(
        self,
        symbol: str,
        side: Side,
        order_type: OrderType,
        quantity: Decimal,
        price: Optional[Decimal] = None,
    ) -> OrderResult:
        params: Dict[str, Any] = {
            "symbol": symbol,
            "side": side.value.upper(),
            "type": _ORDER_TYPE[order_type],
            "quantity": format(quantity, "f"),
        }
        if price is not None:
            params["price"] = format(price, "f")

        try:
            data = await self._request("POST", "/api/v3/order", params, signed=True)
        except ExchangeRejectedError as exc:
            log.warning(dumps({"event": "mexc_place_rejected", "symbol": symbol, "code": exc.code, "err": str(exc)}))
            return OrderResult(success=False, error=str(exc))

        order_id = str(data.get("orderId", ""))
        if not order_id:
            return OrderResult(success=False, error=f"no orderId in response: {data}")
        order = RestingOrder(
            order_id=order_id,
            side=side,
            price=price if price is not None else to_decimal(data.get("price"), Decimal("0")),
            quantity=quantity,
            created_at=_ms_to_sec(data.get("transactTime"), time.time()),
        )
        return OrderResult(success=True, order_id=order_id, order=order)

    async def cancel_order(self, symbol: str, order_id: str) -> CancelOrderResult:
        try:
            data = await self._request("DELETE", "/api/v3/order", {"symbol": symbol, "orderId": order_id}, signed=True)
        except ExchangeRejectedError as exc:
            return CancelOrderResult(success=False, order_id=order_id, error=str(exc))
        # The response echoes the order with its executedQty at cancel time
        order = None
        if isinstance(data, dict) and all(data.get(k) is not None for k in ("orderId", "side", "price", "origQty")):
            order = decode_order(data)
        return CancelOrderResult(success=True, order_id=order_id, order=order)

    async def cancel_all_orders(self, symbol: str) -> int:
        """Cancel every open order for the symbol. Returns how many were cancelled."""
        data = await self._request("DELETE", "/api/v3/openOrders", {"symbol": symbol}, signed=True)
        return len(data) if isinstance(data, list) else 0
