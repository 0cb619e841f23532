"""
Lalamove v3 client: signed requests, bounded retries, typed errors.

Every request carries `Authorization: hmac <key>:<timestamp>:<signature>`
where the signature is HMAC-SHA256 over
`<timestamp>\\r\\n<METHOD>\\r\\n<path>\\r\\n\\r\\n<body>`. The timestamp and
the Request-ID header are regenerated on each attempt so the provider's
replay protection never sees the same pair twice.

Only network failures and 5xx responses are retried. A 4xx is returned to
the caller at once as `ClientError`; running out of attempts (or out of
the deadline) raises `TransientError`.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import math
import re
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import BaseModel, ValidationError

from . import config

_log = logging.getLogger("lastmile.delivery.courier")


class ProviderError(Exception):
    retryable = False


class ProviderNotConfigured(ProviderError):
    pass


class ClientError(ProviderError):
    """4xx from the provider: the request itself is wrong, never retried."""

    def __init__(self, status_code: int, message: str, provider_code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.provider_code = provider_code
        self.message = message


class TransientError(ProviderError):
    """Retries exhausted on timeouts, connection errors or 5xx."""

    retryable = True

    def __init__(self, message: str, attempts: int, last_status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.attempts = attempts
        self.last_status = last_status


class Quote(BaseModel):
    quotation_id: str
    fee: int
    currency: str
    expires_at: Optional[datetime] = None


class ProviderOrder(BaseModel):
    order_id: str
    share_link: Optional[str] = None
    status: str


class Driver(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    plate_number: Optional[str] = None


class ProviderOrderStatus(BaseModel):
    status: str
    driver: Optional[Driver] = None
    share_link: Optional[str] = None


def to_international_phone(phone: str, country_code: str = "66") -> str:
    """Normalize a local number (0812345678) to +66812345678."""
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith("0"):
        return f"+{country_code}{digits[1:]}"
    if digits.startswith(country_code):
        return f"+{digits}"
    return f"+{country_code}{digits}"


def sign(secret: str, timestamp: str, method: str, path: str, body: str) -> str:
    message = f"{timestamp}\r\n{method}\r\n{path}\r\n\r\n{body}"
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def _text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


def driver_from(raw: Any) -> Optional[Driver]:
    if not isinstance(raw, dict) or not raw:
        return None
    return Driver(
        name=_text(raw.get("name")),
        phone=_text(raw.get("phone")),
        plate_number=_text(raw.get("plateNumber") or raw.get("plate_number")),
    )


def _data(resp: dict) -> dict:
    data = resp.get("data")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise TransientError("provider response `data` is not an object", attempts=1)
    return data


class CourierClient:
    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str,
        market: str = "TH",
        *,
        service_type: str = "MOTORCYCLE",
        language: str = "th_TH",
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 8.0,
        timeout: float = 10.0,
        deadline: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        if not api_key or not api_secret:
            raise ProviderNotConfigured("Lalamove API key/secret not configured")
        self.api_key = api_key
        self.api_secret = api_secret
        self.market = market
        self.service_type = service_type
        self.language = language
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.deadline = deadline
        self._sleep = sleep
        self._clock = clock
        self._wall_clock = wall_clock
        self._http = httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)

    def close(self) -> None:
        self._http.close()

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))

    def _headers(self, method: str, path: str, body: str) -> Dict[str, str]:
        ts = str(int(self._wall_clock() * 1000))
        return {
            "Content-Type": "application/json",
            "Authorization": f"hmac {self.api_key}:{ts}:{sign(self.api_secret, ts, method, path, body)}",
            "Market": self.market,
            "Request-ID": uuid.uuid4().hex,
        }

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        body = json.dumps(payload, separators=(",", ":")) if payload is not None else ""
        started = self._clock()
        last_error = ""
        last_status: Optional[int] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                r = self._http.request(
                    method,
                    path,
                    content=body.encode() if body else None,
                    headers=self._headers(method, path, body),
                )
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                last_status = None
            else:
                if r.status_code < 400:
                    if not r.content:
                        return {}
                    try:
                        parsed = r.json()
                    except ValueError:
                        # The call went through; replaying it could book twice.
                        raise TransientError("invalid JSON in provider response", attempts=attempt, last_status=r.status_code)
                    if not isinstance(parsed, dict):
                        raise TransientError("provider response is not a JSON object", attempts=attempt, last_status=r.status_code)
                    return parsed
                elif r.status_code < 500:
                    raise self._client_error(r)
                else:
                    last_error = f"provider returned {r.status_code}"
                    last_status = r.status_code
            _log.warning(
                "lalamove %s %s attempt %d/%d failed: %s",
                method, path, attempt, self.max_attempts, last_error,
            )
            if attempt == self.max_attempts:
                break
            delay = self._backoff(attempt)
            if self._clock() - started + delay > self.deadline:
                _log.warning("lalamove %s %s: deadline of %.1fs reached", method, path, self.deadline)
                break
            self._sleep(delay)
        raise TransientError(
            f"Lalamove {method} {path} failed after {attempt} attempt(s): {last_error}",
            attempts=attempt,
            last_status=last_status,
        )

    @staticmethod
    def _client_error(r: httpx.Response) -> ClientError:
        code = None
        message = f"Lalamove API error: {r.status_code}"
        try:
            j = r.json()
        except ValueError:
            j = None
        if isinstance(j, dict):
            errors = j.get("errors")
            first = errors[0] if isinstance(errors, list) and errors and isinstance(errors[0], dict) else j
            code = first.get("id") or first.get("code")
            message = first.get("message") or message
        return ClientError(r.status_code, str(message), provider_code=str(code) if code else None)

    def quote(
        self,
        pickup_lat: float,
        pickup_lng: float,
        pickup_address: str,
        dropoff_lat: float,
        dropoff_lng: float,
        dropoff_address: str,
    ) -> Quote:
        body = {
            "data": {
                "serviceType": self.service_type,
                "language": self.language,
                "stops": [
                    {"coordinates": {"lat": str(pickup_lat), "lng": str(pickup_lng)}, "address": pickup_address},
                    {"coordinates": {"lat": str(dropoff_lat), "lng": str(dropoff_lng)}, "address": dropoff_address},
                ],
                "isRouteOptimized": False,
            }
        }
        data = _data(self._request("POST", "/v3/quotations", body))
        price = data.get("priceBreakdown")
        if not isinstance(price, dict):
            price = {}
        try:
            fee = math.ceil(float(price.get("total")))
        except (TypeError, ValueError):
            raise TransientError("quotation response without a usable price", attempts=1)
        if not data.get("quotationId"):
            raise TransientError("quotation response without quotationId", attempts=1)
        try:
            return Quote(
                quotation_id=str(data["quotationId"]),
                fee=fee,
                currency=_text(price.get("currency")) or "THB",
                expires_at=data.get("expiresAt"),
            )
        except ValidationError as e:
            raise TransientError(f"malformed quotation response: {e.error_count()} invalid field(s)", attempts=1)

    def create_order(
        self,
        quotation_id: str,
        sender_name: str,
        sender_phone: str,
        recipient_name: str,
        recipient_phone: str,
        cod_amount: Optional[int] = None,
        remarks: Optional[str] = None,
    ) -> ProviderOrder:
        data: Dict[str, Any] = {
            "quotationId": quotation_id,
            "sender": {"stopId": 0, "name": sender_name, "phone": to_international_phone(sender_phone)},
            "recipients": [
                {
                    "stopId": 1,
                    "name": recipient_name,
                    "phone": to_international_phone(recipient_phone),
                    "remarks": remarks or "",
                }
            ],
            "isRecipientRequired": True,
            "isPODRequired": True,
            "paymentMethod": "WALLET",
        }
        if cod_amount and cod_amount > 0:
            data["metadata"] = {"codAmount": str(int(cod_amount))}
        out = _data(self._request("POST", "/v3/orders", {"data": data}))
        if not out.get("orderId"):
            raise TransientError("order response without orderId", attempts=1)
        try:
            return ProviderOrder(
                order_id=str(out["orderId"]),
                share_link=_text(out.get("shareLink")),
                status=_text(out.get("status")) or "ASSIGNING_DRIVER",
            )
        except ValidationError as e:
            raise TransientError(f"malformed order response: {e.error_count()} invalid field(s)", attempts=1)

    def get_status(self, provider_order_id: str) -> ProviderOrderStatus:
        out = _data(self._request("GET", f"/v3/orders/{provider_order_id}"))
        try:
            return ProviderOrderStatus(
                status=_text(out.get("status")) or "",
                driver=driver_from(out.get("driver")),
                share_link=_text(out.get("shareLink")),
            )
        except ValidationError as e:
            raise TransientError(f"malformed status response: {e.error_count()} invalid field(s)", attempts=1)

    def cancel_order(self, provider_order_id: str) -> None:
        self._request("PUT", f"/v3/orders/{provider_order_id}/cancel")


_client_instance: Optional[CourierClient] = None


def get_courier_client() -> Optional[CourierClient]:
    """Return the configured client (singleton), or None when Lalamove is not set up."""
    global _client_instance
    if _client_instance is None and config.lalamove_configured():
        _client_instance = CourierClient(
            config.LALAMOVE_API_KEY,
            config.LALAMOVE_API_SECRET,
            config.LALAMOVE_BASE_URL,
            config.LALAMOVE_MARKET,
            service_type=config.LALAMOVE_SERVICE_TYPE,
            language=config.LALAMOVE_LANGUAGE,
            max_attempts=config.COURIER_MAX_ATTEMPTS,
            backoff_base=config.COURIER_BACKOFF_BASE_SECS,
            backoff_max=config.COURIER_BACKOFF_MAX_SECS,
            timeout=config.COURIER_TIMEOUT_SECS,
            deadline=config.COURIER_DEADLINE_SECS,
        )
    return _client_instance


def set_courier_client(client: Optional[CourierClient]) -> None:
    global _client_instance
    _client_instance = client


def reset_courier_client() -> None:
    global _client_instance
    if _client_instance is not None:
        _client_instance.close()
    _client_instance = None
