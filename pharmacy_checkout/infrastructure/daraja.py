"""
HTTP client for the Safaricom Daraja API (OAuth, STK Push, STK Query).

Every call carries a bounded timeout. Transport failures surface as
``GatewayTimeoutError`` because the gateway may have acted on the
request; explicit refusals surface as ``GatewayRejectedError``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

import httpx

from pharmacy_checkout.core_settings import Settings
from pharmacy_checkout.domain.errors import GatewayRejectedError, GatewayTimeoutError
from shared.core import get_logger
from .signer import sign
from .token_cache import AccessToken, AccessTokenCache

logger = get_logger(__name__, component="daraja")

TRANSACTION_TYPE = "CustomerPayBillOnline"
TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"
# STK Query answers this while the customer has not yet responded
IN_PROGRESS_ERROR_CODES = frozenset({"500.001.1001"})

@dataclass
class GatewayResponse:
    request: Dict[str, Any]
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def checkout_request_id(self) -> Optional[str]:
        return self.body.get("CheckoutRequestID")

    @property
    def merchant_request_id(self) -> Optional[str]:
        return self.body.get("MerchantRequestID")

def _redacted(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {**payload, "Password": "***"} if "Password" in payload else dict(payload)

def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}

class DarajaClient:
    def __init__(
        self,
        consumer_key: str,
        consumer_secret: str,
        short_code: str,
        passkey: str,
        callback_url: str,
        base_url: str = "https://sandbox.safaricom.co.ke",
        timeout: float = 30.0,
        token_cache: Optional[AccessTokenCache] = None,
        transport: Optional[httpx.BaseTransport] = None,
        now: Optional[Callable[[], datetime]] = None,
        timezone: str = "Africa/Nairobi",
    ):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.short_code = short_code
        self.passkey = passkey
        self.callback_url = callback_url
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.token_cache = token_cache
        self._transport = transport
        tz = ZoneInfo(timezone)
        self._now = now or (lambda: datetime.now(tz))

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "DarajaClient":
        return cls(
            consumer_key=settings.MPESA_CONSUMER_KEY,
            consumer_secret=settings.MPESA_CONSUMER_SECRET,
            short_code=settings.MPESA_BUSINESS_SHORTCODE,
            passkey=settings.MPESA_PASSKEY,
            callback_url=settings.MPESA_CALLBACK_URL,
            base_url=settings.MPESA_BASE_URL,
            timeout=settings.MPESA_TIMEOUT_SECONDS,
            timezone=settings.MPESA_TIMEZONE,
            **kwargs,
        )

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    def fetch_access_token(self) -> AccessToken:
        """Exchange consumer credentials for a bearer token (uncached)"""
        try:
            with self._client() as client:
                response = client.get(
                    TOKEN_PATH,
                    params={"grant_type": "client_credentials"},
                    auth=(self.consumer_key, self.consumer_secret),
                )
        except httpx.TransportError as exc:
            logger.error(f"Access token request failed: {exc}")
            raise GatewayTimeoutError("Gateway unreachable while fetching access token") from exc

        body = _json_or_empty(response)
        if response.status_code >= 400 or not body.get("access_token"):
            raise GatewayRejectedError(
                body.get("errorMessage") or "Failed to obtain gateway access token",
                payload=body,
                error_code=body.get("errorCode"),
                http_status=response.status_code,
            )
        expires_in = int(body.get("expires_in") or 3600)
        return AccessToken(value=body["access_token"], expires_in=expires_in)

    def _bearer_token(self) -> str:
        if self.token_cache is None:
            return self.fetch_access_token().value
        return self.token_cache.get_token()

    def check_credentials(self) -> None:
        """Obtain (or reuse) a bearer token; raises when the gateway refuses"""
        self._bearer_token()

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        token = self._bearer_token()
        audit_payload = _redacted(payload)
        try:
            with self._client() as client:
                response = client.post(path, json=payload, headers={"Authorization": f"Bearer {token}"})
        except httpx.TransportError as exc:
            logger.warning(f"Gateway call {path} failed without a response: {exc!r}")
            raise GatewayTimeoutError(
                "No response from payment gateway; the outcome is unknown",
                request_payload=audit_payload,
            ) from exc

        body = _json_or_empty(response)
        if response.status_code == 401 and self.token_cache is not None:
            self.token_cache.invalidate()
        if response.status_code >= 400 or "errorCode" in body:
            raise GatewayRejectedError(
                body.get("errorMessage") or f"Gateway returned HTTP {response.status_code}",
                payload=body,
                error_code=body.get("errorCode"),
                http_status=response.status_code,
                request_payload=audit_payload,
            )
        return body

    def stk_push(self, phone_number: str, amount: int, account_reference: str, transaction_desc: str) -> GatewayResponse:
        signed = sign(self.short_code, self.passkey, self._now())
        payload = {
            "BusinessShortCode": self.short_code,
            "Password": signed.password,
            "Timestamp": signed.timestamp,
            "TransactionType": TRANSACTION_TYPE,
            "Amount": amount,
            "PartyA": phone_number,
            "PartyB": self.short_code,
            "PhoneNumber": phone_number,
            "CallBackURL": self.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": transaction_desc,
        }
        body = self._post(STK_PUSH_PATH, payload)
        if str(body.get("ResponseCode")) != "0" or not body.get("CheckoutRequestID"):
            raise GatewayRejectedError(
                body.get("ResponseDescription") or body.get("CustomerMessage") or "STK push was not accepted",
                payload=body,
                error_code=str(body.get("ResponseCode")),
                request_payload=_redacted(payload),
            )
        return GatewayResponse(request=_redacted(payload), body=body)

    def stk_query(self, checkout_request_id: str) -> GatewayResponse:
        """Ask the gateway for the current result of a push.

        A "still being processed" refusal is returned as a normal response
        so the caller can treat it as pending rather than failed.
        """
        signed = sign(self.short_code, self.passkey, self._now())
        payload = {
            "BusinessShortCode": self.short_code,
            "Password": signed.password,
            "Timestamp": signed.timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        try:
            body = self._post(STK_QUERY_PATH, payload)
        except GatewayRejectedError as exc:
            if exc.error_code in IN_PROGRESS_ERROR_CODES:
                return GatewayResponse(request=_redacted(payload), body=exc.payload or {})
            raise
        return GatewayResponse(request=_redacted(payload), body=body)
