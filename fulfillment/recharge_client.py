"""
Signed client for the external credit recharge API.

The client makes exactly one logical call per `recharge()`: it tries the
primary domain and, only on a transport failure, the backup domain. Result
codes are returned to the caller untouched; deciding whether to retry belongs
to `fulfillment.retry`.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from config import (
    CREDITS_PER_USD,
    RECHARGE_API_BACKUP_URL,
    RECHARGE_API_BASE_URL,
    RECHARGE_CLIENT_ID,
    RECHARGE_CLIENT_VERSION,
    RECHARGE_CURRENCY,
    RECHARGE_ENDPOINT,
    RECHARGE_PRIVATE_KEY_PATH,
    RECHARGE_PRIVATE_KEY_PEM,
    RECHARGE_TIMEOUT_SECONDS,
    USD_TO_LOCAL_RATE,
)
from errors import recharge_error_message
from observability import get_logger, log_event
from runtime_metrics import record_counter_metric, timed

_LOGGER = get_logger("fulfillment.recharge_client")

SUCCESS_CODE = 0
INVALID_REQUEST_CODE = 400001
INTERNAL_ERROR_CODE = 500001


class RechargeError(RuntimeError):
    def __init__(self, message: str, *, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class RechargeConfigError(RechargeError):
    pass


def _normalize_pem(value: str) -> str:
    pem = str(value or "").strip()
    # Env vars often carry the PEM with literal "\n" separators.
    if "\\n" in pem and "BEGIN" in pem:
        pem = pem.replace("\\n", "\n")
    return pem


def load_private_key_pem(*, pem_value: str = "", pem_path: str = "") -> str:
    pem = _normalize_pem(pem_value)
    if pem:
        return pem
    if pem_path:
        with open(pem_path, "r", encoding="utf-8") as handle:
            return _normalize_pem(handle.read())
    return ""


def signature_digest(body_json: str, endpoint: str, timestamp: str) -> bytes:
    return hashlib.sha256(f"{body_json}{endpoint}{timestamp}".encode("utf-8")).digest()


def sign_request(*, private_key_pem: str, body_json: str, endpoint: str, timestamp: str) -> str:
    """RSA-SHA256 over sha256(body + endpoint + timestamp), base64 encoded."""
    pem = _normalize_pem(private_key_pem)
    if not pem:
        raise RechargeConfigError("missing recharge private key PEM")
    try:
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except ValueError as exc:
        raise RechargeConfigError(f"invalid recharge private key: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise RechargeConfigError("recharge private key must be RSA")
    signature = key.sign(signature_digest(body_json, endpoint, timestamp), padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode("ascii")


def quote_total_cost(
    credit_amount: int,
    *,
    credits_per_usd: float = CREDITS_PER_USD,
    usd_to_local_rate: float = USD_TO_LOCAL_RATE,
) -> float:
    return round(int(credit_amount) / float(credits_per_usd) * float(usd_to_local_rate), 2)


@dataclass(frozen=True)
class RechargeRequest:
    target_account_id: str
    request_id: str
    order_reference: str
    credit_amount: int
    total_cost: float
    currency: str = RECHARGE_CURRENCY

    def to_payload(self) -> dict[str, Any]:
        return {
            "recharge_bigoid": self.target_account_id,
            "seqid": self.request_id,
            "bu_orderid": self.order_reference,
            "value": int(self.credit_amount),
            "total_cost": float(self.total_cost),
            "currency": self.currency,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "RechargeRequest":
        try:
            return cls(
                target_account_id=str(payload["recharge_bigoid"]),
                request_id=str(payload["seqid"]),
                order_reference=str(payload["bu_orderid"]),
                credit_amount=int(payload["value"]),
                total_cost=float(payload["total_cost"]),
                currency=str(payload.get("currency") or RECHARGE_CURRENCY),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise RechargeError(f"stored recharge payload is incomplete: {exc}", code=INVALID_REQUEST_CODE) from exc


@dataclass(frozen=True)
class RechargeResult:
    code: int
    message: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.code == SUCCESS_CODE


class RechargeClient:
    def __init__(
        self,
        *,
        base_url: str = RECHARGE_API_BASE_URL,
        backup_url: str = RECHARGE_API_BACKUP_URL,
        endpoint: str = RECHARGE_ENDPOINT,
        client_id: str = RECHARGE_CLIENT_ID,
        client_version: str = RECHARGE_CLIENT_VERSION,
        private_key_pem: Optional[str] = None,
        timeout_seconds: float = RECHARGE_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = self._with_scheme(base_url)
        self.backup_url = self._with_scheme(backup_url)
        self.endpoint = endpoint if endpoint.startswith("/") else f"/{endpoint}"
        self.client_id = str(client_id or "").strip()
        self.client_version = str(client_version or "0").strip() or "0"
        self._private_key_pem = private_key_pem
        self.timeout_seconds = float(timeout_seconds)
        self._transport = transport

    @staticmethod
    def _with_scheme(url: str) -> str:
        value = str(url or "").strip().rstrip("/")
        if value and not value.startswith(("http://", "https://")):
            value = f"https://{value}"
        return value

    def _private_key(self) -> str:
        if self._private_key_pem is None:
            self._private_key_pem = load_private_key_pem(
                pem_value=RECHARGE_PRIVATE_KEY_PEM, pem_path=RECHARGE_PRIVATE_KEY_PATH
            )
        return self._private_key_pem

    def signed_headers(self, body_json: str, timestamp: str) -> dict[str, str]:
        if not self.client_id:
            raise RechargeConfigError("RECHARGE_CLIENT_ID is required")
        return {
            "Content-Type": "application/json",
            "bigo-client-id": self.client_id,
            "bigo-timestamp": timestamp,
            "bigo-client-version": self.client_version,
            "bigo-oauth-signature": sign_request(
                private_key_pem=self._private_key(),
                body_json=body_json,
                endpoint=self.endpoint,
                timestamp=timestamp,
            ),
        }

    async def recharge(self, request: RechargeRequest) -> RechargeResult:
        if not self.base_url:
            raise RechargeConfigError("RECHARGE_API_BASE_URL is required")
        body_json = json.dumps(request.to_payload(), separators=(",", ":"), ensure_ascii=False)
        domains = [url for url in (self.base_url, self.backup_url) if url]
        last_error: Optional[Exception] = None
        with timed("recharge.call.latency_ms"):
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                for domain in domains:
                    timestamp = str(int(time.time()))
                    headers = self.signed_headers(body_json, timestamp)
                    try:
                        response = await client.post(f"{domain}{self.endpoint}", content=body_json, headers=headers)
                    except httpx.HTTPError as exc:
                        last_error = exc
                        log_event(
                            _LOGGER,
                            logging.WARNING,
                            "fulfillment.recharge.transport_error",
                            domain=domain,
                            request_id=request.request_id,
                            error=str(exc),
                        )
                        continue
                    result = self._parse_response(response)
                    record_counter_metric(name="recharge.call.ok" if result.ok else "recharge.call.rejected")
                    log_event(
                        _LOGGER,
                        logging.INFO if result.ok else logging.WARNING,
                        "fulfillment.recharge.responded",
                        domain=domain,
                        request_id=request.request_id,
                        code=result.code,
                        error_message=result.message,
                    )
                    return result
        record_counter_metric(name="recharge.call.unreachable")
        return RechargeResult(code=INTERNAL_ERROR_CODE, message=f"recharge provider unreachable: {last_error}")

    @staticmethod
    def _parse_response(response: httpx.Response) -> RechargeResult:
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            code = INTERNAL_ERROR_CODE if response.status_code >= 500 or response.is_success else INVALID_REQUEST_CODE
            return RechargeResult(code=code, message=f"unexpected provider response (HTTP {response.status_code})")
        raw_code = data.get("rescode")
        if raw_code is None:
            code = SUCCESS_CODE if response.is_success else INTERNAL_ERROR_CODE
        else:
            try:
                code = int(raw_code)
            except (TypeError, ValueError):
                code = INTERNAL_ERROR_CODE
        if code == SUCCESS_CODE:
            return RechargeResult(code=code, message=str(data.get("message") or "ok"), payload=data)
        return RechargeResult(code=code, message=recharge_error_message(code, data.get("message")), payload=data)
