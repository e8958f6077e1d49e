"""AWS Signature Version 4 request signing for the Product Advertising API."""
from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional, Protocol, Tuple
from urllib.parse import quote


ALGORITHM = "AWS4-HMAC-SHA256"
PAAPI_SERVICE = "ProductAdvertisingAPI"
PAAPI_TARGET_PREFIX = "com.amazon.paapi5.v1.ProductAdvertisingAPIv1."


class RequestSigner(Protocol):
    """Anything that can add authentication headers to an outbound request."""

    def sign(
        self,
        method: str,
        host: str,
        path: str,
        headers: Mapping[str, str],
        body: bytes,
        now: Optional[datetime] = None,
    ) -> Dict[str, str]:
        ...


def sha256_hex(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def derive_signing_key(secret_key: str, date_stamp: str, region: str, service: str) -> bytes:
    k_date = _hmac(f"AWS4{secret_key}".encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, "aws4_request")


def canonical_uri(path: str) -> str:
    if not path or path == "/":
        return "/"
    return quote(path, safe="/-_.~")


def canonical_headers(headers: Mapping[str, str]) -> Tuple[str, str]:
    """Return ``(canonical_headers, signed_headers)`` for a header mapping."""

    lowered = {k.strip().lower(): " ".join(str(v).split()) for k, v in headers.items()}
    names = sorted(lowered)
    block = "".join(f"{name}:{lowered[name]}\n" for name in names)
    return block, ";".join(names)


def amz_timestamps(now: Optional[datetime] = None) -> Tuple[str, str]:
    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    amz_date = moment.strftime("%Y%m%dT%H%M%SZ")
    return amz_date, amz_date[:8]


class SigV4Signer:
    """Signs requests with AWS SigV4.

    The signature covers the exact body bytes, so callers must send the same
    bytes they signed.
    """

    def __init__(self, access_key: str, secret_key: str, region: str, service: str = PAAPI_SERVICE) -> None:
        self.access_key = access_key
        self.secret_key = secret_key
        self.region = region
        self.service = service

    def canonical_request(self, method: str, path: str, headers: Mapping[str, str], body: bytes, query: str = "") -> str:
        block, signed = canonical_headers(headers)
        return "\n".join([method.upper(), canonical_uri(path), query, block, signed, sha256_hex(body)])

    def sign(
        self,
        method: str,
        host: str,
        path: str,
        headers: Mapping[str, str],
        body: bytes,
        now: Optional[datetime] = None,
    ) -> Dict[str, str]:
        """Return ``headers`` plus ``host``, ``x-amz-date`` and ``Authorization``."""

        amz_date, date_stamp = amz_timestamps(now)
        request_headers = {k.lower(): v for k, v in headers.items()}
        request_headers["host"] = host
        request_headers["x-amz-date"] = amz_date

        canonical = self.canonical_request(method, path, request_headers, body)
        _, signed = canonical_headers(request_headers)
        scope = f"{date_stamp}/{self.region}/{self.service}/aws4_request"
        string_to_sign = "\n".join([ALGORITHM, amz_date, scope, sha256_hex(canonical)])
        key = derive_signing_key(self.secret_key, date_stamp, self.region, self.service)
        signature = hmac.new(key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

        request_headers["Authorization"] = (
            f"{ALGORITHM} Credential={self.access_key}/{scope}, "
            f"SignedHeaders={signed}, Signature={signature}"
        )
        return request_headers


def paapi_headers(host: str, operation: str = "GetItems") -> Dict[str, str]:
    """Unsigned headers PA-API 5.0 expects on every operation."""

    return {
        "content-encoding": "amz-1.0",
        "content-type": "application/json; charset=utf-8",
        "host": host,
        "x-amz-target": f"{PAAPI_TARGET_PREFIX}{operation}",
    }


def sign_paapi_request(
    signer: RequestSigner,
    host: str,
    path: str,
    body: bytes,
    operation: str = "GetItems",
    now: Optional[datetime] = None,
) -> Dict[str, str]:
    return signer.sign("POST", host, path, paapi_headers(host, operation), body, now=now)
