"""
signer
------

火山引擎 OpenAPI 요청 서명(HMAC-SHA256).
참고: https://www.volcengine.com/docs/6369/67269

원격 검증기와 바이트 단위로 같은 canonical request 를 만들어야 하므로
헤더 순서/인코딩/개행을 임의로 바꾸지 않는다.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional
from urllib.parse import quote

from .models import SignedRequest


ALGORITHM = "HMAC-SHA256"
CONTENT_TYPE = "application/json"

# encodeURIComponent 와 같은 예약되지 않은 문자 집합
_QUERY_SAFE_CHARS = "-_.!~*'()"


def _sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _hmac_sha256(key: bytes, data: str) -> bytes:
    return hmac.new(key, data.encode("utf-8"), hashlib.sha256).digest()


def format_x_date(now: datetime) -> str:
    """UTC 기준 `YYYYMMDDTHHMMSSZ`."""
    return now.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def canonical_query_string(query: Optional[Mapping[str, str]]) -> str:
    if not query:
        return ""
    return "&".join(
        f"{quote(str(key), safe=_QUERY_SAFE_CHARS)}={quote(str(query[key]), safe=_QUERY_SAFE_CHARS)}"
        for key in sorted(query)
    )


class Signer:
    """
    상태를 갖지 않는 서명기. 생성자에서 받은 자격 증명 외에는 아무것도 보관하지 않으므로
    여러 요청에 재사용해도 된다.
    """

    def __init__(self, access_key_id: str, secret_access_key: str, region: str, service: str) -> None:
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.region = region
        self.service = service

    def _signing_key(self, date_stamp: str) -> bytes:
        k_date = _hmac_sha256(self.secret_access_key.encode("utf-8"), date_stamp)
        k_region = _hmac_sha256(k_date, self.region)
        k_service = _hmac_sha256(k_region, self.service)
        return _hmac_sha256(k_service, "request")

    def sign(
        self,
        method: str,
        host: str,
        path: str,
        query: Optional[Mapping[str, str]] = None,
        body: str = "",
        *,
        now: Optional[datetime] = None,
    ) -> Dict[str, str]:
        """
        요청에 붙일 5개 헤더(Host, X-Date, X-Content-Sha256, Content-Type, Authorization)를 만든다.

        now 를 넘기지 않으면 현재 UTC 시각을 사용한다.
        """
        x_date = format_x_date(now or datetime.now(timezone.utc))
        date_stamp = x_date[:8]
        body_hash = _sha256_hex(body or "")

        headers_to_sign = {
            "host": host,
            "x-date": x_date,
            "x-content-sha256": body_hash,
            "content-type": CONTENT_TYPE,
        }
        sorted_keys = sorted(headers_to_sign)
        canonical_headers = "".join(
            f"{key}:{headers_to_sign[key].strip()}\n" for key in sorted_keys
        )
        signed_headers = ";".join(sorted_keys)

        canonical_request = "\n".join(
            [
                method,
                path,
                canonical_query_string(query),
                canonical_headers,
                signed_headers,
                body_hash,
            ]
        )

        credential_scope = f"{date_stamp}/{self.region}/{self.service}/request"
        string_to_sign = "\n".join(
            [
                ALGORITHM,
                x_date,
                credential_scope,
                _sha256_hex(canonical_request),
            ]
        )

        signature = hmac.new(
            self._signing_key(date_stamp),
            string_to_sign.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

        authorization = (
            f"{ALGORITHM} Credential={self.access_key_id}/{credential_scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )

        return {
            "Host": host,
            "X-Date": x_date,
            "X-Content-Sha256": body_hash,
            "Content-Type": CONTENT_TYPE,
            "Authorization": authorization,
        }

    def sign_request(
        self,
        method: str,
        host: str,
        path: str,
        query: Optional[Mapping[str, str]] = None,
        body: str = "",
        *,
        now: Optional[datetime] = None,
    ) -> SignedRequest:
        headers = self.sign(method, host, path, query, body, now=now)
        query = query or {}
        return SignedRequest(
            method=method,
            host=host,
            path=path,
            query=tuple((key, str(query[key])) for key in sorted(query)),
            headers=headers,
            body=body,
            canonical_query=canonical_query_string(query),
        )
