"""
faas_client
-----------

veFaaS OpenAPI 클라이언트.

- 모든 호출은 `POST https://open.volcengineapi.com/?Action=...&Version=...` 형태의 RPC 스타일이다.
- 요청 본문은 JSON, 헤더는 Signer 가 만든 5개 헤더를 그대로 사용한다.
- 응답은 `{ResponseMetadata, Result?}` envelope 이며, HTTP status 가 2xx 가 아니거나
  Result 가 없으면 실패로 본다. (ResponseMetadata.Error 유무와 관계없이)
"""

from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx

from .config import Credentials, PollSettings
from .errors import ApiError, PollCancelled, PollTimeout, RemoteOperationFailed
from .logging_utils import get_logger
from .models import PollResult
from .signer import Signer


logger = get_logger(__name__)


FAAS_HOST = "open.volcengineapi.com"
FAAS_SERVICE = "vefaas"
FAAS_VERSION = "2024-06-06"

IMAGE_SYNC_SUCCESS = {"Succeeded"}
IMAGE_SYNC_FAILURE = {"Failed", "Canceled"}
RELEASE_SUCCESS = {"done"}
RELEASE_FAILURE = {"failed"}

ProgressCallback = Callable[[PollResult], None]


def _extract_error(data: Any) -> tuple[Optional[str], Optional[str]]:
    if not isinstance(data, dict):
        return None, None
    meta = data.get("ResponseMetadata") or {}
    error = meta.get("Error") if isinstance(meta, dict) else None
    if not isinstance(error, dict):
        return None, None
    return error.get("Code"), error.get("Message")


def poll_until(
    fetch_status: Callable[[], PollResult],
    is_success: Callable[[PollResult], bool],
    is_failure: Callable[[PollResult], bool],
    on_progress: Optional[ProgressCallback] = None,
    *,
    timeout_ms: int,
    interval_ms: int,
    operation: str = "operation",
    cancel_event: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> PollResult:
    """
    원격 상태를 주기적으로 조회해 종료 상태에 도달할 때까지 기다린다.

    - 조회할 때마다 on_progress 로 상태를 알린다. (종료 상태 포함)
    - is_success 면 그 상태를 반환하고, is_failure 면 RemoteOperationFailed 를 던진다.
    - 조회 사이에는 interval 만큼 쉰다.
    - timeout 안에 종료 상태가 아니면 PollTimeout.
    - cancel_event 가 set 되면 다음 조회 전에 PollCancelled.
    """
    started = clock()
    timeout_s = timeout_ms / 1000.0
    last: Optional[PollResult] = None

    while clock() - started < timeout_s:
        if cancel_event is not None and cancel_event.is_set():
            raise PollCancelled(operation)

        status = fetch_status()
        last = status
        if on_progress is not None:
            on_progress(status)

        if is_success(status):
            return status
        if is_failure(status):
            raise RemoteOperationFailed(operation, status)

        sleep(interval_ms / 1000.0)

    raise PollTimeout(operation, timeout_ms, last)


class FaaSClient:
    """
    veFaaS OpenAPI 동기 클라이언트.

    http_client 를 주입하지 않으면 내부에서 httpx.Client 를 만들고 close() 에서 닫는다.
    """

    def __init__(
        self,
        credentials: Credentials,
        *,
        http_client: Optional[httpx.Client] = None,
        poll_settings: Optional[PollSettings] = None,
        host: str = FAAS_HOST,
        timeout: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        credentials.require()
        self.region = credentials.region
        self.host = host
        self.signer = Signer(
            access_key_id=credentials.access_key_id,
            secret_access_key=credentials.secret_access_key,
            region=credentials.region,
            service=FAAS_SERVICE,
        )
        self.poll_settings = poll_settings or PollSettings()
        self._owns_client = http_client is None
        self._http = http_client if http_client is not None else httpx.Client(timeout=timeout)
        self._sleep = sleep
        self._clock = clock

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> "FaaSClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.close()

    # -----------------------------
    # transport
    # -----------------------------
    def invoke(self, action: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        body = json.dumps(params or {})
        signed = self.signer.sign_request(
            "POST",
            self.host,
            "/",
            {"Action": action, "Version": FAAS_VERSION},
            body,
        )

        logger.debug("[Request] %s URL=%s Body=%s", action, signed.url, body)
        try:
            response = self._http.post(
                signed.url,
                headers=dict(signed.headers),
                content=body.encode("utf-8"),
            )
        except httpx.HTTPError as e:
            raise ApiError(action, None, str(e)) from e

        raw = response.text
        logger.debug("[Response] %s Status=%s Data=%s", action, response.status_code, raw)

        try:
            data = response.json()
        except ValueError:
            data = None

        code, message = _extract_error(data)
        result = data.get("Result") if isinstance(data, dict) else None
        if not response.is_success or not isinstance(result, dict):
            raise ApiError(
                action,
                response.status_code,
                raw,
                error_code=code,
                error_message=message,
            )
        return result

    # -----------------------------
    # actions
    # -----------------------------
    def list_functions(
        self,
        page_number: int = 1,
        page_size: int = 50,
        name: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"PageNumber": page_number, "PageSize": page_size}
        if name:
            params["Name"] = name
        return self.invoke("ListFunctions", params)

    def get_function(self, function_id: str) -> Dict[str, Any]:
        return self.invoke("GetFunction", {"Id": function_id})

    def update_function(self, function_id: str, image_uri: str) -> None:
        self.invoke(
            "UpdateFunction",
            {"Id": function_id, "Source": image_uri, "SourceType": "image"},
        )

    def release(self, function_id: str, description: Optional[str] = None) -> None:
        # RevisionNumber=0 은 최신 리비전, 100 은 전량 트래픽
        if not description:
            now = datetime.now(timezone.utc).isoformat(timespec="seconds")
            description = f"Deploy via faas-deploy CLI at {now}"
        self.invoke(
            "Release",
            {
                "FunctionId": function_id,
                "RevisionNumber": 0,
                "TargetTrafficWeight": 100,
                "RollingStep": 100,
                "Description": description,
            },
        )

    def get_release_status(self, function_id: str) -> Dict[str, Any]:
        return self.invoke("GetReleaseStatus", {"FunctionId": function_id})

    def get_image_sync_status(self, function_id: str, image_uri: str) -> Dict[str, Any]:
        return self.invoke(
            "GetImageSyncStatus",
            {"FunctionId": function_id, "Source": image_uri},
        )

    # -----------------------------
    # polling
    # -----------------------------
    def poll_until(
        self,
        fetch_status: Callable[[], PollResult],
        is_success: Callable[[PollResult], bool],
        is_failure: Callable[[PollResult], bool],
        on_progress: Optional[ProgressCallback] = None,
        *,
        timeout_ms: int,
        interval_ms: int,
        operation: str = "operation",
        cancel_event: Optional[threading.Event] = None,
    ) -> PollResult:
        return poll_until(
            fetch_status,
            is_success,
            is_failure,
            on_progress,
            timeout_ms=timeout_ms,
            interval_ms=interval_ms,
            operation=operation,
            cancel_event=cancel_event,
            sleep=self._sleep,
            clock=self._clock,
        )

    def wait_for_image_sync(
        self,
        function_id: str,
        image_uri: str,
        *,
        on_progress: Optional[ProgressCallback] = None,
        timeout_ms: Optional[int] = None,
        interval_ms: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> PollResult:
        def fetch() -> PollResult:
            raw = self.get_image_sync_status(function_id, image_uri)
            return PollResult(status=str(raw.get("Status", "")), description=raw.get("Description") or None)

        return self.poll_until(
            fetch,
            lambda s: s.status in IMAGE_SYNC_SUCCESS,
            lambda s: s.status in IMAGE_SYNC_FAILURE,
            on_progress,
            timeout_ms=timeout_ms if timeout_ms is not None else self.poll_settings.sync_timeout_ms,
            interval_ms=interval_ms if interval_ms is not None else self.poll_settings.sync_interval_ms,
            operation="Image sync",
            cancel_event=cancel_event,
        )

    def wait_for_release(
        self,
        function_id: str,
        *,
        on_progress: Optional[ProgressCallback] = None,
        timeout_ms: Optional[int] = None,
        interval_ms: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> PollResult:
        def fetch() -> PollResult:
            raw = self.get_release_status(function_id)
            description = raw.get("StatusMessage") or raw.get("ErrorCode") or None
            return PollResult(status=str(raw.get("Status", "")), description=description)

        return self.poll_until(
            fetch,
            lambda s: s.status in RELEASE_SUCCESS,
            lambda s: s.status in RELEASE_FAILURE,
            on_progress,
            timeout_ms=timeout_ms if timeout_ms is not None else self.poll_settings.release_timeout_ms,
            interval_ms=interval_ms if interval_ms is not None else self.poll_settings.release_interval_ms,
            operation="Release",
            cancel_event=cancel_event,
        )
