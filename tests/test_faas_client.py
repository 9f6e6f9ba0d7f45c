from __future__ import annotations

import json
import threading
from typing import Any, Callable, Dict, List

import httpx
import pytest

from faas_deploy.config import Credentials, PollSettings
from faas_deploy.errors import (
    ApiError,
    AuthenticationUnavailable,
    PollCancelled,
    PollTimeout,
    RemoteOperationFailed,
)
from faas_deploy.faas_client import FaaSClient, poll_until
from faas_deploy.models import PollResult


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _envelope(action: str, result: Any = None, error: Dict[str, str] | None = None) -> Dict[str, Any]:
    meta: Dict[str, Any] = {
        "RequestId": "req-1",
        "Action": action,
        "Version": "2024-06-06",
        "Service": "vefaas",
        "Region": "cn-beijing",
    }
    if error:
        meta["Error"] = error
    data: Dict[str, Any] = {"ResponseMetadata": meta}
    if result is not None:
        data["Result"] = result
    return data


def _client(
    handler: Callable[[httpx.Request], httpx.Response],
    clock: FakeClock | None = None,
) -> FaaSClient:
    clock = clock or FakeClock()
    return FaaSClient(
        Credentials(access_key_id="AKTEST", secret_access_key="secret", region="cn-beijing"),
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        sleep=clock.sleep,
        clock=clock,
    )


def test_client_requires_credentials() -> None:
    with pytest.raises(AuthenticationUnavailable) as excinfo:
        FaaSClient(Credentials(access_key_id="", secret_access_key="x"))

    assert "VOLCENGINE_ACCESS_KEY_ID" in str(excinfo.value)


def test_invoke_sends_signed_post_with_action_and_version() -> None:
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=_envelope("GetFunction", {"Id": "fn-1", "Name": "api"}))

    result = _client(handler).get_function("fn-1")

    assert result == {"Id": "fn-1", "Name": "api"}
    req = requests[0]
    assert req.method == "POST"
    assert req.url.host == "open.volcengineapi.com"
    assert req.url.path == "/"
    assert dict(req.url.params) == {"Action": "GetFunction", "Version": "2024-06-06"}
    assert json.loads(req.content) == {"Id": "fn-1"}
    for name in ("Host", "X-Date", "X-Content-Sha256", "Content-Type", "Authorization"):
        assert name in req.headers
    assert req.headers["Authorization"].startswith("HMAC-SHA256 Credential=AKTEST/")
    assert "/cn-beijing/vefaas/request" in req.headers["Authorization"]


def test_update_and_release_payloads() -> None:
    bodies: Dict[str, Dict[str, Any]] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        action = request.url.params["Action"]
        bodies[action] = json.loads(request.content)
        return httpx.Response(200, json=_envelope(action, {}))

    client = _client(handler)
    client.update_function("fn-1", "reg/ns/api:v1.0.1")
    client.release("fn-1")

    assert bodies["UpdateFunction"] == {"Id": "fn-1", "Source": "reg/ns/api:v1.0.1", "SourceType": "image"}
    release = bodies["Release"]
    assert release["FunctionId"] == "fn-1"
    assert release["RevisionNumber"] == 0
    assert release["TargetTrafficWeight"] == 100
    assert release["RollingStep"] == 100
    assert release["Description"].startswith("Deploy via faas-deploy CLI at ")


def test_list_functions_omits_empty_name() -> None:
    bodies: List[Dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=_envelope("ListFunctions", {"Items": [], "Total": 0}))

    client = _client(handler)
    client.list_functions()
    client.list_functions(page_number=2, page_size=10, name="api")

    assert bodies[0] == {"PageNumber": 1, "PageSize": 50}
    assert bodies[1] == {"PageNumber": 2, "PageSize": 10, "Name": "api"}


def test_non_2xx_raises_api_error_with_envelope_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            403,
            json=_envelope("GetFunction", error={"Code": "SignatureDoesNotMatch", "Message": "bad sig"}),
        )

    with pytest.raises(ApiError) as excinfo:
        _client(handler).get_function("fn-1")

    err = excinfo.value
    assert err.action == "GetFunction"
    assert err.http_status == 403
    assert err.error_code == "SignatureDoesNotMatch"
    assert "SignatureDoesNotMatch" in str(err)
    assert "bad sig" in str(err)
    assert "SignatureDoesNotMatch" in err.raw_body


def test_missing_result_on_200_is_api_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_envelope("GetFunction"))

    with pytest.raises(ApiError) as excinfo:
        _client(handler).get_function("fn-1")

    assert excinfo.value.http_status == 200


@pytest.mark.parametrize("result", [["Succeeded"], "Succeeded", 1])
def test_non_object_result_is_api_error(result: Any) -> None:
    clock = FakeClock()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_envelope("GetImageSyncStatus", result))

    with pytest.raises(ApiError) as excinfo:
        _client(handler, clock).wait_for_image_sync("fn-1", "reg/ns/demo-api:v1")

    assert excinfo.value.http_status == 200
    assert clock.sleeps == []


def test_non_json_body_is_api_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="<html>bad gateway</html>")

    with pytest.raises(ApiError) as excinfo:
        _client(handler).get_function("fn-1")

    assert excinfo.value.http_status == 502
    assert "bad gateway" in excinfo.value.raw_body


def test_transport_error_is_api_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ApiError) as excinfo:
        _client(handler).get_function("fn-1")

    assert excinfo.value.http_status is None


# -----------------------------
# poll_until
# -----------------------------
def test_poll_until_returns_on_third_call() -> None:
    statuses = iter(["Pending", "Running", "Succeeded", "Failed"])
    calls: List[str] = []
    progress: List[str] = []

    def fetch() -> PollResult:
        s = next(statuses)
        calls.append(s)
        return PollResult(status=s)

    result = poll_until(
        fetch,
        lambda s: s.status == "Succeeded",
        lambda s: s.status == "Failed",
        lambda s: progress.append(s.status),
        timeout_ms=10_000,
        interval_ms=0,
    )

    assert result.status == "Succeeded"
    assert calls == ["Pending", "Running", "Succeeded"]
    assert progress == ["Pending", "Running", "Succeeded"]


def test_poll_until_raises_remote_failure_with_last_status() -> None:
    clock = FakeClock()
    statuses = iter([PollResult("Running"), PollResult("Failed", "image not found")])

    with pytest.raises(RemoteOperationFailed) as excinfo:
        poll_until(
            lambda: next(statuses),
            lambda s: s.status == "Succeeded",
            lambda s: s.status in {"Failed", "Canceled"},
            timeout_ms=60_000,
            interval_ms=5_000,
            operation="Image sync",
            sleep=clock.sleep,
            clock=clock,
        )

    assert excinfo.value.last_status == PollResult("Failed", "image not found")
    assert str(excinfo.value) == "Image sync failed: image not found"
    assert clock.sleeps == [5.0]


def test_poll_until_times_out_when_timeout_below_interval() -> None:
    clock = FakeClock()
    calls: List[int] = []
    progress: List[PollResult] = []

    def fetch() -> PollResult:
        calls.append(1)
        return PollResult("Running")

    with pytest.raises(PollTimeout) as excinfo:
        poll_until(
            fetch,
            lambda s: s.status == "Succeeded",
            lambda s: s.status == "Failed",
            progress.append,
            timeout_ms=100,
            interval_ms=1_000,
            sleep=clock.sleep,
            clock=clock,
        )

    assert len(calls) == 1
    assert all(p.status == "Running" for p in progress)
    assert excinfo.value.timeout_ms == 100
    assert not isinstance(excinfo.value, RemoteOperationFailed)


def test_poll_until_stops_when_cancelled() -> None:
    cancel = threading.Event()
    calls: List[int] = []

    def fetch() -> PollResult:
        calls.append(1)
        cancel.set()
        return PollResult("Running")

    with pytest.raises(PollCancelled):
        poll_until(
            fetch,
            lambda s: False,
            lambda s: False,
            timeout_ms=60_000,
            interval_ms=0,
            cancel_event=cancel,
        )

    assert len(calls) == 1


# -----------------------------
# concrete waits
# -----------------------------
def test_wait_for_image_sync_uses_defaults_and_reports_progress() -> None:
    clock = FakeClock()
    statuses = iter(["Pending", "Running", "Succeeded"])
    bodies: List[Dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=_envelope("GetImageSyncStatus", {"Status": next(statuses)}))

    progress: List[str] = []
    result = _client(handler, clock).wait_for_image_sync(
        "fn-1", "reg/ns/api:v1", on_progress=lambda s: progress.append(s.status)
    )

    assert result.status == "Succeeded"
    assert progress == ["Pending", "Running", "Succeeded"]
    assert clock.sleeps == [5.0, 5.0]
    assert bodies[0] == {"FunctionId": "fn-1", "Source": "reg/ns/api:v1"}


def test_wait_for_image_sync_canceled_is_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json=_envelope("GetImageSyncStatus", {"Status": "Canceled", "Description": "user canceled"})
        )

    with pytest.raises(RemoteOperationFailed) as excinfo:
        _client(handler).wait_for_image_sync("fn-1", "reg/ns/api:v1")

    assert excinfo.value.last_status.status == "Canceled"


def test_wait_for_image_sync_times_out_after_default_budget() -> None:
    clock = FakeClock()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_envelope("GetImageSyncStatus", {"Status": "Running"}))

    with pytest.raises(PollTimeout):
        _client(handler, clock).wait_for_image_sync("fn-1", "reg/ns/api:v1")

    # 300000ms / 5000ms = 60 번 조회 후 타임아웃
    assert len(clock.sleeps) == 60


def test_wait_for_release_failure_message_falls_back_to_error_code() -> None:
    clock = FakeClock()
    statuses = iter(
        [
            {"Status": "inprogress"},
            {"Status": "failed", "ErrorCode": "ReleaseHealthCheckFailed"},
        ]
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_envelope("GetReleaseStatus", next(statuses)))

    with pytest.raises(RemoteOperationFailed) as excinfo:
        _client(handler, clock).wait_for_release("fn-1")

    assert "ReleaseHealthCheckFailed" in str(excinfo.value)
    assert clock.sleeps == [3.0]


def test_wait_for_release_honours_poll_settings() -> None:
    clock = FakeClock()
    statuses = iter(["pending", "inprogress", "done"])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_envelope("GetReleaseStatus", {"Status": next(statuses)}))

    client = _client(handler, clock)
    client.poll_settings = PollSettings(release_interval_ms=1_000)

    assert client.wait_for_release("fn-1").status == "done"
    assert clock.sleeps == [1.0, 1.0]
