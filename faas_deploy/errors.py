"""
errors
------

배포 파이프라인에서 사용하는 예외 계층.

기존 헬퍼들과 마찬가지로 모두 RuntimeError 계열이라
`except RuntimeError` 로 잡던 호출부는 그대로 동작한다.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from .models import PollResult


class DeployError(RuntimeError):
    """패키지 공통 베이스 예외."""


class AuthenticationUnavailable(DeployError):
    """火山引擎 AK/SK 가 설정되지 않아 원격 API 를 호출할 수 없음."""


class ProcessFailure(DeployError):
    """
    외부 명령(docker/skopeo) 실행 실패.

    exit code 가 0 이 아니거나, 바이너리가 없거나, timeout 이 난 경우.
    returncode 는 프로세스가 시작조차 못 했으면 None 이다.
    """

    def __init__(
        self,
        command: Sequence[str],
        returncode: Optional[int],
        stderr: str = "",
        *,
        reason: Optional[str] = None,
    ) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        cmd_text = " ".join(self.command)
        if reason:
            message = f"{reason}: {cmd_text}"
        else:
            message = f"명령 실행 실패: {cmd_text} (exit={returncode})"
        if stderr:
            message += "\nstderr:\n" + stderr
        super().__init__(message)


class ApiError(DeployError):
    """
    FaaS OpenAPI 호출 실패.

    HTTP status 가 2xx 가 아니거나 응답 envelope 에 Result 가 없는 경우.
    envelope 의 ResponseMetadata.Error 가 있으면 code/message 를 함께 보관한다.
    """

    def __init__(
        self,
        action: str,
        http_status: Optional[int],
        raw_body: str,
        *,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        self.action = action
        self.http_status = http_status
        self.raw_body = raw_body
        self.error_code = error_code
        self.error_message = error_message

        detail = raw_body
        if error_code or error_message:
            detail = f"{error_code or '-'}: {error_message or '-'}"
        super().__init__(f"FaaS API Error [{action}]: {http_status} - {detail}")


class RemoteOperationFailed(DeployError):
    """폴링 중인 원격 작업이 실패/취소 상태에 도달함."""

    def __init__(self, operation: str, last_status: "PollResult") -> None:
        self.operation = operation
        self.last_status = last_status
        reason = last_status.description or last_status.status
        super().__init__(f"{operation} failed: {reason}")


class PollTimeout(DeployError):
    """제한 시간 안에 원격 작업이 종료 상태에 도달하지 못함. 재시도 여부는 호출자가 판단한다."""

    def __init__(
        self,
        operation: str,
        timeout_ms: int,
        last_status: Optional["PollResult"] = None,
    ) -> None:
        self.operation = operation
        self.timeout_ms = timeout_ms
        self.last_status = last_status
        super().__init__(f"{operation} timeout ({timeout_ms}ms)")


class PollCancelled(DeployError):
    """취소 신호로 폴링을 중단함. 원격 작업 자체는 계속 진행 중일 수 있다."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"{operation} cancelled")
