from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import docker
from .errors import AuthenticationUnavailable, ProcessFailure
from .config import Credentials, PollSettings
from .faas_client import FaaSClient
from .logging_utils import get_logger
from .models import (
    ALLOWED_TRANSITIONS,
    PHASE_ORDER,
    REMOTE_PHASES,
    DeployRequest,
    Phase,
    PollResult,
    ProjectConfig,
    RunPhase,
    Step,
    StepStatus,
    step_id,
)


logger = get_logger(__name__)


LogSink = Callable[[str], None]
StepSink = Callable[[str, Dict[str, Any]], None]

SKIP_NO_CREDENTIALS = "No credentials"
SKIP_NO_FUNCTION_ID = "No function ID"
SKIP_DRY_RUN = "Dry run"

_RUN_PHASE_BY_STEP = {
    Phase.BUILD: RunPhase.BUILD,
    Phase.PUSH: RunPhase.PUSH,
    Phase.UPDATE: RunPhase.UPDATE,
    Phase.SYNC: RunPhase.SYNC,
    Phase.RELEASE: RunPhase.RELEASE,
    Phase.WAIT_RELEASE: RunPhase.RELEASE,
}


class StepRegistry:
    """
    실행 단위(Step) 상태 저장소.

    상태는 pending → running → {success | error | skipped} 로만 움직이고
    (pending → skipped 도 허용), 종료 상태의 Step 은 더 이상 갱신할 수 없다.
    running 으로 바뀐 시점부터 종료 상태까지의 경과 시간을 duration_ms 로 기록한다.
    """

    def __init__(
        self,
        steps: List[Step],
        on_step: Optional[StepSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._steps: Dict[str, Step] = {s.id: s for s in steps}
        self._order = [s.id for s in steps]
        self._started: Dict[str, float] = {}
        self._on_step = on_step
        self._clock = clock

    def __len__(self) -> int:
        return len(self._order)

    def get(self, sid: str) -> Step:
        return self._steps[sid]

    @property
    def steps(self) -> List[Step]:
        return [self._steps[sid] for sid in self._order]

    def with_status(self, status: StepStatus) -> List[Step]:
        return [s for s in self.steps if s.status == status]

    def update(
        self,
        sid: str,
        *,
        status: Optional[StepStatus] = None,
        message: Optional[str] = None,
    ) -> Step:
        step = self._steps[sid]
        new_status = status or step.status
        if new_status not in ALLOWED_TRANSITIONS[step.status]:
            raise ValueError(
                f"허용되지 않는 상태 전이입니다: {sid} {step.status.value} -> {new_status.value}"
            )

        changes: Dict[str, Any] = {}
        if new_status != step.status:
            if new_status == StepStatus.RUNNING:
                self._started[sid] = self._clock()
            elif new_status.is_terminal and sid in self._started:
                step.duration_ms = int((self._clock() - self._started[sid]) * 1000)
                changes["duration_ms"] = step.duration_ms
            step.status = new_status
            changes["status"] = new_status
        if message is not None:
            step.message = message
            changes["message"] = message

        if changes and self._on_step is not None:
            self._on_step(sid, changes)
        return step


def resolve_services(project: ProjectConfig, request: DeployRequest) -> Tuple[List[str], List[str]]:
    """요청된 서비스를 (설정에 있는 것, 없는 것) 으로 나눈다. 순서는 요청 순서를 따른다."""
    known: List[str] = []
    unknown: List[str] = []
    for name in request.selected_services(project):
        if name in project.services:
            if name not in known:
                known.append(name)
        else:
            unknown.append(name)
    return known, unknown


def plan_steps(services: List[str], request: DeployRequest) -> List[Step]:
    """
    서비스마다 6개 Step 을 고정된 순서로 만든다.
    skip_build / skip_push 면 해당 Step 은 처음부터 skipped 로 만든다.
    """
    steps: List[Step] = []
    for name in services:
        for phase in PHASE_ORDER:
            status = StepStatus.PENDING
            if (phase == Phase.BUILD and request.skip_build) or (
                phase == Phase.PUSH and request.skip_push
            ):
                status = StepStatus.SKIPPED
            steps.append(Step(id=step_id(name, phase), name=f"{phase.label} {name}", status=status))
    return steps


def create_client(
    credentials: Credentials,
    *,
    dry_run: bool = False,
    poll_settings: Optional[PollSettings] = None,
) -> Optional[FaaSClient]:
    """
    자격 증명이 없거나 dry run 이면 None. 이 경우 원격 단계는 서비스별로 skipped 처리된다.
    """
    if dry_run:
        return None
    try:
        return FaaSClient(credentials, poll_settings=poll_settings)
    except AuthenticationUnavailable as e:
        logger.warning("원격 단계를 건너뜁니다: %s", e)
        return None


def _failure_message(exc: BaseException) -> str:
    if isinstance(exc, ProcessFailure) and exc.stderr:
        return exc.stderr
    return str(exc)


class Deployer:
    """
    서비스 목록을 순서대로 build → push → update → sync → release → wait-release 로 진행한다.

    어느 서비스의 어느 단계에서든 예외가 나면 전체 실행을 즉시 중단한다.
    실패한 Step 만 error 로 바꾸고, 나머지 Step 은 그 시점의 상태 그대로 둔다.
    """

    def __init__(
        self,
        project: ProjectConfig,
        request: DeployRequest,
        *,
        client: Optional[FaaSClient] = None,
        project_root: str = ".",
        on_log: Optional[LogSink] = None,
        on_step: Optional[StepSink] = None,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.project = project
        self.request = request
        self.client = client
        self.project_root = project_root
        self.cancel_event = cancel_event
        self._on_log = on_log

        self.services, self.unknown_services = resolve_services(project, request)
        self.registry = StepRegistry(plan_steps(self.services, request), on_step=on_step, clock=clock)

        self.phase = RunPhase.INIT
        self.error: Optional[str] = None
        self.current_service: Optional[str] = None

    def log(self, line: str) -> None:
        logger.debug("%s", line)
        if self._on_log is not None:
            self._on_log(line)

    @property
    def steps(self) -> List[Step]:
        return self.registry.steps

    def _remote_skip_reason(self, function_id: Optional[str]) -> Optional[str]:
        if self.request.dry_run:
            return SKIP_DRY_RUN
        if self.client is None:
            return SKIP_NO_CREDENTIALS
        if not function_id:
            return SKIP_NO_FUNCTION_ID
        return None

    def _run_step(self, service: str, phase: Phase, action: Callable[[], Optional[str]]) -> None:
        sid = step_id(service, phase)
        self.phase = _RUN_PHASE_BY_STEP[phase]
        self.registry.update(sid, status=StepStatus.RUNNING)
        try:
            message = action()
        except Exception as e:  # noqa: BLE001
            self.registry.update(sid, status=StepStatus.ERROR, message=_failure_message(e))
            raise
        self.registry.update(sid, status=StepStatus.SUCCESS, message=message)

    def _check_tools(self) -> None:
        if self.request.skip_build and self.request.skip_push:
            return
        if not docker.docker_available():
            raise ProcessFailure(
                ["docker", "version"],
                None,
                reason="Docker 를 사용할 수 없습니다. Docker 를 설치하고 실행했는지 확인하세요",
            )

    def _deploy_service(self, name: str) -> None:
        service = self.project.services[name]
        version = self.request.version_for(name)
        image_tag = self.project.registry.image_tag(service.image_name, version)
        self.current_service = name
        logger.info("서비스 배포 시작: %s (%s)", name, image_tag)

        if not self.request.skip_build:
            def _build() -> str:
                self.log(f"🔨 Building {name}: {image_tag}")
                docker.build_image(
                    service,
                    image_tag,
                    project_root=self.project_root,
                    on_output=self.log,
                )
                return image_tag

            self._run_step(name, Phase.BUILD, _build)

        if not self.request.skip_push:
            def _push() -> None:
                self.log(f"📤 Pushing {name}: {image_tag}")
                docker.push_image(image_tag, on_output=self.log)

            self._run_step(name, Phase.PUSH, _push)

        reason = self._remote_skip_reason(service.function_id)
        if reason is not None:
            self.log(f"⏭️  {name}: 원격 배포 단계를 건너뜁니다 ({reason})")
            for phase in REMOTE_PHASES:
                self.registry.update(step_id(name, phase), status=StepStatus.SKIPPED, message=reason)
            return

        client = self.client
        function_id = service.function_id
        assert client is not None and function_id is not None

        def _update() -> None:
            self.log(f"🔄 Updating function: {function_id}")
            self.log(f"   Image: {image_tag}")
            client.update_function(function_id, image_tag)

        self._run_step(name, Phase.UPDATE, _update)

        def _progress(phase: Phase) -> Callable[[PollResult], None]:
            def _report(status: PollResult) -> None:
                self.registry.update(step_id(name, phase), message=status.status)

            return _report

        def _sync() -> None:
            self.log("⏳ Waiting for image sync...")
            client.wait_for_image_sync(
                function_id,
                image_tag,
                on_progress=_progress(Phase.SYNC),
                cancel_event=self.cancel_event,
            )

        self._run_step(name, Phase.SYNC, _sync)

        def _release() -> None:
            self.log("🚀 Releasing function...")
            client.release(function_id)

        self._run_step(name, Phase.RELEASE, _release)

        def _wait_release() -> None:
            self.log("⏳ Waiting for release to complete...")
            client.wait_for_release(
                function_id,
                on_progress=_progress(Phase.WAIT_RELEASE),
                cancel_event=self.cancel_event,
            )

        self._run_step(name, Phase.WAIT_RELEASE, _wait_release)
        logger.info("서비스 배포 완료: %s", name)

    def run(self) -> RunPhase:
        """
        파이프라인을 끝까지 실행하고 최종 상태(done | error)를 반환한다.
        첫 번째 실패의 메시지는 self.error 에 남는다.
        """
        for name in self.unknown_services:
            self.log(f"⚠️ Service \"{name}\" not found, skipping")

        try:
            self._check_tools()
            for name in self.services:
                self._deploy_service(name)
        except Exception as e:  # noqa: BLE001
            self.phase = RunPhase.ERROR
            self.error = str(e)
            logger.error("배포 실패 (%s): %s", self.current_service or "-", e)
            self.log(f"❌ Error: {e}")
            return self.phase

        self.phase = RunPhase.DONE
        self.log("🎉 Deployment completed successfully!")
        return self.phase


def plan_report(project: ProjectConfig, request: DeployRequest, *, has_credentials: bool) -> str:
    """
    실제 빌드/API 호출 없이 어떤 Step 이 실행될지 요약 텍스트를 리턴한다.
    """
    services, unknown = resolve_services(project, request)
    lines: List[str] = []
    lines.append("# Deploy plan")
    lines.append(f"- project: {project.name}")
    lines.append(f"- registry: {project.registry.url}/{project.registry.namespace}")
    lines.append(f"- skip_build: {request.skip_build}")
    lines.append(f"- skip_push: {request.skip_push}")
    lines.append(f"- dry_run: {request.dry_run}")
    lines.append("")

    steps = {s.id: s for s in plan_steps(services, request)}
    for name in services:
        service = project.services[name]
        tag = project.registry.image_tag(service.image_name, request.version_for(name))
        lines.append(f"## {name}")
        lines.append(f"- image: {tag}")
        lines.append(f"- function: {service.function_id or '(not set)'}")

        remote_reason = None
        if request.dry_run:
            remote_reason = SKIP_DRY_RUN
        elif not has_credentials:
            remote_reason = SKIP_NO_CREDENTIALS
        elif not service.function_id:
            remote_reason = SKIP_NO_FUNCTION_ID

        for phase in PHASE_ORDER:
            step = steps[step_id(name, phase)]
            label = "SKIPPED" if step.status == StepStatus.SKIPPED else "ENABLED"
            if phase in REMOTE_PHASES and remote_reason:
                label = f"SKIPPED ({remote_reason})"
            lines.append(f"- {phase.value}: {label}")
        lines.append("")

    if unknown:
        lines.append("## Unknown services")
        for name in unknown:
            lines.append(f"- {name}")

    return "\n".join(lines).rstrip()


def summarize(deployer: Deployer) -> str:
    lines: List[str] = []
    lines.append("# Deploy summary")
    lines.append(f"- project: {deployer.project.name}")
    lines.append(f"- result: {deployer.phase.value}")
    if deployer.error:
        lines.append(f"- error: {deployer.error.splitlines()[0]}")
    lines.append("")

    lines.append("## Steps")
    if not deployer.steps:
        lines.append("- (none)")
    for step in deployer.steps:
        duration = f" {step.duration_ms}ms" if step.duration_ms is not None else ""
        message = f" - {step.message}" if step.message else ""
        lines.append(f"- [{step.status.value}] {step.name}{duration}{message}")

    return "\n".join(lines)
