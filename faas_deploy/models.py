"""
models
------

배포 파이프라인의 데이터 모델.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple


DEFAULT_PLATFORM = "linux/amd64"
DEFAULT_VERSION = "latest"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = {StepStatus.SUCCESS, StepStatus.ERROR, StepStatus.SKIPPED}

# 허용되는 상태 전이. 종료 상태에서는 어떤 갱신도 허용하지 않는다.
ALLOWED_TRANSITIONS: Dict[StepStatus, set] = {
    StepStatus.PENDING: {StepStatus.PENDING, StepStatus.RUNNING, StepStatus.SKIPPED},
    StepStatus.RUNNING: {
        StepStatus.RUNNING,
        StepStatus.SUCCESS,
        StepStatus.ERROR,
        StepStatus.SKIPPED,
    },
    StepStatus.SUCCESS: set(),
    StepStatus.ERROR: set(),
    StepStatus.SKIPPED: set(),
}


class Phase(str, Enum):
    """서비스 하나에 대해 고정된 순서로 실행되는 6 단계."""

    BUILD = "build"
    PUSH = "push"
    UPDATE = "update"
    SYNC = "sync"
    RELEASE = "release"
    WAIT_RELEASE = "wait-release"

    @property
    def label(self) -> str:
        return _PHASE_LABELS[self]


_PHASE_LABELS = {
    Phase.BUILD: "Build",
    Phase.PUSH: "Push",
    Phase.UPDATE: "Update",
    Phase.SYNC: "Sync",
    Phase.RELEASE: "Release",
    Phase.WAIT_RELEASE: "Wait Release",
}

PHASE_ORDER: Tuple[Phase, ...] = tuple(Phase)

REMOTE_PHASES: Tuple[Phase, ...] = (
    Phase.UPDATE,
    Phase.SYNC,
    Phase.RELEASE,
    Phase.WAIT_RELEASE,
)


class RunPhase(str, Enum):
    """실행 전체의 상태. done / error 가 종료 상태."""

    INIT = "init"
    BUILD = "build"
    PUSH = "push"
    UPDATE = "update"
    SYNC = "sync"
    RELEASE = "release"
    DONE = "done"
    ERROR = "error"


@dataclass
class Step:
    id: str
    name: str
    status: StepStatus = StepStatus.PENDING
    message: Optional[str] = None
    duration_ms: Optional[int] = None


def step_id(service: str, phase: Phase) -> str:
    return f"{service}-{phase.value}"


@dataclass(frozen=True)
class ServiceDescriptor:
    name: str
    dockerfile: str
    context: str
    image_name: str
    platform: str = DEFAULT_PLATFORM
    function_id: Optional[str] = None


@dataclass(frozen=True)
class RegistryConfig:
    url: str
    namespace: str

    def image_ref(self, image_name: str) -> str:
        return f"{self.url}/{self.namespace}/{image_name}"

    def image_tag(self, image_name: str, version: str) -> str:
        return f"{self.image_ref(image_name)}:{version}"


@dataclass(frozen=True)
class ProjectConfig:
    name: str
    registry: RegistryConfig
    services: Mapping[str, ServiceDescriptor] = field(default_factory=dict)


@dataclass(frozen=True)
class DeployRequest:
    """
    한 번의 실행 요청. 실행 중에는 변경되지 않는다.

    services 가 비어 있으면 설정의 모든 서비스를 대상으로 한다.
    """

    services: Tuple[str, ...] = ()
    versions: Mapping[str, str] = field(default_factory=dict)
    skip_build: bool = False
    skip_push: bool = False
    dry_run: bool = False

    def version_for(self, service: str) -> str:
        return self.versions.get(service) or DEFAULT_VERSION

    def selected_services(self, project: ProjectConfig) -> List[str]:
        if self.services:
            return list(self.services)
        return list(project.services)


@dataclass(frozen=True)
class PollResult:
    status: str
    description: Optional[str] = None


@dataclass(frozen=True)
class SignedRequest:
    method: str
    host: str
    path: str
    query: Tuple[Tuple[str, str], ...]
    headers: Mapping[str, str]
    body: str
    canonical_query: str = ""

    @property
    def url(self) -> str:
        url = f"https://{self.host}{self.path}"
        if self.canonical_query:
            url += "?" + self.canonical_query
        return url
