"""
docker
------

도커 이미지 빌드/푸시와 원격 레지스트리 태그 조회(skopeo)를 담당하는 모듈.
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .errors import ProcessFailure
from .logging_utils import get_logger
from .models import ProjectConfig, ServiceDescriptor
from .subprocess_utils import OutputSink, command_available, run_command
from .versioning import find_latest_version, next_version


logger = get_logger(__name__)


_IMAGE_REF_RE = re.compile(r"^([^/]+)/([^/]+)/([^:]+)$")

SKOPEO_INSTALL_HINT = "설치: brew install skopeo (macOS) 또는 apt install skopeo (Linux)"


def docker_available() -> bool:
    return command_available("docker", "version")


def skopeo_available() -> bool:
    return command_available("skopeo", "--version")


def build_command(service: ServiceDescriptor, image_tag: str, project_root: str = ".") -> list[str]:
    dockerfile_path = os.path.join(project_root, service.dockerfile)
    context_path = os.path.join(project_root, service.context)
    return [
        "docker",
        "build",
        "--platform",
        service.platform,
        "-f",
        dockerfile_path,
        "-t",
        image_tag,
        context_path,
    ]


def build_image(
    service: ServiceDescriptor,
    image_tag: str,
    *,
    project_root: str = ".",
    on_output: Optional[OutputSink] = None,
) -> str:
    """
    서비스 이미지를 빌드하고 태그를 반환한다.
    """
    run_command(build_command(service, image_tag, project_root), cwd=project_root, on_output=on_output)
    logger.info("이미지 빌드 완료: %s", image_tag)
    return image_tag


def push_image(image_tag: str, *, on_output: Optional[OutputSink] = None) -> None:
    run_command(["docker", "push", image_tag], on_output=on_output)
    logger.info("이미지 푸시 완료: %s", image_tag)


@dataclass
class RemoteTags:
    tags: List[str] = field(default_factory=list)
    error: Optional[str] = None


def list_remote_tags(image_ref: str) -> RemoteTags:
    """
    원격 레지스트리의 태그 목록을 조회한다. (`registry/namespace/image` 형식)

    skopeo 가 없거나 조회에 실패해도 예외를 던지지 않고 error 문자열을 채워 돌려준다.
    skopeo 는 기본 인증 파일(~/.docker/config.json 등)을 스스로 찾는다.
    """
    m = _IMAGE_REF_RE.match(image_ref)
    if not m:
        return RemoteTags(error=f"잘못된 이미지 주소입니다: {image_ref}")

    if not skopeo_available():
        return RemoteTags(error=f"원격 태그를 조회하려면 skopeo 가 필요합니다\n   {SKOPEO_INSTALL_HINT}")

    cmd = ["skopeo", "list-tags", f"docker://{image_ref}"]
    try:
        result = run_command(cmd, timeout=120.0)
    except ProcessFailure as e:
        return RemoteTags(error=f"skopeo 실패: {e.stderr or e}\n명령: {' '.join(cmd)}")

    try:
        payload = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        return RemoteTags(error=f"skopeo 출력 파싱 실패: {e}\n명령: {' '.join(cmd)}")

    tags = payload.get("Tags") if isinstance(payload, dict) else None
    return RemoteTags(tags=list(tags or []))


@dataclass
class VersionPlan:
    latest: Optional[str]
    next: str
    tags: List[str] = field(default_factory=list)
    error: Optional[str] = None


def resolve_next_versions(project: ProjectConfig, bump: str = "patch") -> Dict[str, VersionPlan]:
    """
    서비스별 원격 최신 버전을 찾고 다음 버전을 계산한다.
    태그 조회에 실패한 서비스는 초기 버전(v0.0.1)으로 간주한다.
    """
    plans: Dict[str, VersionPlan] = {}
    for name, service in project.services.items():
        remote = list_remote_tags(project.registry.image_ref(service.image_name))
        if remote.error:
            logger.warning("%s 원격 태그 조회 실패: %s", name, remote.error)
            plans[name] = VersionPlan(latest=None, next=next_version(None, bump), error=remote.error)
            continue
        latest = find_latest_version(remote.tags)
        plans[name] = VersionPlan(latest=latest, next=next_version(latest, bump), tags=remote.tags)
    return plans
