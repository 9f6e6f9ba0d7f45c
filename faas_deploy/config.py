from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .errors import AuthenticationUnavailable
from .models import DEFAULT_PLATFORM, ProjectConfig, RegistryConfig, ServiceDescriptor


ENV_FILES_DEFAULT_ORDER = [".env", ".env.local"]

PROJECT_CONFIG_FILE = "deploy.config.json"
DEFAULT_REGION = "cn-beijing"


def load_env_files(base_dir: str = ".",
                   files: Optional[List[str]] = None) -> None:
    """
    주어진 디렉토리에서 .env 계열 파일을 순서대로 로드한다.
    후순위 파일이 같은 키를 덮어쓴다.
    """
    order = files or ENV_FILES_DEFAULT_ORDER
    for name in order:
        path = os.path.join(base_dir, name)
        if os.path.exists(path):
            load_dotenv(path, override=True)


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} 는 정수(ms)여야 합니다: {raw!r}") from e
    if value < 0:
        raise ValueError(f"{name} 는 0 이상이어야 합니다: {raw!r}")
    return value


@dataclass
class Credentials:
    access_key_id: str = ""
    secret_access_key: str = ""
    region: str = DEFAULT_REGION

    @classmethod
    def from_env(cls) -> "Credentials":
        return cls(
            access_key_id=os.getenv("VOLCENGINE_ACCESS_KEY_ID", ""),
            secret_access_key=os.getenv("VOLCENGINE_SECRET_ACCESS_KEY", ""),
            region=os.getenv("VOLCENGINE_REGION") or DEFAULT_REGION,
        )

    @property
    def is_complete(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def require(self) -> "Credentials":
        if not self.is_complete:
            missing = []
            if not self.access_key_id:
                missing.append("VOLCENGINE_ACCESS_KEY_ID")
            if not self.secret_access_key:
                missing.append("VOLCENGINE_SECRET_ACCESS_KEY")
            raise AuthenticationUnavailable(
                "火山引擎 자격 증명이 설정되지 않았습니다: " + ", ".join(missing)
            )
        return self

    def masked_access_key(self) -> str:
        if not self.access_key_id:
            return "(not set)"
        return self.access_key_id[:8] + "..."


@dataclass
class PollSettings:
    sync_timeout_ms: int = 300_000
    sync_interval_ms: int = 5_000
    release_timeout_ms: int = 300_000
    release_interval_ms: int = 3_000

    @classmethod
    def from_env(cls) -> "PollSettings":
        defaults = cls()
        return cls(
            sync_timeout_ms=_get_int("FAAS_SYNC_TIMEOUT_MS", defaults.sync_timeout_ms),
            sync_interval_ms=_get_int("FAAS_SYNC_INTERVAL_MS", defaults.sync_interval_ms),
            release_timeout_ms=_get_int("FAAS_RELEASE_TIMEOUT_MS", defaults.release_timeout_ms),
            release_interval_ms=_get_int("FAAS_RELEASE_INTERVAL_MS", defaults.release_interval_ms),
        )


def find_project_config_path(start_dir: str = ".") -> Optional[str]:
    """
    start_dir 에서 시작해 상위 디렉토리로 올라가며 deploy.config.json 을 찾는다.
    """
    current = os.path.abspath(start_dir)
    while True:
        candidate = os.path.join(current, PROJECT_CONFIG_FILE)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(current)
        if parent == current:
            return None
        current = parent


def _parse_service(name: str, raw: Dict[str, Any]) -> ServiceDescriptor:
    missing = [k for k in ("dockerfile", "context", "imageName") if not raw.get(k)]
    if missing:
        raise ValueError(f"서비스 [{name}] 필수 항목이 누락되었습니다: " + ", ".join(missing))
    return ServiceDescriptor(
        name=name,
        dockerfile=raw["dockerfile"],
        context=raw["context"],
        image_name=raw["imageName"],
        platform=raw.get("platform") or DEFAULT_PLATFORM,
        function_id=raw.get("functionId") or None,
    )


def parse_project_config(data: Dict[str, Any]) -> ProjectConfig:
    registry = data.get("registry") or {}
    missing: List[str] = []
    if not data.get("name"):
        missing.append("name")
    if not registry.get("url"):
        missing.append("registry.url")
    if not registry.get("namespace"):
        missing.append("registry.namespace")
    if missing:
        raise ValueError("프로젝트 설정 필수 항목이 누락되었습니다: " + ", ".join(missing))

    services_raw = data.get("services") or {}
    if not isinstance(services_raw, dict):
        raise ValueError("services 는 서비스 이름을 키로 하는 객체여야 합니다")

    return ProjectConfig(
        name=data["name"],
        registry=RegistryConfig(url=registry["url"], namespace=registry["namespace"]),
        services={name: _parse_service(name, raw or {}) for name, raw in services_raw.items()},
    )


def load_project_config(config_path: Optional[str] = None, start_dir: str = ".") -> tuple[ProjectConfig, str]:
    """
    deploy.config.json 을 읽어 ProjectConfig 와 실제 파일 경로를 반환한다.
    파일의 디렉토리가 곧 프로젝트 루트(도커 빌드 경로의 기준)가 된다.
    """
    path = config_path or find_project_config_path(start_dir)
    if not path or not os.path.isfile(path):
        raise ValueError(
            f"{PROJECT_CONFIG_FILE} 를 찾을 수 없습니다"
            + (f": {path}" if path else f" (검색 시작: {os.path.abspath(start_dir)})")
        )
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"설정 파일 파싱 실패: {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"설정 파일 최상위는 객체여야 합니다: {path}")

    return parse_project_config(data), os.path.abspath(path)
