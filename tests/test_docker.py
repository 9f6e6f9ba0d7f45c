from typing import List

import pytest

from faas_deploy import docker
from faas_deploy.errors import ProcessFailure
from faas_deploy.models import ProjectConfig, RegistryConfig, ServiceDescriptor
from faas_deploy.subprocess_utils import RunResult


def _service() -> ServiceDescriptor:
    return ServiceDescriptor(
        name="api",
        dockerfile="deploy/Dockerfile",
        context="app",
        image_name="demo-api",
        platform="linux/arm64",
        function_id="fn-api",
    )


def test_build_image_invokes_docker_build(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: List[list] = []

    def fake_run(cmd, *, cwd=None, env=None, timeout=None, on_output=None):  # noqa: ANN001, ANN202
        calls.append(list(cmd))
        on_output("built")
        return RunResult(returncode=0, stdout="built\n", stderr="")

    monkeypatch.setattr(docker, "run_command", fake_run)

    lines: List[str] = []
    tag = docker.build_image(_service(), "reg/ns/demo-api:v1", project_root="/proj", on_output=lines.append)

    assert tag == "reg/ns/demo-api:v1"
    assert calls == [
        [
            "docker",
            "build",
            "--platform",
            "linux/arm64",
            "-f",
            "/proj/deploy/Dockerfile",
            "-t",
            "reg/ns/demo-api:v1",
            "/proj/app",
        ]
    ]
    assert lines == ["built"]


def test_push_image_invokes_docker_push(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: List[list] = []

    def fake_run(cmd, **kwargs):  # noqa: ANN001, ANN003, ANN202
        calls.append(list(cmd))
        return RunResult(returncode=0, stdout="", stderr="")

    monkeypatch.setattr(docker, "run_command", fake_run)

    docker.push_image("reg/ns/demo-api:v1")

    assert calls == [["docker", "push", "reg/ns/demo-api:v1"]]


def test_list_remote_tags_rejects_bad_ref() -> None:
    result = docker.list_remote_tags("just-an-image")

    assert result.tags == []
    assert "just-an-image" in (result.error or "")


def test_list_remote_tags_reports_missing_skopeo(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(docker, "skopeo_available", lambda: False)

    result = docker.list_remote_tags("reg/ns/demo-api")

    assert result.tags == []
    assert "skopeo" in (result.error or "")


def test_list_remote_tags_parses_json(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: List[list] = []

    def fake_run(cmd, **kwargs):  # noqa: ANN001, ANN003, ANN202
        calls.append(list(cmd))
        return RunResult(returncode=0, stdout='{"Repository": "reg/ns/demo-api", "Tags": ["v0.1.0", "latest"]}', stderr="")

    monkeypatch.setattr(docker, "skopeo_available", lambda: True)
    monkeypatch.setattr(docker, "run_command", fake_run)

    result = docker.list_remote_tags("reg/ns/demo-api")

    assert result.error is None
    assert result.tags == ["v0.1.0", "latest"]
    assert calls == [["skopeo", "list-tags", "docker://reg/ns/demo-api"]]


def test_list_remote_tags_failure_is_not_raised(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd, **kwargs):  # noqa: ANN001, ANN003, ANN202
        raise ProcessFailure(cmd, 1, "unauthorized: authentication required")

    monkeypatch.setattr(docker, "skopeo_available", lambda: True)
    monkeypatch.setattr(docker, "run_command", fake_run)

    result = docker.list_remote_tags("reg/ns/demo-api")

    assert result.tags == []
    assert "unauthorized" in (result.error or "")
    assert "skopeo list-tags docker://reg/ns/demo-api" in (result.error or "")


def test_list_remote_tags_bad_json(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(docker, "skopeo_available", lambda: True)
    monkeypatch.setattr(docker, "run_command", lambda cmd, **kw: RunResult(0, "not json", ""))

    result = docker.list_remote_tags("reg/ns/demo-api")

    assert result.tags == []
    assert result.error


def test_resolve_next_versions(monkeypatch: pytest.MonkeyPatch) -> None:
    project = ProjectConfig(
        name="demo",
        registry=RegistryConfig(url="reg", namespace="ns"),
        services={
            "api": _service(),
            "worker": ServiceDescriptor(name="worker", dockerfile="D", context=".", image_name="demo-worker"),
        },
    )

    def fake_tags(image_ref: str) -> docker.RemoteTags:
        if image_ref == "reg/ns/demo-api":
            return docker.RemoteTags(tags=["v0.1.6", "v0.1.5", "latest"])
        return docker.RemoteTags(error="skopeo 실패")

    monkeypatch.setattr(docker, "list_remote_tags", fake_tags)

    plans = docker.resolve_next_versions(project, "minor")

    assert plans["api"].latest == "v0.1.6"
    assert plans["api"].next == "v0.2.0"
    assert plans["worker"].latest is None
    assert plans["worker"].next == "v0.0.1"
    assert plans["worker"].error == "skopeo 실패"
