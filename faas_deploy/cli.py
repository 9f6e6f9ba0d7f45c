import os
import sys
import threading
from typing import Any, Dict, Optional

import click

from .config import Credentials, PollSettings, find_project_config_path, load_env_files, load_project_config
from .docker import docker_available, resolve_next_versions, skopeo_available, SKOPEO_INSTALL_HINT
from .errors import DeployError
from .faas_client import FaaSClient
from .logging_utils import setup_logging, get_logger
from .models import DeployRequest, ProjectConfig, RunPhase
from .orchestrator import Deployer, create_client, plan_report, summarize
from .versioning import parse_version_from_image_uri


logger = get_logger(__name__)


@click.group()
@click.option(
    "-C",
    "--chdir",
    "chdir",
    type=click.Path(file_okay=False, dir_okay=True, exists=True),
    default=".",
    help="작업 디렉토리 (기본: 현재 디렉토리)",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="로그 레벨을 DEBUG로 올립니다. (API 요청/응답 로그 포함)",
)
@click.pass_context
def main(ctx: click.Context, chdir: str, verbose: int) -> None:
    """veFaaS 컨테이너 이미지 빌드/푸시/릴리스 배포 CLI"""
    load_env_files(chdir)
    setup_logging(verbose, log_file=os.getenv("FAAS_DEBUG_LOG") or None)
    ctx.ensure_object(dict)
    ctx.obj["chdir"] = chdir
    ctx.obj["verbose"] = verbose


def _load_project_from_ctx(ctx: click.Context, config_path: Optional[str]) -> tuple[ProjectConfig, str]:
    try:
        project, path = load_project_config(config_path, start_dir=ctx.obj["chdir"])
    except ValueError as e:
        click.echo(f"[ERROR] 설정 로드 실패: {e}", err=True)
        sys.exit(1)
    logger.debug("Config loaded: %s (%s)", project, path)
    return project, path


def _parse_versions(pairs: str) -> Dict[str, str]:
    """`api:v0.1.6,worker:v0.1.3` -> {"api": "v0.1.6", "worker": "v0.1.3"}"""
    versions: Dict[str, str] = {}
    for pair in pairs.split(","):
        if ":" not in pair:
            continue
        service, version = pair.split(":", 1)
        if service.strip() and version.strip():
            versions[service.strip()] = version.strip()
    return versions


def _split_services(services: str) -> tuple:
    return tuple(s.strip() for s in services.split(",") if s.strip())


def _print_step(step_id: str, changes: Dict[str, Any]) -> None:
    status = changes.get("status")
    if status is None:
        # 진행 메시지(동기화/릴리스 상태)만 바뀐 경우
        click.echo(f"  … {step_id}: {changes.get('message')}")
        return
    line = f"[{status.value}] {step_id}"
    if "duration_ms" in changes:
        line += f" ({changes['duration_ms']}ms)"
    if changes.get("message"):
        line += f" - {changes['message'].splitlines()[0]}"
    click.echo(line)


def _run_deployer(deployer: Deployer, cancel_event: threading.Event) -> RunPhase:
    """
    워커 스레드에서 파이프라인을 돌리고, Ctrl-C 가 오면 폴링을 멈추도록 취소 신호를 보낸다.
    (이미 요청된 원격 작업은 되돌리지 않는다)
    """
    worker = threading.Thread(target=deployer.run, name="faas-deploy", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(timeout=0.2)
        except KeyboardInterrupt:
            if cancel_event.is_set():
                click.echo("[WARN] 이미 취소 요청됨. 현재 단계가 끝나기를 기다립니다.", err=True)
                continue
            click.echo("[WARN] 취소 요청됨. 진행 중인 폴링을 중단합니다. (원격 함수는 동기화/릴리스 중일 수 있습니다)", err=True)
            cancel_event.set()
    return deployer.phase


def _execute(
    ctx: click.Context,
    *,
    services: str,
    version: Optional[str],
    versions: str,
    bump: Optional[str],
    skip_build: bool,
    skip_push: bool,
    dry_run: bool,
    config_path: Optional[str],
    require_version: bool,
) -> None:
    project, path = _load_project_from_ctx(ctx, config_path)

    resolved: Dict[str, str] = {}
    if bump:
        click.echo("🔍 원격 레지스트리에서 최신 버전을 조회합니다...")
        for name, plan in resolve_next_versions(project, bump).items():
            if plan.error:
                click.echo(f"   ⚠️  {name}: {plan.error}", err=True)
            click.echo(f"   {name}: {plan.latest or '(없음)'} → {plan.next}")
            resolved[name] = plan.next

    resolved.update(_parse_versions(versions))

    if version:
        for name in project.services:
            resolved.setdefault(name, version)

    if not resolved and require_version:
        click.echo(
            "[ERROR] 버전을 지정하세요.\n"
            "  faas-deploy deploy --version v0.1.6    # 모든 서비스에 같은 버전\n"
            "  faas-deploy deploy --auto              # patch 자동 증가",
            err=True,
        )
        sys.exit(1)

    request = DeployRequest(
        services=_split_services(services),
        versions=resolved,
        skip_build=skip_build,
        skip_push=skip_push,
        dry_run=dry_run,
    )

    client = create_client(Credentials.from_env(), dry_run=dry_run, poll_settings=PollSettings.from_env())
    cancel_event = threading.Event()
    deployer = Deployer(
        project,
        request,
        client=client,
        project_root=os.path.dirname(path),
        on_log=click.echo,
        on_step=_print_step,
        cancel_event=cancel_event,
    )

    try:
        phase = _run_deployer(deployer, cancel_event)
    finally:
        if client is not None:
            client.close()

    click.echo("")
    click.echo(summarize(deployer))

    if phase != RunPhase.DONE:
        sys.exit(1)


_DEPLOY_OPTIONS = [
    click.option("-s", "--services", "services", type=str, default="", help="배포할 서비스 (쉼표 구분, 기본: 전체)"),
    click.option("--version", "version", type=str, default=None, help="모든 서비스에 적용할 버전 (예: v0.1.6)"),
    click.option("--versions", "versions", type=str, default="", help="서비스별 버전 (예: api:v0.1.6,worker:v0.1.3)"),
    click.option("-c", "--config", "config_path", type=click.Path(dir_okay=False), default=None, help="deploy.config.json 경로"),
]


def _with_options(options):  # noqa: ANN001, ANN202
    def decorator(f):  # noqa: ANN001, ANN202
        for option in reversed(options):
            f = option(f)
        return f

    return decorator


@main.command(name="deploy")
@_with_options(_DEPLOY_OPTIONS)
@click.option("--auto", "bump", flag_value="patch", help="원격 최신 태그 기준 patch 자동 증가 (v0.1.6 → v0.1.7)")
@click.option("--auto-minor", "bump", flag_value="minor", help="minor 자동 증가 (v0.1.6 → v0.2.0)")
@click.option("--auto-major", "bump", flag_value="major", help="major 자동 증가 (v0.1.6 → v1.0.0)")
@click.option("--skip-build", is_flag=True, help="도커 빌드를 건너뜁니다.")
@click.option("--skip-push", is_flag=True, help="도커 푸시를 건너뜁니다.")
@click.option("--dry-run", is_flag=True, help="원격 함수 업데이트/릴리스를 하지 않습니다.")
@click.pass_context
def deploy(
    ctx: click.Context,
    services: str,
    version: Optional[str],
    versions: str,
    config_path: Optional[str],
    bump: Optional[str],
    skip_build: bool,
    skip_push: bool,
    dry_run: bool,
) -> None:
    """빌드 → 푸시 → 함수 업데이트 → 이미지 동기화 → 릴리스 까지 실행"""
    _execute(
        ctx,
        services=services,
        version=version,
        versions=versions,
        bump=bump,
        skip_build=skip_build,
        skip_push=skip_push,
        dry_run=dry_run,
        config_path=config_path,
        require_version=not skip_build,
    )


@main.command(name="build")
@_with_options(_DEPLOY_OPTIONS)
@click.pass_context
def build(ctx: click.Context, services: str, version: Optional[str], versions: str, config_path: Optional[str]) -> None:
    """도커 이미지 빌드만 실행"""
    _execute(
        ctx,
        services=services,
        version=version,
        versions=versions,
        bump=None,
        skip_build=False,
        skip_push=True,
        dry_run=True,
        config_path=config_path,
        require_version=True,
    )


@main.command(name="push")
@_with_options(_DEPLOY_OPTIONS)
@click.pass_context
def push(ctx: click.Context, services: str, version: Optional[str], versions: str, config_path: Optional[str]) -> None:
    """이미 빌드된 이미지를 푸시만 실행"""
    _execute(
        ctx,
        services=services,
        version=version,
        versions=versions,
        bump=None,
        skip_build=True,
        skip_push=False,
        dry_run=True,
        config_path=config_path,
        require_version=False,
    )


@main.command()
@_with_options(_DEPLOY_OPTIONS)
@click.option("--skip-build", is_flag=True)
@click.option("--skip-push", is_flag=True)
@click.option("--dry-run", is_flag=True)
@click.pass_context
def plan(
    ctx: click.Context,
    services: str,
    version: Optional[str],
    versions: str,
    config_path: Optional[str],
    skip_build: bool,
    skip_push: bool,
    dry_run: bool,
) -> None:
    """실제 실행 없이 서비스별 이미지 태그와 단계별 ENABLED/SKIPPED 상태를 출력"""
    project, _ = _load_project_from_ctx(ctx, config_path)
    resolved = _parse_versions(versions)
    if version:
        for name in project.services:
            resolved.setdefault(name, version)

    request = DeployRequest(
        services=_split_services(services),
        versions=resolved,
        skip_build=skip_build,
        skip_push=skip_push,
        dry_run=dry_run,
    )
    click.echo(plan_report(project, request, has_credentials=Credentials.from_env().is_complete))


@main.command()
@click.option("-c", "--config", "config_path", type=click.Path(dir_okay=False), default=None)
@click.pass_context
def check(ctx: click.Context, config_path: Optional[str]) -> None:
    """
    배포 전에 도구/자격 증명/프로젝트 설정/원격 함수 접근 여부를 점검한다.
    (실제 리소스 변경은 하지 않는다)
    """
    lines: list[str] = ["# Deploy pre-check", ""]
    critical: list[str] = []
    warnings: list[str] = []

    def record(level: str, name: str, message: str) -> None:
        lines.append(f"- [{level}] {name}: {message}")
        if level == "ERROR":
            critical.append(name)
        elif level == "WARN":
            warnings.append(name)

    if docker_available():
        record("OK", "Docker", "설치 및 실행 중")
    else:
        record("ERROR", "Docker", "설치되지 않았거나 실행 중이 아닙니다")

    if skopeo_available():
        record("OK", "Skopeo", "설치됨")
    else:
        record("WARN", "Skopeo", f"설치되지 않음 (--auto 버전 증가 사용 불가) {SKOPEO_INSTALL_HINT}")

    credentials = Credentials.from_env()
    if credentials.is_complete:
        record("OK", "Credentials", f"설정됨 (AK: {credentials.masked_access_key()}, region: {credentials.region})")
    else:
        record("ERROR", "Credentials", "VOLCENGINE_ACCESS_KEY_ID / VOLCENGINE_SECRET_ACCESS_KEY 가 설정되지 않았습니다")

    path = config_path or find_project_config_path(ctx.obj["chdir"])
    project: Optional[ProjectConfig] = None
    try:
        project, path = load_project_config(path, start_dir=ctx.obj["chdir"])
        record("OK", "Project config", path)
        record("OK", "Registry", f"{project.registry.url}/{project.registry.namespace}")
    except ValueError as e:
        record("ERROR", "Project config", str(e))

    if project is not None:
        for name, service in project.services.items():
            if service.function_id:
                record("OK", f"Service [{name}]", f"function: {service.function_id}, image: {service.image_name}")
            else:
                record("WARN", f"Service [{name}]", f"image: {service.image_name} (함수 ID 없음, 빌드/푸시만 가능)")

        if credentials.is_complete:
            with FaaSClient(credentials) as client:
                for name, service in project.services.items():
                    if not service.function_id:
                        continue
                    try:
                        fn = client.get_function(service.function_id)
                        record("OK", f"Function [{name}]", f"\"{fn.get('Name', '')}\" 접근 가능")
                    except DeployError as e:
                        logger.debug("함수 조회 실패: %s", e)
                        record("ERROR", f"Function [{name}]", f"{service.function_id} 가 없거나 접근 권한이 없습니다")

    lines.append("")
    lines.append("## Summary")
    if critical:
        lines.append("- 상태: 크리티컬 이슈가 있습니다. 배포 전 반드시 해결해야 합니다.")
    elif warnings:
        lines.append("- 상태: 경고만 있습니다.")
    else:
        lines.append("- 상태: 주요 이슈 없음 (배포 가능 상태로 보입니다)")

    click.echo("\n".join(lines))

    if critical:
        sys.exit(1)


def _require_client() -> FaaSClient:
    try:
        return FaaSClient(Credentials.from_env())
    except DeployError as e:
        click.echo(f"[ERROR] {e}", err=True)
        sys.exit(1)


@main.command()
@click.option("-c", "--config", "config_path", type=click.Path(dir_okay=False), default=None)
@click.pass_context
def status(ctx: click.Context, config_path: Optional[str]) -> None:
    """서비스별 원격 함수가 현재 사용 중인 이미지/버전을 출력"""
    project, _ = _load_project_from_ctx(ctx, config_path)
    lines: list[str] = ["# Function status"]
    with _require_client() as client:
        for name, service in project.services.items():
            if not service.function_id:
                lines.append(f"- {name}: (함수 ID 없음)")
                continue
            try:
                fn = client.get_function(service.function_id)
            except DeployError as e:
                lines.append(f"- {name}: 조회 실패 ({e})")
                continue
            image = fn.get("Source") or None
            current = parse_version_from_image_uri(image) if image else None
            lines.append(f"- {name}: {service.function_id} image={image or '-'} version={current or '-'}")
    click.echo("\n".join(lines))


@main.command()
@click.option("--name", "name", type=str, default=None, help="함수 이름 필터")
@click.option("--page-size", type=int, default=50, show_default=True)
def functions(name: Optional[str], page_size: int) -> None:
    """계정의 함수 목록을 출력"""
    with _require_client() as client:
        try:
            result = client.list_functions(page_size=page_size, name=name)
        except DeployError as e:
            click.echo(f"[ERROR] 함수 목록 조회 실패: {e}", err=True)
            sys.exit(1)

    items = result.get("Items") or []
    click.echo(f"# Functions ({result.get('Total', len(items))})")
    for item in items:
        click.echo(f"- {item.get('Id')} {item.get('Name')} ({item.get('Runtime', '-')})")
