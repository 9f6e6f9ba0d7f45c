from __future__ import annotations

import queue
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import IO, Callable, Mapping, Optional, Sequence

from .errors import ProcessFailure
from .logging_utils import get_logger


logger = get_logger(__name__)


OutputSink = Callable[[str], None]

_STDOUT = "stdout"
_STDERR = "stderr"


@dataclass(frozen=True)
class RunResult:
    returncode: int
    stdout: str
    stderr: str


def _pump(stream: IO[str], name: str, q: "queue.Queue[tuple[str, Optional[str]]]") -> None:
    try:
        for line in stream:
            q.put((name, line))
    finally:
        q.put((name, None))


def run_command(
    cmd: Sequence[str],
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = 1800.0,
    on_output: OutputSink | None = None,
) -> RunResult:
    """
    subprocess 실행 공통 유틸.

    stdout/stderr 를 각각 별도 reader 스레드로 읽어, 한 줄씩 도착하는 즉시 on_output 으로 넘긴다.
    (스트림 내부 순서는 보장하지만 두 스트림 사이의 순서는 보장하지 않는다)
    빈 줄은 넘기지 않는다.

    실패(exit != 0, 명령 없음, timeout) 시 stderr 를 담은 ProcessFailure 를 던진다.
    """
    logger.info("명령 실행: %s", " ".join(cmd))

    try:
        proc = subprocess.Popen(  # noqa: S603
            list(cmd),
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
    except FileNotFoundError as e:
        raise ProcessFailure(
            cmd,
            None,
            str(e),
            reason=f"필요한 명령을 찾을 수 없습니다: {cmd[0]} (설치되어 있는지 확인하세요)",
        ) from e

    assert proc.stdout is not None and proc.stderr is not None

    q: "queue.Queue[tuple[str, Optional[str]]]" = queue.Queue()
    readers = [
        threading.Thread(target=_pump, args=(proc.stdout, _STDOUT, q), daemon=True),
        threading.Thread(target=_pump, args=(proc.stderr, _STDERR, q), daemon=True),
    ]
    for t in readers:
        t.start()

    captured: dict[str, list[str]] = {_STDOUT: [], _STDERR: []}
    open_streams = {_STDOUT, _STDERR}
    deadline = None if timeout is None else time.monotonic() + float(timeout)

    try:
        while open_streams:
            if deadline is not None and time.monotonic() >= deadline:
                proc.kill()
                raise ProcessFailure(
                    cmd,
                    None,
                    "".join(captured[_STDERR]).strip(),
                    reason=f"명령 실행이 {timeout}초 안에 끝나지 않았습니다",
                )

            try:
                name, line = q.get(timeout=0.1)
            except queue.Empty:
                continue

            if line is None:
                open_streams.discard(name)
                continue

            captured[name].append(line)
            text = line.rstrip("\r\n")
            if text and on_output is not None:
                on_output(text)

        for t in readers:
            t.join(timeout=1.0)

        wait_timeout = None
        if deadline is not None:
            wait_timeout = max(deadline - time.monotonic(), 0.0)
        returncode = proc.wait(timeout=wait_timeout)
    except subprocess.TimeoutExpired as e:
        proc.kill()
        raise ProcessFailure(
            cmd,
            None,
            "".join(captured[_STDERR]).strip(),
            reason=f"명령 실행이 {timeout}초 안에 끝나지 않았습니다",
        ) from e
    finally:
        for stream in (proc.stdout, proc.stderr):
            try:
                stream.close()
            except OSError:
                pass

    stdout = "".join(captured[_STDOUT])
    stderr = "".join(captured[_STDERR])

    if returncode != 0:
        raise ProcessFailure(cmd, returncode, stderr.strip())

    return RunResult(returncode=returncode, stdout=stdout, stderr=stderr)


def command_available(command: str, probe_flag: str = "--version", *, timeout: float = 30.0) -> bool:
    """
    명령이 설치되어 실행 가능한지 확인한다. (실패는 삼키고 False)

    수 분짜리 파이프라인을 시작하기 전에 선택적 도구(docker, skopeo)를 점검하는 용도.
    """
    try:
        subprocess.run(  # noqa: S603
            [command, probe_flag],
            check=True,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("명령 사용 불가: %s %s (%s)", command, probe_flag, e)
        return False
    return True
