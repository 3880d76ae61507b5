from __future__ import annotations

import subprocess
from dataclasses import dataclass
from textwrap import shorten
from typing import Mapping, Sequence

from .logging_utils import get_logger, redact


logger = get_logger(__name__)


@dataclass(frozen=True)
class RunResult:
    returncode: int
    stdout: str
    stderr: str


def _describe(cmd: Sequence[str], secrets: Sequence[str]) -> str:
    return redact(" ".join(cmd), secrets)


def run_command(
    cmd: Sequence[str],
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = 900.0,
    secrets: Sequence[str] = (),
) -> RunResult:
    """
    subprocess 실행 공통 유틸.

    - stdout/stderr 캡처, 실패 시 일부를 에러 메시지에 포함
    - timeout 초과/명령 없음/non-zero exit 은 모두 RuntimeError 로 래핑
    - secrets 에 포함된 문자열은 로그와 에러 메시지에서 *** 로 가린다
    """
    shown = _describe(cmd, secrets)
    logger.info("명령 실행: %s", shown)

    try:
        result = subprocess.run(
            list(cmd),
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=cwd,
            env=dict(env) if env is not None else None,
        )
        if result.stdout:
            logger.debug("명령 stdout: %s", redact(shorten(result.stdout.strip(), width=2000), secrets))
        if result.stderr:
            logger.debug("명령 stderr: %s", redact(shorten(result.stderr.strip(), width=2000), secrets))
        return RunResult(returncode=result.returncode, stdout=result.stdout or "", stderr=result.stderr or "")
    except FileNotFoundError as e:
        raise RuntimeError(
            f"필요한 명령을 찾을 수 없습니다: {cmd[0]} (git/sh 가 설치되어 있는지 확인하세요)"
        ) from e
    except subprocess.TimeoutExpired as e:
        raise RuntimeError(
            f"명령 실행이 {timeout}초 안에 끝나지 않았습니다: {shown}"
        ) from e
    except subprocess.CalledProcessError as e:
        stdout = (e.stdout or "").strip()
        stderr = (e.stderr or "").strip()
        detail = ""
        if stderr:
            detail = "\nstderr:\n" + shorten(stderr, width=2000)
        elif stdout:
            detail = "\nstdout:\n" + shorten(stdout, width=2000)
        raise RuntimeError(
            redact(f"명령 실행 실패: {' '.join(cmd)} (exit={e.returncode}){detail}", secrets)
        ) from e


def run_shell(
    command: str,
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = 900.0,
) -> RunResult:
    """빌드 명령처럼 셸 문법이 필요한 한 줄 명령을 sh -c 로 실행한다."""
    return run_command(["sh", "-c", command], cwd=cwd, env=env, timeout=timeout)
