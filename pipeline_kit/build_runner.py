"""
build_runner
------------

빌드 프로젝트 정의(build spec)와 실행을 담당하는 모듈.

BuildRunner 는 같은 실행 역할/암호화 키를 공유하는 빌드 프로젝트를 찍어내는 팩토리다.
각 프로젝트는 고정된 install/build 단계 뒤에 post_build 명령을 실행하고,
output_directory 아래에서 selector 와 일치하는 파일만 산출물로 모은다.
재시도는 하지 않는다. 실패 처리는 오케스트레이터의 몫이다.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import ClassVar, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from .access_role import AccessRole
from .errors import BuildError, PipelineConfigError
from .kms_key import EncryptionKey
from .logging_utils import get_logger
from .subprocess_utils import run_shell


logger = get_logger(__name__)

BUILDSPEC_VERSION = "0.2"
DEFAULT_INSTALL_COMMANDS: Tuple[str, ...] = ("npm ci",)
DEFAULT_BUILD_COMMANDS: Tuple[str, ...] = ("npm run build",)


@dataclass(frozen=True)
class BuildSpec:
    post_build: Tuple[str, ...]
    base_directory: str
    files: Tuple[str, ...]
    install: Tuple[str, ...] = DEFAULT_INSTALL_COMMANDS
    build: Tuple[str, ...] = DEFAULT_BUILD_COMMANDS
    version: str = BUILDSPEC_VERSION

    def phases(self) -> List[Tuple[str, Tuple[str, ...]]]:
        return [
            ("install", self.install),
            ("build", self.build),
            ("post_build", self.post_build),
        ]

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "phases": {
                name: {"commands": list(commands)} for name, commands in self.phases()
            },
            "artifacts": {
                "base-directory": self.base_directory,
                "files": list(self.files),
            },
        }


@dataclass
class BuildProject:
    name: str
    spec: BuildSpec
    role: AccessRole
    key: EncryptionKey
    timeout: Optional[float] = 900.0
    environment: Dict[str, str] = field(default_factory=dict)

    supported_permissions: ClassVar[FrozenSet[str]] = frozenset({"start"})

    @property
    def resource_id(self) -> str:
        return f"build-project/{self.name}"

    def _env(self, extra: Optional[Mapping[str, str]]) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.environment)
        if extra:
            env.update(extra)
        return env

    def collect_outputs(self, work_dir: str, output_dir: str) -> List[str]:
        """
        output_directory 기준으로 selector 와 일치하는 파일을 output_dir 로 복사한다.
        selector 하나라도 일치하는 파일이 없으면 빈 아티팩트 대신 BuildError 를 올린다.
        """
        base = Path(work_dir) / self.spec.base_directory
        if not base.is_dir():
            raise BuildError(
                f"[{self.name}] 산출물 디렉토리가 없습니다: {self.spec.base_directory}"
            )

        collected: List[str] = []
        for selector in self.spec.files:
            matches = sorted(p for p in base.glob(selector) if p.is_file())
            if not matches:
                raise BuildError(
                    f"[{self.name}] 산출물 selector 와 일치하는 파일이 없습니다: "
                    f"{self.spec.base_directory}/{selector}"
                )
            for path in matches:
                rel = path.relative_to(base).as_posix()
                if rel in collected:
                    continue
                target = Path(output_dir) / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, target)
                collected.append(rel)

        return collected

    def run(self, work_dir: str, output_dir: str, env: Optional[Mapping[str, str]] = None) -> List[str]:
        """
        work_dir 에서 install → build → post_build 명령을 순서대로 실행하고
        산출물을 output_dir 에 모은 뒤, 모은 파일의 상대 경로 목록을 반환한다.
        """
        self.role.assume("build")
        self.role.check(self, "start")
        self.key.check_decrypt(self.role)

        run_env = self._env(env)
        for phase, commands in self.spec.phases():
            for command in commands:
                logger.info("[%s] %s: %s", self.name, phase, command)
                try:
                    run_shell(command, cwd=work_dir, env=run_env, timeout=self.timeout)
                except RuntimeError as e:
                    raise BuildError(f"[{self.name}] {phase} 단계 실패: {e}") from e

        outputs = self.collect_outputs(work_dir, output_dir)
        logger.info("[%s] 빌드 완료: %d 개 파일", self.name, len(outputs))
        return outputs


class BuildRunner:
    """
    같은 역할/키를 공유하는 빌드 프로젝트 팩토리.
    프로젝트 이름은 이 러너 안에서 유일해야 한다.
    """

    def __init__(self, role: AccessRole, key: EncryptionKey) -> None:
        self.role = role
        self.key = key
        self._projects: Dict[str, BuildProject] = {}

    @property
    def projects(self) -> List[BuildProject]:
        return list(self._projects.values())

    def get(self, name: str) -> BuildProject:
        try:
            return self._projects[name]
        except KeyError:
            raise KeyError(
                f"빌드 프로젝트가 없습니다: {name} (정의됨: {', '.join(self._projects) or '(none)'})"
            ) from None

    def create_build_project(
        self,
        name: str,
        post_build_commands: Sequence[str],
        output_directory: str,
        output_file_selectors: Sequence[str],
        *,
        install_commands: Optional[Sequence[str]] = None,
        build_commands: Optional[Sequence[str]] = None,
        timeout: Optional[float] = 900.0,
    ) -> BuildProject:
        if not name:
            raise PipelineConfigError("빌드 프로젝트 이름이 비어 있습니다.")
        if name in self._projects:
            raise PipelineConfigError(f"빌드 프로젝트 이름이 중복되었습니다: {name}")
        if not post_build_commands:
            raise PipelineConfigError(f"[{name}] post_build 명령이 비어 있습니다.")
        if not output_file_selectors:
            raise PipelineConfigError(f"[{name}] 산출물 selector 가 비어 있습니다.")
        if not output_directory or os.path.isabs(output_directory):
            raise PipelineConfigError(
                f"[{name}] 산출물 디렉토리는 작업 디렉토리 기준 상대 경로여야 합니다: {output_directory!r}"
            )
        bad_selectors = [
            s for s in output_file_selectors if not s or os.path.isabs(s) or ".." in PurePosixPath(s).parts
        ]
        if bad_selectors:
            raise PipelineConfigError(
                f"[{name}] 산출물 selector 는 산출물 디렉토리 안의 상대 경로여야 합니다: {bad_selectors!r}"
            )

        spec = BuildSpec(
            post_build=tuple(post_build_commands),
            base_directory=output_directory,
            files=tuple(output_file_selectors),
            install=tuple(install_commands) if install_commands is not None else DEFAULT_INSTALL_COMMANDS,
            build=tuple(build_commands) if build_commands is not None else DEFAULT_BUILD_COMMANDS,
        )
        project = BuildProject(name=name, spec=spec, role=self.role, key=self.key, timeout=timeout)
        self.role.grant(project, "start")
        self._projects[name] = project
        logger.debug("빌드 프로젝트 정의: %s", name)
        return project
