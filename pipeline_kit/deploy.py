"""
deploy
------

템플릿 아티팩트를 대상 환경(stack)에 적용하는 배포 action.

- stack 이 없으면 생성, 있으면 제자리 업데이트
- 업데이트가 실패하면 직전 상태로 롤백하고 실패를 보고한다 (반쯤 적용된 상태를 남기지 않음)
- 이전 실패로 failed 상태에 있는 stack 은 replace_on_failure 일 때 삭제 후 새로 만든다
- 권한 상승이 필요한 capability 는 action 정의 시점에 명시해야 한다
- 일부 템플릿 파라미터는 방금 빌드된 코드 아티팩트의 저장 위치로 배포 시점에 덮어쓴다
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Union

from .access_role import AccessRole, SERVICE_DEPLOY
from .artifact_store import Artifact
from .errors import DeployError, PipelineConfigError
from .logging_utils import get_logger
from .pipeline import Action, ActionContext, StageKind


logger = get_logger(__name__)

CAPABILITY_NAMED_IAM = "NAMED_IAM"
CAPABILITY_AUTO_EXPAND = "AUTO_EXPAND"
KNOWN_CAPABILITIES = frozenset({CAPABILITY_NAMED_IAM, CAPABILITY_AUTO_EXPAND})


@dataclass(frozen=True)
class ArtifactPath:
    artifact: Artifact
    path: str


@dataclass(frozen=True)
class ArtifactParameter:
    """
    배포 시점에 아티팩트 저장 위치로 치환되는 파라미터 값.
    attribute: bucket_name | object_key
    """

    artifact: Artifact
    attribute: str

    def __post_init__(self) -> None:
        if self.attribute not in ("bucket_name", "object_key"):
            raise PipelineConfigError(
                f"ArtifactParameter attribute 는 bucket_name | object_key 중 하나여야 합니다: {self.attribute!r}"
            )


ParameterValue = Union[str, ArtifactParameter]


class StackStatus(str, Enum):
    CREATE_COMPLETE = "CREATE_COMPLETE"
    UPDATE_COMPLETE = "UPDATE_COMPLETE"
    UPDATE_ROLLBACK_COMPLETE = "UPDATE_ROLLBACK_COMPLETE"
    CREATE_FAILED = "CREATE_FAILED"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"


FAILED_STATUSES = frozenset({StackStatus.CREATE_FAILED, StackStatus.ROLLBACK_FAILED})


class DeployOutcome(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    REPLACED = "REPLACED"
    NO_CHANGES = "NO_CHANGES"


@dataclass
class StackState:
    name: str
    status: StackStatus
    template: dict
    parameters: Dict[str, str]
    updated_at: str = ""


class StackTarget:
    """
    배포 대상 환경. 템플릿 적용 자체는 외부 서비스가 담당한다.
    """

    supported_permissions: FrozenSet[str] = frozenset({"deploy"})
    target_id: str = "stack-target"

    @property
    def resource_id(self) -> str:
        return f"stack-target/{self.target_id}"

    def describe(self, name: str) -> Optional[StackState]:
        raise NotImplementedError

    def create(self, name: str, template: dict, parameters: Mapping[str, str]) -> None:
        raise NotImplementedError

    def update(self, name: str, template: dict, parameters: Mapping[str, str]) -> None:
        raise NotImplementedError

    def delete(self, name: str) -> None:
        raise NotImplementedError

    def mark_failed(self, name: str, status: StackStatus) -> None:
        raise NotImplementedError


class LocalStackTarget(StackTarget):
    """
    stack 상태를 <state_dir>/<name>.json 으로 관리하는 로컬 대상.
    상태 파일은 임시 파일 + rename 으로만 교체한다.
    """

    def __init__(self, state_dir: str) -> None:
        self.state_dir = state_dir
        self.target_id = os.path.abspath(state_dir)

    def _path(self, name: str) -> str:
        return os.path.join(self.state_dir, f"{name}.json")

    def _write(self, state: StackState) -> None:
        os.makedirs(self.state_dir, exist_ok=True)
        data = {
            "name": state.name,
            "status": state.status.value,
            "template": state.template,
            "parameters": state.parameters,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        fd, tmp_path = tempfile.mkstemp(dir=self.state_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path(state.name))
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def describe(self, name: str) -> Optional[StackState]:
        path = self._path(name)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return StackState(
            name=data["name"],
            status=StackStatus(data["status"]),
            template=data["template"],
            parameters=data["parameters"],
            updated_at=data.get("updated_at", ""),
        )

    def create(self, name: str, template: dict, parameters: Mapping[str, str]) -> None:
        if self.describe(name) is not None:
            raise DeployError(f"stack 이 이미 존재합니다: {name}")
        self._write(StackState(name, StackStatus.CREATE_COMPLETE, template, dict(parameters)))

    def update(self, name: str, template: dict, parameters: Mapping[str, str]) -> None:
        if self.describe(name) is None:
            raise DeployError(f"stack 이 없습니다: {name}")
        self._write(StackState(name, StackStatus.UPDATE_COMPLETE, template, dict(parameters)))

    def delete(self, name: str) -> None:
        path = self._path(name)
        if os.path.exists(path):
            os.remove(path)

    def mark_failed(self, name: str, status: StackStatus) -> None:
        current = self.describe(name)
        if current is None:
            self._write(StackState(name, status, {}, {}))
            return
        current.status = status
        self._write(current)


def required_capabilities(template: Mapping) -> Set[str]:
    """
    템플릿이 요구하는 capability 집합.

    - 리소스 타입에 ::IAM:: 이 들어가면 NAMED_IAM
    - Transform 이 있으면 AUTO_EXPAND
    - Capabilities 로 명시한 값
    """
    required: Set[str] = set(template.get("Capabilities") or [])
    resources = template.get("Resources") or {}
    for resource in resources.values():
        if isinstance(resource, Mapping) and "::IAM::" in str(resource.get("Type", "")):
            required.add(CAPABILITY_NAMED_IAM)
    if template.get("Transform"):
        required.add(CAPABILITY_AUTO_EXPAND)
    return required


def resolve_parameters(template: Mapping, overrides: Mapping[str, str]) -> Dict[str, str]:
    """
    템플릿 Parameters 선언과 override 를 합쳐 최종 파라미터를 만든다.
    선언되지 않은 이름을 덮어쓰거나, 기본값도 override 도 없는 파라미터가 있으면 DeployError.
    """
    declared = template.get("Parameters") or {}

    unknown = sorted(set(overrides) - set(declared))
    if unknown:
        raise DeployError(
            "템플릿에 선언되지 않은 파라미터를 덮어쓰려고 합니다: " + ", ".join(unknown)
        )

    resolved: Dict[str, str] = {}
    missing: List[str] = []
    for name, spec in declared.items():
        if name in overrides:
            resolved[name] = str(overrides[name])
        elif isinstance(spec, Mapping) and "Default" in spec:
            resolved[name] = str(spec["Default"])
        else:
            missing.append(name)
    if missing:
        raise DeployError("값이 없는 템플릿 파라미터가 있습니다: " + ", ".join(sorted(missing)))
    return resolved


def apply_stack(
    target: StackTarget,
    name: str,
    template: dict,
    parameters: Mapping[str, str],
    *,
    replace_on_failure: bool = True,
) -> DeployOutcome:
    current = target.describe(name)

    if current is not None and current.status in FAILED_STATUSES:
        if not replace_on_failure:
            raise DeployError(
                f"stack {name} 이 실패 상태({current.status.value})라 업데이트할 수 없습니다. "
                "replace_on_failure 를 켜거나 stack 을 정리하세요."
            )
        logger.warning("실패 상태의 stack 을 교체합니다: %s (%s)", name, current.status.value)
        target.delete(name)
        _create(target, name, template, parameters)
        return DeployOutcome.REPLACED

    if current is None:
        _create(target, name, template, parameters)
        return DeployOutcome.CREATED

    if current.template == template and current.parameters == dict(parameters):
        logger.info("변경 사항이 없어 stack 업데이트를 건너뜁니다: %s", name)
        return DeployOutcome.NO_CHANGES

    try:
        target.update(name, template, parameters)
    except Exception as e:  # noqa: BLE001
        logger.error("stack 업데이트 실패, 이전 상태로 롤백합니다: %s (%s)", name, e)
        try:
            target.update(name, current.template, current.parameters)
        except Exception as rollback_error:  # noqa: BLE001
            target.mark_failed(name, StackStatus.ROLLBACK_FAILED)
            raise DeployError(
                f"stack {name} 업데이트와 롤백이 모두 실패했습니다: {e} / {rollback_error}"
            ) from e
        target.mark_failed(name, StackStatus.UPDATE_ROLLBACK_COMPLETE)
        raise DeployError(f"stack {name} 업데이트 실패 (롤백 완료): {e}") from e

    logger.info("stack 을 업데이트했습니다: %s", name)
    return DeployOutcome.UPDATED


def _create(target: StackTarget, name: str, template: dict, parameters: Mapping[str, str]) -> None:
    try:
        target.create(name, template, parameters)
    except Exception as e:  # noqa: BLE001
        logger.error("stack 생성 실패, 생성 중이던 리소스를 정리합니다: %s (%s)", name, e)
        try:
            target.delete(name)
        except Exception:  # noqa: BLE001
            logger.exception("stack 정리 실패: %s", name)
            target.mark_failed(name, StackStatus.CREATE_FAILED)
        raise DeployError(f"stack {name} 생성 실패: {e}") from e
    logger.info("stack 을 생성했습니다: %s", name)


class DeployAction(Action):
    service = SERVICE_DEPLOY
    stage_kind = StageKind.DEPLOY

    def __init__(
        self,
        name: str,
        stack_name: str,
        template_path: ArtifactPath,
        target: StackTarget,
        role: AccessRole,
        *,
        extra_inputs: Sequence[Artifact] = (),
        parameter_overrides: Optional[Mapping[str, ParameterValue]] = None,
        capabilities: Iterable[str] = (),
        replace_on_failure: bool = True,
    ) -> None:
        inputs = [template_path.artifact] + [a for a in extra_inputs if a != template_path.artifact]
        super().__init__(name, role, inputs=inputs, outputs=[])
        self.stack_name = stack_name
        self.template_path = template_path
        self.target = target
        self.parameter_overrides: Dict[str, ParameterValue] = dict(parameter_overrides or {})
        self.capabilities: FrozenSet[str] = frozenset(capabilities)
        self.replace_on_failure = replace_on_failure
        self.last_outcome: Optional[DeployOutcome] = None

        unknown = sorted(self.capabilities - KNOWN_CAPABILITIES)
        if unknown:
            raise PipelineConfigError(f"알 수 없는 capability 입니다: {', '.join(unknown)}")
        for value in self.parameter_overrides.values():
            if isinstance(value, ArtifactParameter) and value.artifact not in self.inputs:
                raise PipelineConfigError(
                    f"파라미터 override 가 입력으로 선언되지 않은 아티팩트를 참조합니다: {value.artifact.name}"
                )

    def _load_template(self, ctx: ActionContext) -> dict:
        template_dir = ctx.action_dir(self.name, "template")
        ctx.fetch_input(self.template_path.artifact, template_dir, self.role)
        path = os.path.join(template_dir, self.template_path.path)
        if not os.path.isfile(path):
            raise DeployError(
                f"템플릿 파일이 아티팩트에 없습니다: {self.template_path.artifact.name}/{self.template_path.path}"
            )
        try:
            with open(path, "r", encoding="utf-8") as f:
                template = json.load(f)
        except ValueError as e:
            raise DeployError(f"템플릿을 JSON 으로 읽을 수 없습니다: {self.template_path.path}: {e}") from e
        if not isinstance(template, dict):
            raise DeployError(f"템플릿 최상위는 객체여야 합니다: {self.template_path.path}")
        return template

    def resolve_overrides(self, ctx: ActionContext) -> Dict[str, str]:
        resolved: Dict[str, str] = {}
        for name, value in self.parameter_overrides.items():
            if isinstance(value, ArtifactParameter):
                if not ctx.artifact_store.exists(ctx.run_id, value.artifact):
                    raise DeployError(
                        f"파라미터 {name} 이 참조하는 아티팩트가 이번 실행에 없습니다: {value.artifact.name}"
                    )
                location = ctx.location(value.artifact)
                resolved[name] = getattr(location, value.attribute)
            else:
                resolved[name] = value
        return resolved

    def execute(self, ctx: ActionContext) -> None:
        self.role.assume(self.service)
        self.role.check(self.target, "deploy")

        template = self._load_template(ctx)

        missing_caps = sorted(required_capabilities(template) - self.capabilities)
        if missing_caps:
            raise DeployError(
                f"템플릿이 선언되지 않은 capability 를 요구합니다: {', '.join(missing_caps)}"
            )

        parameters = resolve_parameters(template, self.resolve_overrides(ctx))
        logger.info("stack 배포: %s (parameters=%s)", self.stack_name, sorted(parameters))

        self.last_outcome = apply_stack(
            self.target,
            self.stack_name,
            template,
            parameters,
            replace_on_failure=self.replace_on_failure,
        )
        logger.info("stack 배포 결과: %s -> %s", self.stack_name, self.last_outcome.value)

    def describe(self) -> str:
        return super().describe() + (
            f" stack={self.stack_name} template={self.template_path.artifact.name}/{self.template_path.path}"
            f" replace_on_failure={self.replace_on_failure}"
        )
