"""
pipeline
--------

파이프라인 정의 모델: Artifact / Action / Stage / PipelineDefinition.

파이프라인은 엄격하게 순서가 있는 stage 목록이다. 한 stage 안의 action 들은
동시에 실행될 수 있지만, 다음 stage 는 현재 stage 의 action 이 모두 끝난 뒤에만 시작한다.
정의 시점에 validate() 로 구조를 검사하고, 문제가 있으면 파이프라인을 만들지 않는다.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Sequence, Set

from .access_role import AccessRole, SERVICE_BUILD
from .artifact_store import Artifact, ArtifactLocation, ArtifactStore
from .errors import PipelineConfigError
from .logging_utils import get_logger

if TYPE_CHECKING:
    from .build_runner import BuildProject, BuildRunner
    from .source import PushEvent


logger = get_logger(__name__)


class StageKind(str, Enum):
    SOURCE = "source"
    BUILD = "build"
    DEPLOY = "deploy"


_KIND_ORDER = {StageKind.SOURCE: 0, StageKind.BUILD: 1, StageKind.DEPLOY: 2}


@dataclass
class ActionContext:
    """
    action 한 번 실행에 필요한 run 단위 정보.
    work_dir 은 run 마다 새로 만들어지므로 다른 run 의 파일과 섞이지 않는다.
    """

    run_id: str
    artifact_store: ArtifactStore
    work_dir: str
    event: Optional["PushEvent"] = None

    def action_dir(self, action_name: str, purpose: str) -> str:
        path = os.path.join(self.work_dir, action_name, purpose)
        if os.path.exists(path):
            shutil.rmtree(path)
        os.makedirs(path)
        return path

    def fetch_input(self, artifact: Artifact, dest_dir: str, role: AccessRole) -> List[str]:
        return self.artifact_store.get(self.run_id, artifact, dest_dir, role)

    def publish_output(self, artifact: Artifact, source_dir: str, role: AccessRole) -> ArtifactLocation:
        return self.artifact_store.put(self.run_id, artifact, source_dir, role)

    def location(self, artifact: Artifact) -> ArtifactLocation:
        return self.artifact_store.location(self.run_id, artifact)


class Action:
    """
    stage 안의 작업 단위. 선언된 입력/출력 아티팩트와 실행 역할을 가진다.
    """

    service: str = "pipeline"
    stage_kind: StageKind = StageKind.BUILD
    is_checkout: bool = False

    def __init__(
        self,
        name: str,
        role: AccessRole,
        inputs: Sequence[Artifact] = (),
        outputs: Sequence[Artifact] = (),
    ) -> None:
        self.name = name
        self.role = role
        self.inputs: List[Artifact] = list(inputs)
        self.outputs: List[Artifact] = list(outputs)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"

    def execute(self, ctx: ActionContext) -> None:
        raise NotImplementedError

    def describe(self) -> str:
        ins = ", ".join(a.name for a in self.inputs) or "-"
        outs = ", ".join(a.name for a in self.outputs) or "-"
        return f"{self.name} [{type(self).__name__}] in=({ins}) out=({outs})"


class BuildAction(Action):
    service = SERVICE_BUILD
    stage_kind = StageKind.BUILD

    def __init__(
        self,
        name: str,
        project: "BuildProject",
        input: Artifact,  # noqa: A002
        output: Artifact,
        role: AccessRole,
    ) -> None:
        super().__init__(name, role, inputs=[input], outputs=[output])
        self.project = project

    def execute(self, ctx: ActionContext) -> None:
        self.role.assume(self.service)

        src_dir = ctx.action_dir(self.name, "src")
        for artifact in self.inputs:
            ctx.fetch_input(artifact, src_dir, self.role)

        out_dir = ctx.action_dir(self.name, "out")
        self.project.run(src_dir, out_dir, env={"PIPELINE_RUN_ID": ctx.run_id})

        for artifact in self.outputs:
            ctx.publish_output(artifact, out_dir, self.role)

    def describe(self) -> str:
        return super().describe() + f" project={self.project.name}"


@dataclass
class Stage:
    name: str
    kind: StageKind
    actions: List[Action] = field(default_factory=list)


@dataclass
class PipelineDefinition:
    name: str
    role: AccessRole
    stages: List[Stage]
    artifact_store: ArtifactStore
    build_runner: Optional["BuildRunner"] = None

    @property
    def checkout_action(self) -> Action:
        return self.stages[0].actions[0]

    def actions(self) -> List[Action]:
        return [a for stage in self.stages for a in stage.actions]

    def validate(self) -> None:
        """
        구조 검사. 모든 문제를 모아서 PipelineConfigError 로 올린다.
        """
        problems: List[str] = []

        if not self.stages:
            raise PipelineConfigError(f"파이프라인 {self.name} 에 stage 가 없습니다.")

        stage_names: Set[str] = set()
        action_names: Set[str] = set()
        for stage in self.stages:
            if stage.name in stage_names:
                problems.append(f"stage 이름이 중복되었습니다: {stage.name}")
            stage_names.add(stage.name)
            if not stage.actions:
                problems.append(f"stage {stage.name} 에 action 이 없습니다.")
            for action in stage.actions:
                if action.name in action_names:
                    problems.append(f"action 이름이 중복되었습니다: {action.name}")
                action_names.add(action.name)

        # 체크아웃은 정확히 하나, 항상 첫 stage 에 단독으로
        checkouts = [a for a in self.actions() if a.is_checkout]
        if len(checkouts) != 1:
            problems.append(f"체크아웃 action 은 정확히 1개여야 합니다 (현재 {len(checkouts)}개).")
        first = self.stages[0]
        if first.kind != StageKind.SOURCE or len(first.actions) != 1 or not first.actions[0].is_checkout:
            problems.append(f"첫 stage({first.name}) 는 체크아웃 action 하나만 가져야 합니다.")

        prev_order = -1
        for stage in self.stages:
            order = _KIND_ORDER[stage.kind]
            if order < prev_order:
                problems.append(f"stage {stage.name}({stage.kind.value}) 의 순서가 잘못되었습니다.")
            prev_order = order
            if stage is not first and stage.kind == StageKind.SOURCE:
                problems.append(f"source stage 는 첫 stage 에만 올 수 있습니다: {stage.name}")
            for action in stage.actions:
                if action.stage_kind != stage.kind:
                    problems.append(
                        f"action {action.name} 은 {action.stage_kind.value} stage 에 있어야 합니다 "
                        f"(현재: {stage.name})"
                    )

        # 아티팩트는 앞 stage 에서 만들어진 것만 입력으로 쓸 수 있고, 한 번만 만들어진다
        produced: Set[str] = set()
        for stage in self.stages:
            produced_here: Set[str] = set()
            for action in stage.actions:
                for artifact in action.inputs:
                    if artifact.name not in produced:
                        problems.append(
                            f"action {action.name} 의 입력 {artifact.name} 을 앞 stage 에서 만들지 않습니다."
                        )
                for artifact in action.outputs:
                    if artifact.name in produced or artifact.name in produced_here:
                        problems.append(f"아티팩트 {artifact.name} 을 두 번 이상 만듭니다.")
                    produced_here.add(artifact.name)
            produced |= produced_here

        for action in self.actions():
            if action.role is not self.role:
                problems.append(f"action {action.name} 이 파이프라인 역할({self.role.name}) 이 아닌 역할을 사용합니다.")
            elif action.service not in self.role.trusted_services:
                problems.append(
                    f"역할 {self.role.name} 이 서비스 {action.service!r} 를 신뢰하지 않습니다 (action {action.name})."
                )

        if problems:
            raise PipelineConfigError(
                f"파이프라인 {self.name} 정의가 올바르지 않습니다:\n- " + "\n- ".join(problems)
            )

    def describe(self) -> str:
        """
        stage/action/아티팩트/역할 권한 요약 텍스트. 실제 실행은 하지 않는다.
        """
        lines: List[str] = []
        lines.append("# Pipeline plan")
        lines.append(f"- pipeline: {self.name}")
        lines.append(f"- role: {self.role.name} (policy={self.role.managed_policy})")
        lines.append(f"- artifact bucket: {self.artifact_store.bucket_name}")
        lines.append("")

        lines.append("## Stages")
        for idx, stage in enumerate(self.stages, start=1):
            lines.append(f"{idx}. {stage.name} ({stage.kind.value})")
            for action in stage.actions:
                lines.append(f"   - {action.describe()}")
        lines.append("")

        lines.append("## Role grants")
        grants = self.role.grants()
        if grants:
            for resource_id, perm in grants:
                lines.append(f"- {resource_id}: {perm}")
        else:
            lines.append("- (none)")

        return "\n".join(lines)
