"""
orchestrator
------------

파이프라인 실행(run) 상태 머신과 트리거 정책.

Idle → SourcePending → Building → Deploying → Succeeded/Failed

- stage 는 엄격히 순서대로, 한 stage 안의 action 은 동시에 실행한다.
- stage 의 action 은 하나가 실패해도 나머지가 끝날 때까지 기다린 뒤 stage 를 실패 처리한다.
- 실패한 run 은 이후 stage 를 시작하지 않는다 (부분 배포 없음).
- 실행 중에 새 트리거가 오면 정책에 따라 대기(queue, 최신 1건만 유지)하거나
  진행 중인 run 을 다음 stage 경계에서 중단(supersede)시킨다.
- 재시도는 하지 않는다.
"""

from __future__ import annotations

import os
import shutil
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set

from .logging_utils import get_logger
from .notifications import EVENT_BUILD_FAILED, EVENT_BUILD_SUCCEEDED, Notifier
from .pipeline import Action, ActionContext, BuildAction, PipelineDefinition, Stage, StageKind
from .source import PushEvent


logger = get_logger(__name__)


class RunState(str, Enum):
    IDLE = "Idle"
    SOURCE_PENDING = "SourcePending"
    BUILDING = "Building"
    DEPLOYING = "Deploying"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SUPERSEDED = "Superseded"


_IN_FLIGHT = {RunState.SOURCE_PENDING, RunState.BUILDING, RunState.DEPLOYING}
_FINISHED = {RunState.SUCCEEDED, RunState.FAILED, RunState.SUPERSEDED}

VALID_TRANSITIONS: Dict[RunState, Set[RunState]] = {
    RunState.IDLE: {RunState.SOURCE_PENDING},
    RunState.SOURCE_PENDING: {RunState.BUILDING, RunState.DEPLOYING} | _FINISHED,
    RunState.BUILDING: {RunState.DEPLOYING} | _FINISHED,
    RunState.DEPLOYING: set(_FINISHED),
    RunState.SUCCEEDED: set(),
    RunState.FAILED: set(),
    RunState.SUPERSEDED: set(),
}

STAGE_STATES = {
    StageKind.SOURCE: RunState.SOURCE_PENDING,
    StageKind.BUILD: RunState.BUILDING,
    StageKind.DEPLOY: RunState.DEPLOYING,
}


class InvalidTransitionError(RuntimeError):
    pass


class TriggerPolicy(str, Enum):
    QUEUE = "queue"
    SUPERSEDE = "supersede"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActionResult:
    action: str
    succeeded: bool
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@dataclass
class StageResult:
    stage: str
    actions: List[ActionResult] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return all(a.succeeded for a in self.actions)

    @property
    def failed_actions(self) -> List[str]:
        return [a.action for a in self.actions if not a.succeeded]


@dataclass
class PipelineRun:
    run_id: str
    event: Optional[PushEvent]
    state: RunState = RunState.IDLE
    stages: List[StageResult] = field(default_factory=list)
    error: Optional[str] = None
    history: List[RunState] = field(default_factory=lambda: [RunState.IDLE])
    created_at: datetime = field(default_factory=_now)
    finished_at: Optional[datetime] = None
    _cancel: threading.Event = field(default_factory=threading.Event, init=False, repr=False, compare=False)

    @property
    def in_flight(self) -> bool:
        return self.state in _IN_FLIGHT

    @property
    def finished(self) -> bool:
        return self.state in _FINISHED

    def transition(self, target: RunState) -> None:
        allowed = VALID_TRANSITIONS.get(self.state, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"run {self.run_id}: {self.state.value} -> {target.value} 전이는 허용되지 않습니다. "
                f"(허용: {sorted(s.value for s in allowed)})"
            )
        logger.info("run %s: %s -> %s", self.run_id, self.state.value, target.value)
        self.state = target
        self.history.append(target)
        if target in _FINISHED:
            self.finished_at = _now()

    def request_cancel(self) -> None:
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def stage_result(self, name: str) -> Optional[StageResult]:
        for result in self.stages:
            if result.stage == name:
                return result
        return None

    def summary(self) -> str:
        lines: List[str] = []
        lines.append("# Pipeline run summary")
        lines.append(f"- run: {self.run_id}")
        if self.event is not None:
            commit = self.event.commit or "(head)"
            lines.append(f"- source: {self.event.owner}/{self.event.repo}@{self.event.branch} {commit}")
        lines.append(f"- state: {self.state.value}")
        lines.append("")

        lines.append("## Stages")
        if self.stages:
            for result in self.stages:
                status = "SUCCEEDED" if result.succeeded else "FAILED"
                lines.append(f"- {result.stage}: {status}")
                for action in result.actions:
                    mark = "ok" if action.succeeded else f"failed: {action.error}"
                    lines.append(f"  - {action.action}: {mark}")
        else:
            lines.append("- (none)")

        if self.error:
            lines.append("")
            lines.append("## Error")
            lines.append(f"- {self.error}")

        return "\n".join(lines)


class Orchestrator:
    def __init__(
        self,
        definition: PipelineDefinition,
        *,
        work_dir: str = ".pipeline/work",
        policy: TriggerPolicy = TriggerPolicy.QUEUE,
        notifier: Optional[Notifier] = None,
        keep_work_dirs: bool = False,
    ) -> None:
        definition.validate()
        self.definition = definition
        self.work_dir = work_dir
        self.policy = TriggerPolicy(policy)
        self.notifier = notifier
        self.keep_work_dirs = keep_work_dirs

        self.runs: List[PipelineRun] = []
        self._lock = threading.Lock()
        self._current: Optional[PipelineRun] = None
        self._pending: Optional[PushEvent] = None
        self._worker: Optional[threading.Thread] = None
        self._idle = threading.Event()
        self._idle.set()

    # ------------------------------------------------------------------
    # 트리거
    # ------------------------------------------------------------------

    def matches(self, event: PushEvent) -> bool:
        return self.definition.checkout_action.matches(event)

    def trigger(self, event: PushEvent) -> bool:
        """
        push 이벤트로 새 run 을 비동기로 시작한다. 이벤트가 설정된 브랜치와 맞지 않으면 False.
        실행 중인 run 이 있으면 최신 이벤트 하나만 대기시킨다.
        """
        if not self.matches(event):
            logger.info("설정된 저장소/브랜치가 아니어서 이벤트를 무시합니다: %s/%s@%s", event.owner, event.repo, event.branch)
            return False

        with self._lock:
            if self._worker is None:
                self._idle.clear()
                self._worker = threading.Thread(
                    target=self._worker_loop,
                    args=(event,),
                    name=f"pipeline-{self.definition.name}",
                    daemon=True,
                )
                self._worker.start()
                return True

            if self._pending is not None:
                logger.info("대기 중이던 실행을 최신 이벤트로 대체합니다.")
            self._pending = event
            if self.policy == TriggerPolicy.SUPERSEDE and self._current is not None:
                logger.info("진행 중인 run 을 중단 요청합니다: %s", self._current.run_id)
                self._current.request_cancel()
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self._idle.wait(timeout)

    def _worker_loop(self, event: Optional[PushEvent]) -> None:
        while event is not None:
            run = self._new_run(event)
            with self._lock:
                self._current = run
            try:
                self._run(run)
            except Exception:  # noqa: BLE001
                logger.exception("run 처리 중 예외 발생: %s", run.run_id)
            finally:
                with self._lock:
                    self._current = None
                    event = self._pending
                    self._pending = None
                    if event is None:
                        self._worker = None
                        self._idle.set()

    # ------------------------------------------------------------------
    # 실행
    # ------------------------------------------------------------------

    def _new_run(self, event: Optional[PushEvent]) -> PipelineRun:
        run_id = f"{_now():%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:8]}"
        run = PipelineRun(run_id=run_id, event=event)
        with self._lock:
            self.runs.append(run)
        return run

    def execute(self, event: Optional[PushEvent] = None) -> PipelineRun:
        """
        run 하나를 호출한 스레드에서 끝까지 실행하고 결과를 반환한다.
        """
        run = self._new_run(event)
        self._run(run)
        return run

    def _run(self, run: PipelineRun) -> None:
        run.transition(RunState.SOURCE_PENDING)
        ctx = ActionContext(
            run_id=run.run_id,
            artifact_store=self.definition.artifact_store,
            work_dir=os.path.join(self.work_dir, run.run_id),
            event=run.event,
        )
        try:
            for stage in self.definition.stages:
                if run.cancel_requested:
                    run.error = "새 트리거로 대체되었습니다."
                    run.transition(RunState.SUPERSEDED)
                    return

                target = STAGE_STATES[stage.kind]
                if run.state != target:
                    run.transition(target)

                result = self._run_stage(stage, ctx)
                run.stages.append(result)
                if not result.succeeded:
                    run.error = f"stage {stage.name} 실패: {', '.join(result.failed_actions)}"
                    logger.error("run %s: %s", run.run_id, run.error)
                    run.transition(RunState.FAILED)
                    return

            run.transition(RunState.SUCCEEDED)
        except Exception as e:  # noqa: BLE001
            logger.exception("run %s 실행 중 예외 발생", run.run_id)
            run.error = f"실행 중 예외 발생: {e}"
            if run.in_flight:
                run.transition(RunState.FAILED)
        finally:
            if not self.keep_work_dirs:
                shutil.rmtree(ctx.work_dir, ignore_errors=True)

    def _run_stage(self, stage: Stage, ctx: ActionContext) -> StageResult:
        logger.info("stage 실행: %s (%d actions)", stage.name, len(stage.actions))
        with ThreadPoolExecutor(max_workers=len(stage.actions), thread_name_prefix=stage.name) as pool:
            futures = [pool.submit(self._run_action, action, ctx) for action in stage.actions]
            # 한 action 이 실패해도 나머지 action 은 끝까지 기다린다
            results = [f.result() for f in futures]
        return StageResult(stage=stage.name, actions=results)

    def _run_action(self, action: Action, ctx: ActionContext) -> ActionResult:
        result = ActionResult(action=action.name, succeeded=False, started_at=_now())
        try:
            action.execute(ctx)
            result.succeeded = True
        except Exception as e:  # noqa: BLE001
            result.error = str(e)
            logger.exception("action 실행 실패: %s", action.name)
        finally:
            result.finished_at = _now()

        if self.notifier is not None and isinstance(action, BuildAction):
            event = EVENT_BUILD_SUCCEEDED if result.succeeded else EVENT_BUILD_FAILED
            try:
                self.notifier.notify(action.project.name, event, ctx.run_id, result.error or "")
            except Exception:  # noqa: BLE001
                # 알림 실패는 action 결과를 바꾸지 않는다
                logger.exception("빌드 알림 실패: %s (%s)", action.name, event)
        return result
