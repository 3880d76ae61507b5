import threading
from dataclasses import replace
from typing import Optional

import pytest

from conftest import (
    TEST_BUILD,
    TEST_CODE_POST_BUILD,
    TEST_INSTALL,
    TEST_TEMPLATE_POST_BUILD,
    FakeFetcher,
)
from pipeline_kit.config import PipelineConfig
from pipeline_kit.deploy import DeployOutcome, LocalStackTarget
from pipeline_kit.errors import PipelineConfigError
from pipeline_kit.notifications import NotificationRule, NotificationTopic, Notifier
from pipeline_kit.orchestrator import InvalidTransitionError, Orchestrator, PipelineRun, RunState, TriggerPolicy
from pipeline_kit.source import PushEvent
from pipeline_kit.stack import PipelineStack, define_pipeline


def _stack(
    cfg: PipelineConfig,
    base_dir,  # noqa: ANN001
    fetcher,  # noqa: ANN001
    code_post_build=None,  # noqa: ANN001
) -> PipelineStack:
    return define_pipeline(
        cfg,
        base_dir=str(base_dir),
        fetcher=fetcher,
        install_commands=TEST_INSTALL,
        build_commands=TEST_BUILD,
        template_post_build=TEST_TEMPLATE_POST_BUILD,
        code_post_build=code_post_build or TEST_CODE_POST_BUILD,
    )


def _target(stack: PipelineStack) -> LocalStackTarget:
    return stack.definition.stages[-1].actions[0].target


def _event(commit: Optional[str] = None, branch: str = "main") -> PushEvent:
    return PushEvent(owner="acme", repo="service", branch=branch, commit=commit)


class BlockingFetcher(FakeFetcher):
    """첫 호출에서 release 될 때까지 멈추는 fetcher."""

    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def __call__(self, coordinates, token, dest_dir, commit=None) -> None:  # noqa: ANN001
        first = not self.calls
        super().__call__(coordinates, token, dest_dir, commit)
        if first:
            self.started.set()
            assert self.release.wait(10)


def test_successful_run_deploys_with_code_location(cfg, secrets_dir, fake_fetcher) -> None:  # noqa: ANN001
    stack = _stack(cfg, secrets_dir, fake_fetcher)

    run = stack.orchestrator().execute(_event("abc123"))

    assert run.state == RunState.SUCCEEDED, run.summary()
    assert run.history == [
        RunState.IDLE,
        RunState.SOURCE_PENDING,
        RunState.BUILDING,
        RunState.DEPLOYING,
        RunState.SUCCEEDED,
    ]
    assert fake_fetcher.calls == [{"repo": "acme/service", "token": "ghp_test_token", "commit": "abc123"}]

    state = _target(stack).describe("ServiceStack")
    assert state is not None
    assert state.parameters["bucketName"] == "service-pipeline-artifacts"
    assert state.parameters["bucketKey"] == f"ServicePipeline/{run.run_id}/codeOutput.zip"
    assert state.parameters["memorySize"] == "128"


def test_build_stage_runs_both_builds(cfg, secrets_dir, fake_fetcher) -> None:  # noqa: ANN001
    stack = _stack(cfg, secrets_dir, fake_fetcher)

    run = stack.orchestrator().execute(_event())

    build = run.stage_result("Build")
    assert build is not None
    assert sorted(a.action for a in build.actions) == ["Building_Code", "Building_Template"]
    assert build.succeeded


def test_code_build_failure_stops_before_deploy(cfg, secrets_dir, fake_fetcher) -> None:  # noqa: ANN001
    stack = _stack(cfg, secrets_dir, fake_fetcher, code_post_build=["exit 3"])

    run = stack.orchestrator().execute(_event())

    assert run.state == RunState.FAILED
    assert RunState.DEPLOYING not in run.history
    build = run.stage_result("Build")
    assert build.failed_actions == ["Building_Code"]
    # 템플릿 빌드는 실패와 상관없이 끝까지 실행된다
    assert [a.succeeded for a in build.actions if a.action == "Building_Template"] == [True]
    assert _target(stack).describe("ServiceStack") is None
    assert "Building_Code" in run.summary()


def test_missing_token_fails_in_source_stage(cfg, tmp_path, fake_fetcher) -> None:  # noqa: ANN001
    stack = _stack(cfg, tmp_path, fake_fetcher)

    run = stack.orchestrator().execute(_event())

    assert run.state == RunState.FAILED
    assert run.history == [RunState.IDLE, RunState.SOURCE_PENDING, RunState.FAILED]
    assert [s.stage for s in run.stages] == ["Source"]
    assert fake_fetcher.calls == []
    assert "GITHUB_TOKEN" in run.stages[0].actions[0].error


def test_second_run_updates_code_location(cfg, secrets_dir, fake_fetcher) -> None:  # noqa: ANN001
    stack = _stack(cfg, secrets_dir, fake_fetcher)
    orchestrator = stack.orchestrator()
    deploy = stack.definition.stages[-1].actions[0]

    first = orchestrator.execute(_event())
    assert deploy.last_outcome == DeployOutcome.CREATED
    second = orchestrator.execute(_event())

    assert second.state == RunState.SUCCEEDED
    assert deploy.last_outcome == DeployOutcome.UPDATED
    assert first.run_id != second.run_id
    state = _target(stack).describe("ServiceStack")
    assert state.parameters["bucketKey"] == f"ServicePipeline/{second.run_id}/codeOutput.zip"


def test_work_dir_is_removed_unless_kept(cfg, secrets_dir, fake_fetcher) -> None:  # noqa: ANN001
    stack = _stack(cfg, secrets_dir, fake_fetcher)

    run = stack.orchestrator().execute(_event())
    assert not (secrets_dir / ".pipeline" / "work" / run.run_id).exists()

    kept = stack.orchestrator(keep_work_dirs=True).execute(_event())
    assert (secrets_dir / ".pipeline" / "work" / kept.run_id).is_dir()


def test_trigger_ignores_other_branch(cfg, secrets_dir, fake_fetcher) -> None:  # noqa: ANN001
    orchestrator = _stack(cfg, secrets_dir, fake_fetcher).orchestrator()

    assert orchestrator.trigger(_event(branch="feature")) is False
    assert orchestrator.trigger(PushEvent("other", "service", "main")) is False
    assert orchestrator.wait_idle(1)
    assert orchestrator.runs == []


def test_queue_policy_keeps_only_latest_pending(cfg, secrets_dir) -> None:  # noqa: ANN001
    fetcher = BlockingFetcher()
    orchestrator = _stack(cfg, secrets_dir, fetcher).orchestrator()

    assert orchestrator.trigger(_event("c1"))
    assert fetcher.started.wait(10)
    assert orchestrator.trigger(_event("c2"))
    assert orchestrator.trigger(_event("c3"))
    fetcher.release.set()

    assert orchestrator.wait_idle(30)
    assert [r.event.commit for r in orchestrator.runs] == ["c1", "c3"]
    assert [r.state for r in orchestrator.runs] == [RunState.SUCCEEDED, RunState.SUCCEEDED]


def test_supersede_policy_cancels_current_run(cfg, secrets_dir) -> None:  # noqa: ANN001
    cfg = replace(cfg, trigger_policy="supersede")
    fetcher = BlockingFetcher()
    stack = _stack(cfg, secrets_dir, fetcher)
    orchestrator = stack.orchestrator()
    assert orchestrator.policy == TriggerPolicy.SUPERSEDE

    orchestrator.trigger(_event("c1"))
    assert fetcher.started.wait(10)
    orchestrator.trigger(_event("c2"))
    fetcher.release.set()

    assert orchestrator.wait_idle(30)
    first, second = orchestrator.runs
    assert first.state == RunState.SUPERSEDED
    # 체크아웃은 끝났지만 Build stage 는 시작하지 않는다
    assert [s.stage for s in first.stages] == ["Source"]
    assert second.state == RunState.SUCCEEDED
    assert second.event.commit == "c2"


def test_invalid_transition_is_rejected() -> None:
    run = PipelineRun(run_id="r", event=None)

    with pytest.raises(InvalidTransitionError):
        run.transition(RunState.DEPLOYING)

    run.transition(RunState.SOURCE_PENDING)
    run.transition(RunState.FAILED)
    with pytest.raises(InvalidTransitionError):
        run.transition(RunState.BUILDING)
    assert run.finished


def test_orchestrator_validates_definition(cfg, secrets_dir, fake_fetcher) -> None:  # noqa: ANN001
    stack = _stack(cfg, secrets_dir, fake_fetcher)
    stack.definition.stages.reverse()

    with pytest.raises(PipelineConfigError):
        Orchestrator(stack.definition)


def test_notification_error_does_not_leave_run_in_flight(cfg, secrets_dir, fake_fetcher) -> None:  # noqa: ANN001
    stack = _stack(cfg, secrets_dir, fake_fetcher)
    # publish 권한을 주지 않은 토픽
    topic = NotificationTopic("t", ["dev@example.com"])
    notifier = Notifier(topic, [NotificationRule("n", "BuildCode")], stack.role, transport=lambda m: None)
    orchestrator = Orchestrator(stack.definition, work_dir=stack.work_dir, notifier=notifier)

    assert orchestrator.trigger(_event())
    assert orchestrator.wait_idle(30)

    (run,) = orchestrator.runs
    assert run.state == RunState.SUCCEEDED
    assert run.finished_at is not None


def test_unexpected_error_fails_the_run(cfg, secrets_dir, fake_fetcher, monkeypatch: pytest.MonkeyPatch) -> None:  # noqa: ANN001
    orchestrator = _stack(cfg, secrets_dir, fake_fetcher).orchestrator()

    def broken_stage(stage, ctx):  # noqa: ANN001, ANN202, ARG001
        raise RuntimeError("executor broke")

    monkeypatch.setattr(orchestrator, "_run_stage", broken_stage)

    run = orchestrator.execute(_event())

    assert run.state == RunState.FAILED
    assert run.finished
    assert "executor broke" in run.error
    assert run.history == [RunState.IDLE, RunState.SOURCE_PENDING, RunState.FAILED]
