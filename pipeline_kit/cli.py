import json
import sys
from typing import Optional

import click

from .config import load_env_files, PipelineConfig
from .errors import SecretNotFoundError
from .logging_utils import setup_logging, get_logger
from .orchestrator import RunState
from .source import PushEvent, verify_webhook_signature
from .stack import PipelineStack, define_pipeline


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
    help="로그 레벨을 DEBUG로 올립니다. (-v 가 많을수록 더 자세한 로그)",
)
@click.pass_context
def main(ctx: click.Context, chdir: str, verbose: int) -> None:
    """체크아웃 → 빌드 → 배포 파이프라인 CLI"""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["chdir"] = chdir
    ctx.obj["verbose"] = verbose


def _load_config_from_ctx(ctx: click.Context) -> PipelineConfig:
    base_dir: str = ctx.obj["chdir"]
    load_env_files(base_dir)
    cfg = PipelineConfig.from_env()
    logger.debug("Config loaded: %s", cfg)
    return cfg


def _load_stack_from_ctx(ctx: click.Context) -> PipelineStack:
    try:
        cfg = _load_config_from_ctx(ctx)
        return define_pipeline(cfg, base_dir=ctx.obj["chdir"])
    except Exception as e:  # noqa: BLE001
        click.echo(f"[ERROR] 설정 로드 실패: {e}", err=True)
        sys.exit(1)


@main.command()
@click.option(
    "-a",
    "--all",
    "show_all",
    is_flag=True,
    help="역할 권한 문서(JSON)를 함께 출력합니다.",
)
@click.pass_context
def plan(ctx: click.Context, show_all: bool) -> None:
    """파이프라인 stage/action/아티팩트/역할 권한 요약 출력 (실행하지 않음)"""
    stack = _load_stack_from_ctx(ctx)

    report = stack.definition.describe()
    if show_all:
        report = (
            report
            + "\n\n## Role policy document\n"
            + json.dumps(stack.role.policy_document(), ensure_ascii=False, indent=2)
        )

    click.echo(report)


@main.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """
    실행 전에 secret / 아티팩트 저장소 상태를 점검한다.
    (리소스 생성/변경은 하지 않는다)
    """
    stack = _load_stack_from_ctx(ctx)
    cfg = stack.config

    lines: list[str] = ["# Pipeline pre-check", f"- pipeline: {cfg.pipeline_name}", ""]
    critical: list[str] = []

    lines.append("## Source token")
    try:
        if stack.token.store.exists(stack.token.name):
            lines.append(f"- Secret: 존재함 ({stack.token.name})")
        else:
            msg = f"Secret: 없음 ({stack.token.name})"
            lines.append(f"- {msg}")
            critical.append(msg)
    except Exception as e:  # noqa: BLE001
        msg = f"Secret: 체크 중 예외 발생: {e}"
        lines.append(f"- {msg}")
        critical.append(msg)
    lines.append("")

    lines.append("## Artifact store")
    try:
        lines.append(f"- {stack.definition.artifact_store.check()}")
    except Exception as e:  # noqa: BLE001
        msg = f"Artifact store: 체크 중 예외 발생: {e}"
        lines.append(f"- {msg}")
        critical.append(msg)
    lines.append("")

    lines.append("## Summary")
    if critical:
        lines.append("- 상태: 크리티컬 이슈가 있습니다. 실행 전 반드시 해결해야 합니다.")
        for issue in critical:
            lines.append(f"  - {issue}")
    else:
        lines.append("- 상태: 주요 이슈 없음")

    click.echo("\n".join(lines))
    if critical:
        sys.exit(1)


@main.command()
@click.option("--location", type=str, default=None, help="새로 만들 GCS 버킷의 location (예: asia-northeast3)")
@click.pass_context
def setup(ctx: click.Context, location: Optional[str]) -> None:
    """아티팩트 저장소(버킷 / 로컬 디렉토리)를 준비한다. 이미 있으면 그대로 둔다."""
    stack = _load_stack_from_ctx(ctx)
    try:
        stack.definition.artifact_store.ensure_bucket(location)
    except Exception as e:  # noqa: BLE001
        logger.exception("아티팩트 저장소 준비 실패")
        click.echo(f"[ERROR] 아티팩트 저장소 준비 실패: {e}", err=True)
        sys.exit(1)
    click.echo(stack.definition.artifact_store.check())


@main.command()
@click.argument("name")
@click.pass_context
def buildspec(ctx: click.Context, name: str) -> None:
    """빌드 프로젝트 NAME 의 build spec 을 JSON 으로 출력"""
    stack = _load_stack_from_ctx(ctx)
    try:
        project = stack.build_runner.get(name)
    except KeyError as e:
        click.echo(f"[ERROR] {e.args[0]}", err=True)
        sys.exit(1)
    click.echo(json.dumps(project.spec.to_dict(), ensure_ascii=False, indent=2))


@main.command()
@click.option(
    "--event-file",
    type=click.Path(dir_okay=False, exists=True),
    default=None,
    help="push webhook payload(JSON) 파일. 없으면 설정된 브랜치로 수동 실행합니다.",
)
@click.option(
    "--signature",
    type=str,
    default=None,
    help="webhook 의 X-Hub-Signature-256 헤더 값. WEBHOOK_SECRET_NAME 이 설정되어 있으면 필수입니다.",
)
@click.option("--commit", type=str, default=None, help="체크아웃할 커밋 SHA")
@click.option("--keep-work-dir", is_flag=True, help="실행 후 작업 디렉토리를 지우지 않습니다.")
@click.pass_context
def run(
    ctx: click.Context,
    event_file: Optional[str],
    signature: Optional[str],
    commit: Optional[str],
    keep_work_dir: bool,
) -> None:
    """파이프라인을 한 번 실행 (끝날 때까지 대기)"""
    stack = _load_stack_from_ctx(ctx)
    checkout = stack.definition.checkout_action

    if event_file:
        with open(event_file, "rb") as f:
            body = f.read()
        if stack.config.webhook_secret_name:
            try:
                hook_secret = stack.token.store.get(stack.config.webhook_secret_name)
            except SecretNotFoundError as e:
                click.echo(f"[ERROR] webhook secret 을 읽을 수 없습니다: {e}", err=True)
                sys.exit(1)
            if not verify_webhook_signature(hook_secret, body, signature):
                click.echo("[ERROR] webhook 서명이 일치하지 않아 실행하지 않습니다.", err=True)
                sys.exit(1)
        try:
            event = PushEvent.from_github_payload(json.loads(body))
        except ValueError as e:
            click.echo(f"[ERROR] 이벤트 파일을 읽을 수 없습니다: {e}", err=True)
            sys.exit(1)
        if not checkout.matches(event):
            click.echo(
                f"[INFO] 설정된 저장소/브랜치({checkout.coordinates.full_name}@{checkout.coordinates.branch}) "
                "와 다른 이벤트라 실행하지 않습니다."
            )
            return
    else:
        event = PushEvent.manual(checkout.coordinates, commit=commit)

    orchestrator = stack.orchestrator(keep_work_dirs=keep_work_dir)
    try:
        result = orchestrator.execute(event)
    except Exception as e:  # noqa: BLE001
        logger.exception("파이프라인 실행 중 오류 발생")
        click.echo(f"[ERROR] 실행 실패: {e}", err=True)
        sys.exit(1)

    click.echo(result.summary())

    if result.state != RunState.SUCCEEDED:
        sys.exit(1)
