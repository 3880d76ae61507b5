import hashlib
import hmac
import json

import pytest
from click.testing import CliRunner

from conftest import TEST_BUILD, TEST_CODE_POST_BUILD, TEST_INSTALL, TEST_TEMPLATE_POST_BUILD, FakeFetcher
from pipeline_kit import cli
from pipeline_kit.stack import define_pipeline


@pytest.fixture
def fake_define(monkeypatch: pytest.MonkeyPatch) -> FakeFetcher:
    fetcher = FakeFetcher()

    def _define(cfg, base_dir=".", code_post_build=None):  # noqa: ANN001, ANN202
        return define_pipeline(
            cfg,
            base_dir=base_dir,
            fetcher=fetcher,
            install_commands=TEST_INSTALL,
            build_commands=TEST_BUILD,
            template_post_build=TEST_TEMPLATE_POST_BUILD,
            code_post_build=code_post_build or TEST_CODE_POST_BUILD,
        )

    monkeypatch.setattr(cli, "define_pipeline", _define)
    return fetcher


def test_plan_prints_stages_and_grants(pipeline_env, secrets_dir) -> None:  # noqa: ANN001
    result = CliRunner().invoke(cli.main, ["-C", str(secrets_dir), "plan"])

    assert result.exit_code == 0, result.output
    assert "# Pipeline plan" in result.output
    assert "1. Source (source)" in result.output
    assert "Checking_Out_Source_Code" in result.output
    assert "- secret/GITHUB_TOKEN: read" in result.output
    assert "Role policy document" not in result.output


def test_plan_all_includes_policy_document(pipeline_env, secrets_dir) -> None:  # noqa: ANN001
    result = CliRunner().invoke(cli.main, ["-C", str(secrets_dir), "plan", "--all"])

    assert result.exit_code == 0, result.output
    assert "## Role policy document" in result.output
    assert '"managed_policy": "AdministratorAccess"' in result.output


def test_missing_config_exits_with_error(pipeline_env, secrets_dir, monkeypatch: pytest.MonkeyPatch) -> None:  # noqa: ANN001
    monkeypatch.delenv("SOURCE_REPO")

    result = CliRunner().invoke(cli.main, ["-C", str(secrets_dir), "plan"])

    assert result.exit_code == 1
    assert "설정 로드 실패" in result.output
    assert "SOURCE_REPO" in result.output


def test_buildspec_outputs_json(pipeline_env, secrets_dir) -> None:  # noqa: ANN001
    result = CliRunner().invoke(cli.main, ["-C", str(secrets_dir), "buildspec", "BuildCode"])

    assert result.exit_code == 0, result.output
    spec = json.loads(result.output)
    assert spec["phases"]["install"]["commands"] == ["npm ci"]
    assert spec["phases"]["post_build"]["commands"] == ["npm run test"]
    assert spec["artifacts"]["base-directory"] == "dist/src"
    assert spec["artifacts"]["files"] == ["index.js"]


def test_buildspec_unknown_project(pipeline_env, secrets_dir) -> None:  # noqa: ANN001
    result = CliRunner().invoke(cli.main, ["-C", str(secrets_dir), "buildspec", "Nope"])

    assert result.exit_code == 1


def test_check_reports_missing_secret(pipeline_env, tmp_path) -> None:  # noqa: ANN001
    result = CliRunner().invoke(cli.main, ["-C", str(tmp_path), "check"])

    assert result.exit_code == 1
    assert "Secret: 없음 (GITHUB_TOKEN)" in result.output


def test_check_passes_with_secret(pipeline_env, secrets_dir) -> None:  # noqa: ANN001
    result = CliRunner().invoke(cli.main, ["-C", str(secrets_dir), "check"])

    assert result.exit_code == 0, result.output
    assert "주요 이슈 없음" in result.output


def test_run_manual(pipeline_env, secrets_dir, fake_define) -> None:  # noqa: ANN001
    result = CliRunner().invoke(cli.main, ["-C", str(secrets_dir), "run", "--commit", "abc123"])

    assert result.exit_code == 0, result.output
    assert "- state: Succeeded" in result.output
    assert fake_define.calls[0]["commit"] == "abc123"
    assert (secrets_dir / ".pipeline" / "stacks" / "ServiceStack.json").exists()


def test_run_ignores_event_for_other_branch(pipeline_env, secrets_dir, fake_define) -> None:  # noqa: ANN001
    event_file = secrets_dir / "event.json"
    event_file.write_text(
        json.dumps({"ref": "refs/heads/feature", "after": "def456", "repository": {"full_name": "acme/service"}}),
        encoding="utf-8",
    )

    result = CliRunner().invoke(cli.main, ["-C", str(secrets_dir), "run", "--event-file", str(event_file)])

    assert result.exit_code == 0, result.output
    assert "[INFO]" in result.output
    assert fake_define.calls == []


def test_run_rejects_tag_event(pipeline_env, secrets_dir, fake_define) -> None:  # noqa: ANN001
    event_file = secrets_dir / "event.json"
    event_file.write_text(
        json.dumps({"ref": "refs/tags/v1", "repository": {"full_name": "acme/service"}}),
        encoding="utf-8",
    )

    result = CliRunner().invoke(cli.main, ["-C", str(secrets_dir), "run", "--event-file", str(event_file)])

    assert result.exit_code == 1
    assert "이벤트 파일을 읽을 수 없습니다" in result.output


def test_run_failure_exits_non_zero(pipeline_env, tmp_path, fake_define) -> None:  # noqa: ANN001
    # 토큰 secret 이 없으므로 Source stage 에서 실패한다
    result = CliRunner().invoke(cli.main, ["-C", str(tmp_path), "run"])

    assert result.exit_code == 1
    assert "- state: Failed" in result.output


def test_setup_prepares_local_store(pipeline_env, secrets_dir) -> None:  # noqa: ANN001
    result = CliRunner().invoke(cli.main, ["-C", str(secrets_dir), "setup"])

    assert result.exit_code == 0, result.output
    assert (secrets_dir / ".pipeline" / "artifacts" / "service-pipeline-artifacts").is_dir()
    assert "존재함" in result.output


def _signed_event(secrets_dir, monkeypatch: pytest.MonkeyPatch):  # noqa: ANN001, ANN202
    monkeypatch.setenv("WEBHOOK_SECRET_NAME", "WEBHOOK_SECRET")
    with open(secrets_dir / ".env.secrets", "a", encoding="utf-8") as f:
        f.write("WEBHOOK_SECRET=hook-secret\n")
    body = json.dumps(
        {"ref": "refs/heads/main", "after": "abc123", "repository": {"full_name": "acme/service"}}
    ).encode("utf-8")
    event_file = secrets_dir / "event.json"
    event_file.write_bytes(body)
    digest = hmac.new(b"hook-secret", body, hashlib.sha256).hexdigest()
    return event_file, f"sha256={digest}"


def test_run_verifies_webhook_signature(pipeline_env, secrets_dir, fake_define, monkeypatch: pytest.MonkeyPatch) -> None:  # noqa: ANN001
    event_file, signature = _signed_event(secrets_dir, monkeypatch)

    result = CliRunner().invoke(
        cli.main,
        ["-C", str(secrets_dir), "run", "--event-file", str(event_file), "--signature", signature],
    )

    assert result.exit_code == 0, result.output
    assert fake_define.calls[0]["commit"] == "abc123"


def test_run_rejects_bad_webhook_signature(pipeline_env, secrets_dir, fake_define, monkeypatch: pytest.MonkeyPatch) -> None:  # noqa: ANN001
    event_file, _signature = _signed_event(secrets_dir, monkeypatch)

    result = CliRunner().invoke(
        cli.main,
        ["-C", str(secrets_dir), "run", "--event-file", str(event_file), "--signature", "sha256=00"],
    )

    assert result.exit_code == 1
    assert "서명이 일치하지 않아" in result.output
    assert fake_define.calls == []


def test_run_reports_missing_webhook_secret(pipeline_env, secrets_dir, fake_define, monkeypatch: pytest.MonkeyPatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("WEBHOOK_SECRET_NAME", "NOT_THERE")
    event_file = secrets_dir / "event.json"
    event_file.write_text(json.dumps({"ref": "refs/heads/main"}), encoding="utf-8")

    result = CliRunner().invoke(
        cli.main,
        ["-C", str(secrets_dir), "run", "--event-file", str(event_file), "--signature", "sha256=00"],
    )

    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
    assert "[ERROR] webhook secret" in result.output
    assert fake_define.calls == []


def test_run_rejects_non_object_event(pipeline_env, secrets_dir, fake_define) -> None:  # noqa: ANN001
    event_file = secrets_dir / "event.json"
    event_file.write_text("[]", encoding="utf-8")

    result = CliRunner().invoke(cli.main, ["-C", str(secrets_dir), "run", "--event-file", str(event_file)])

    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
    assert "이벤트 파일을 읽을 수 없습니다" in result.output
