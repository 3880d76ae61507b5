"""
pytest 설정:

로컬 작업 환경에 설치된 다른 버전의 pipeline_kit 패키지가 존재할 때,
`pytest` 실행 시 site-packages 쪽이 먼저 import 되어 테스트가 깨질 수 있다.

테스트는 항상 현재 레포의 소스를 대상으로 해야 하므로, repo root 를 sys.path 최상단에 고정한다.
"""

from __future__ import annotations

import json
import os
import sys
from typing import Dict, List, Optional

import pytest


def pytest_configure() -> None:
    repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if repo_root not in sys.path:
        sys.path.insert(0, repo_root)


TEMPLATE = {
    "Parameters": {
        "bucketName": {"Type": "String"},
        "bucketKey": {"Type": "String"},
        "memorySize": {"Type": "Number", "Default": 128},
    },
    "Resources": {
        "Function": {"Type": "Custom::Function", "Properties": {"Handler": "index.handler"}},
        "FunctionRole": {"Type": "AWS::IAM::Role"},
    },
}


ENV = {
    "PIPELINE_ROLE_NAME": "pipeline-role",
    "PIPELINE_ROLE_DESCRIPTION": "role for the deployment pipeline",
    "PIPELINE_ROLE_POLICY": "AdministratorAccess",
    "KMS_KEY_DESCRIPTION": "key used by the pipeline",
    "SOURCE_OWNER": "acme",
    "SOURCE_REPO": "service",
    "SOURCE_BRANCH": "main",
    "SOURCE_TOKEN_SECRET_NAME": "GITHUB_TOKEN",
    "TEMPLATE_BUILD_PROJECT": "BuildTemplate",
    "CODE_BUILD_PROJECT": "BuildCode",
    "DEPLOY_TARGET_STACK": "ServiceStack",
    "DEPLOY_ARTIFACT_FILE": "index.js",
    "PIPELINE_NAME": "ServicePipeline",
    "ARTIFACT_BUCKET_NAME": "service-pipeline-artifacts",
    "NOTIFICATION_TOPIC_NAME": "pipeline-topic",
}


@pytest.fixture
def pipeline_env(monkeypatch: pytest.MonkeyPatch) -> Dict[str, str]:
    for key, value in ENV.items():
        monkeypatch.setenv(key, value)
    for key in (
        "NOTIFICATION_EMAILS",
        "ENABLE_NOTIFICATIONS",
        "TRIGGER_POLICY",
        "SECRET_BACKEND",
        "ARTIFACT_STORE_BACKEND",
        "GCP_PROJECT_ID",
        "SOURCE_TOKEN_JSON_FIELD",
        "WEBHOOK_SECRET_NAME",
    ):
        monkeypatch.delenv(key, raising=False)
    return dict(ENV)


@pytest.fixture
def cfg(pipeline_env):  # noqa: ANN001, ANN201
    from pipeline_kit.config import PipelineConfig

    return PipelineConfig.from_env()


@pytest.fixture
def secrets_dir(tmp_path):  # noqa: ANN001, ANN201
    (tmp_path / ".env.secrets").write_text("GITHUB_TOKEN=ghp_test_token\n", encoding="utf-8")
    return tmp_path


class FakeFetcher:
    """저장소 대신 정해진 파일들을 dest_dir 에 써 주는 fetcher."""

    def __init__(self, files: Optional[Dict[str, str]] = None) -> None:
        self.files = files if files is not None else default_source_files()
        self.calls: List[dict] = []

    def __call__(self, coordinates, token, dest_dir, commit=None) -> None:  # noqa: ANN001
        self.calls.append(
            {"repo": coordinates.full_name, "token": token.reveal(), "commit": commit}
        )
        for rel, content in self.files.items():
            path = os.path.join(dest_dir, rel)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write(content)


def default_source_files() -> Dict[str, str]:
    return {
        "template.json": json.dumps(TEMPLATE),
        "src/index.js": "exports.handler = async () => 'ok';\n",
    }


# 실제 npm/cdk 대신 쓰는 셸 명령
TEST_INSTALL = ["true"]
TEST_BUILD = ["true"]
TEST_TEMPLATE_POST_BUILD = ["mkdir -p dist && cp template.json dist/ServiceStack.template.json"]
TEST_CODE_POST_BUILD = ["mkdir -p dist/src && cp src/index.js dist/src/index.js"]


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()
