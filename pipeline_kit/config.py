from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, List

from dotenv import load_dotenv


ENV_FILES_DEFAULT_ORDER = [".env", ".env.pipeline", ".env.secrets"]

TRIGGER_POLICIES = ("queue", "supersede")
SECRET_BACKENDS = ("dotenv", "secret_manager")
ARTIFACT_STORE_BACKENDS = ("local", "gcs")


def load_env_files(base_dir: str = ".",
                   files: Optional[List[str]] = None) -> None:
    """
    주어진 디렉토리에서 .env 계열 파일을 순서대로 로드한다.
    후순위 파일이 같은 키를 덮어쓴다.
    """
    order = files or ENV_FILES_DEFAULT_ORDER
    for name in order:
        path = os.path.join(base_dir, name)
        if os.path.exists(path):
            load_dotenv(path, override=True)


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y"}


def _get_list(name: str) -> List[str]:
    raw = os.getenv(name) or ""
    return [p.strip() for p in raw.split(",") if p.strip()]


@dataclass
class PipelineConfig:
    # 역할 / 키
    role_name: str
    role_description: str
    role_policy: str
    key_description: str

    # 소스 저장소
    source_owner: str
    source_repo: str
    source_branch: str
    source_token_secret_name: str

    # 빌드 / 배포
    template_build_project: str
    code_build_project: str
    deploy_target_stack: str
    deploy_artifact_file: str

    pipeline_name: str
    artifact_bucket_name: str

    # 알림 (기본 비활성)
    notification_topic_name: str
    notification_emails: List[str] = field(default_factory=list)
    enable_notifications: bool = False

    trigger_policy: str = "queue"
    source_token_json_field: Optional[str] = None
    webhook_secret_name: Optional[str] = None

    # 백엔드 선택
    secret_backend: str = "dotenv"
    artifact_store_backend: str = "local"
    artifact_store_dir: str = ".pipeline/artifacts"
    stack_state_dir: str = ".pipeline/stacks"
    work_dir: str = ".pipeline/work"

    gcp_project_id: Optional[str] = None
    kms_key_name: Optional[str] = None

    def validate(self) -> None:
        """
        필드 간 제약을 검사한다. 문제가 하나라도 있으면 모두 모아서 ValueError 로 올린다.
        """
        problems: List[str] = []

        if self.template_build_project == self.code_build_project:
            problems.append(
                "TEMPLATE_BUILD_PROJECT 와 CODE_BUILD_PROJECT 는 서로 달라야 합니다: "
                f"{self.template_build_project}"
            )
        if self.trigger_policy not in TRIGGER_POLICIES:
            problems.append(
                f"알 수 없는 TRIGGER_POLICY 값입니다: {self.trigger_policy!r} "
                f"({' | '.join(TRIGGER_POLICIES)} 중 하나)"
            )
        if self.secret_backend not in SECRET_BACKENDS:
            problems.append(
                f"알 수 없는 SECRET_BACKEND 값입니다: {self.secret_backend!r} "
                f"({' | '.join(SECRET_BACKENDS)} 중 하나)"
            )
        if self.artifact_store_backend not in ARTIFACT_STORE_BACKENDS:
            problems.append(
                f"알 수 없는 ARTIFACT_STORE_BACKEND 값입니다: {self.artifact_store_backend!r} "
                f"({' | '.join(ARTIFACT_STORE_BACKENDS)} 중 하나)"
            )

        uses_gcp = self.secret_backend == "secret_manager" or self.artifact_store_backend == "gcs"
        if uses_gcp and not self.gcp_project_id:
            problems.append(
                "SECRET_BACKEND=secret_manager 또는 ARTIFACT_STORE_BACKEND=gcs 이면 "
                "GCP_PROJECT_ID 환경변수가 필요합니다."
            )

        bad_emails = [e for e in self.notification_emails if "@" not in e]
        if bad_emails:
            problems.append(
                "NOTIFICATION_EMAILS 에 잘못된 주소가 있습니다: " + ", ".join(bad_emails)
            )

        if problems:
            raise ValueError("\n".join(problems))

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        # 필수값
        missing: List[str] = []
        def req(name: str) -> str:
            val = os.getenv(name)
            if not val:
                missing.append(name)
            return val or ""

        cfg = cls(
            role_name=req("PIPELINE_ROLE_NAME"),
            role_description=req("PIPELINE_ROLE_DESCRIPTION"),
            role_policy=req("PIPELINE_ROLE_POLICY"),
            key_description=req("KMS_KEY_DESCRIPTION"),
            source_owner=req("SOURCE_OWNER"),
            source_repo=req("SOURCE_REPO"),
            source_branch=req("SOURCE_BRANCH"),
            source_token_secret_name=req("SOURCE_TOKEN_SECRET_NAME"),
            template_build_project=req("TEMPLATE_BUILD_PROJECT"),
            code_build_project=req("CODE_BUILD_PROJECT"),
            deploy_target_stack=req("DEPLOY_TARGET_STACK"),
            deploy_artifact_file=req("DEPLOY_ARTIFACT_FILE"),
            pipeline_name=req("PIPELINE_NAME"),
            artifact_bucket_name=req("ARTIFACT_BUCKET_NAME"),
            notification_topic_name=req("NOTIFICATION_TOPIC_NAME"),
            notification_emails=_get_list("NOTIFICATION_EMAILS"),
            enable_notifications=_get_bool("ENABLE_NOTIFICATIONS", False),
            trigger_policy=(os.getenv("TRIGGER_POLICY") or "queue").lower(),
            source_token_json_field=os.getenv("SOURCE_TOKEN_JSON_FIELD") or None,
            webhook_secret_name=os.getenv("WEBHOOK_SECRET_NAME") or None,
            secret_backend=(os.getenv("SECRET_BACKEND") or "dotenv").lower(),
            artifact_store_backend=(os.getenv("ARTIFACT_STORE_BACKEND") or "local").lower(),
            artifact_store_dir=os.getenv("ARTIFACT_STORE_DIR", ".pipeline/artifacts"),
            stack_state_dir=os.getenv("STACK_STATE_DIR", ".pipeline/stacks"),
            work_dir=os.getenv("WORK_DIR", ".pipeline/work"),
            gcp_project_id=os.getenv("GCP_PROJECT_ID"),
            kms_key_name=os.getenv("KMS_KEY_NAME"),
        )

        if missing:
            raise ValueError(
                "필수 환경변수가 누락되었습니다: " + ", ".join(sorted(set(missing)))
            )

        cfg.validate()
        return cfg
