"""
stack
-----

설정 하나로 파이프라인 전체(역할, 키, secret, 빌드 프로젝트, action, stage, 알림)를 구성한다.

Source(체크아웃) → Build(템플릿 / 코드, 병렬) → Deploy(템플릿 적용)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence

from .access_role import (
    AccessRole,
    SERVICE_BUILD,
    SERVICE_DEPLOY,
    SERVICE_PIPELINE,
    SERVICE_SOURCE,
)
from .artifact_store import Artifact, ArtifactStore, GcsArtifactStore, LocalArtifactStore
from .build_runner import BuildRunner
from .config import PipelineConfig
from .deploy import (
    CAPABILITY_AUTO_EXPAND,
    CAPABILITY_NAMED_IAM,
    ArtifactParameter,
    ArtifactPath,
    DeployAction,
    LocalStackTarget,
    StackTarget,
)
from .kms_key import EncryptionKey
from .logging_utils import get_logger
from .notifications import NotificationRule, NotificationTopic, Notifier
from .orchestrator import Orchestrator, TriggerPolicy
from .pipeline import BuildAction, PipelineDefinition, Stage, StageKind
from .secret_store import DotenvSecretStore, SecretManagerStore, SecretRef, SecretStore
from .source import CheckoutAction, Fetcher, RepositoryCoordinates


logger = get_logger(__name__)

SOURCE_ARTIFACT = "source"
TEMPLATE_ARTIFACT = "templateOutput"
CODE_ARTIFACT = "codeOutput"

TEMPLATE_OUTPUT_DIR = "dist"
CODE_OUTPUT_DIR = "dist/src"


def _resolve(base_dir: str, path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(base_dir, path)


def make_secret_store(cfg: PipelineConfig, base_dir: str = ".") -> SecretStore:
    if cfg.secret_backend == "secret_manager":
        return SecretManagerStore(cfg.gcp_project_id or "")
    return DotenvSecretStore(base_dir)


def make_artifact_store(cfg: PipelineConfig, key: EncryptionKey, base_dir: str = ".") -> ArtifactStore:
    if cfg.artifact_store_backend == "gcs":
        return GcsArtifactStore(
            project_id=cfg.gcp_project_id or "",
            bucket_name=cfg.artifact_bucket_name,
            pipeline_name=cfg.pipeline_name,
            key=key,
        )
    return LocalArtifactStore(
        root_dir=_resolve(base_dir, cfg.artifact_store_dir),
        bucket_name=cfg.artifact_bucket_name,
        pipeline_name=cfg.pipeline_name,
        key=key,
    )


def make_stack_target(cfg: PipelineConfig, base_dir: str = ".") -> StackTarget:
    return LocalStackTarget(_resolve(base_dir, cfg.stack_state_dir))


def template_file_name(cfg: PipelineConfig) -> str:
    return f"{cfg.deploy_target_stack}.template.json"


@dataclass
class PipelineStack:
    config: PipelineConfig
    role: AccessRole
    key: EncryptionKey
    token: SecretRef
    build_runner: BuildRunner
    artifacts: Dict[str, Artifact]
    definition: PipelineDefinition
    notifier: Optional[Notifier]
    work_dir: str

    def orchestrator(self, *, keep_work_dirs: bool = False) -> Orchestrator:
        return Orchestrator(
            self.definition,
            work_dir=self.work_dir,
            policy=TriggerPolicy(self.config.trigger_policy),
            notifier=self.notifier,
            keep_work_dirs=keep_work_dirs,
        )


def define_pipeline(
    cfg: PipelineConfig,
    *,
    base_dir: str = ".",
    secret_store: Optional[SecretStore] = None,
    artifact_store_factory: Optional[Callable[[EncryptionKey], ArtifactStore]] = None,
    target: Optional[StackTarget] = None,
    fetcher: Optional[Fetcher] = None,
    notification_transport=None,  # noqa: ANN001
    install_commands: Optional[Sequence[str]] = None,
    build_commands: Optional[Sequence[str]] = None,
    template_post_build: Optional[Sequence[str]] = None,
    code_post_build: Optional[Sequence[str]] = None,
) -> PipelineStack:
    """
    설정을 먼저 검증한 뒤 컴포넌트를 만든다. 검증 실패 시 아무것도 만들지 않는다.
    """
    cfg.validate()

    role = AccessRole(
        name=cfg.role_name,
        description=cfg.role_description,
        managed_policy=cfg.role_policy,
        trusted_services=(SERVICE_SOURCE, SERVICE_BUILD, SERVICE_DEPLOY, SERVICE_PIPELINE),
    )

    store = secret_store or make_secret_store(cfg, base_dir)
    token = SecretRef(cfg.source_token_secret_name, store, json_field=cfg.source_token_json_field)
    role.grant(token, "read")

    key = EncryptionKey(cfg.key_description, key_name=cfg.kms_key_name)
    key.grant_encrypt_decrypt(role)

    if artifact_store_factory is not None:
        artifact_store = artifact_store_factory(key)
    else:
        artifact_store = make_artifact_store(cfg, key, base_dir)
    role.grant(artifact_store, "read")
    role.grant(artifact_store, "write")

    # 빌드 프로젝트: 템플릿 합성 / 코드 빌드
    runner = BuildRunner(role, key)
    template_file = template_file_name(cfg)
    template_project = runner.create_build_project(
        cfg.template_build_project,
        template_post_build or [f"npx cdk synth {cfg.deploy_target_stack} -o {TEMPLATE_OUTPUT_DIR}"],
        TEMPLATE_OUTPUT_DIR,
        [template_file],
        install_commands=install_commands,
        build_commands=build_commands,
    )
    code_project = runner.create_build_project(
        cfg.code_build_project,
        code_post_build or ["npm run test"],
        CODE_OUTPUT_DIR,
        [cfg.deploy_artifact_file],
        install_commands=install_commands,
        build_commands=build_commands,
    )

    source = Artifact(SOURCE_ARTIFACT)
    template_output = Artifact(TEMPLATE_ARTIFACT)
    code_output = Artifact(CODE_ARTIFACT)

    checkout = CheckoutAction(
        "Checking_Out_Source_Code",
        RepositoryCoordinates(cfg.source_owner, cfg.source_repo, cfg.source_branch),
        token,
        source,
        role,
        fetcher=fetcher,
    )
    build_template = BuildAction("Building_Template", template_project, source, template_output, role)
    build_code = BuildAction("Building_Code", code_project, source, code_output, role)

    stack_target = target or make_stack_target(cfg, base_dir)
    role.grant(stack_target, "deploy")
    deploy = DeployAction(
        "Deploying_Stack",
        cfg.deploy_target_stack,
        ArtifactPath(template_output, template_file),
        stack_target,
        role,
        extra_inputs=[code_output],
        # 템플릿에는 코드 위치가 없으므로 방금 빌드된 코드 아티팩트 위치로 덮어쓴다
        parameter_overrides={
            "bucketName": ArtifactParameter(code_output, "bucket_name"),
            "bucketKey": ArtifactParameter(code_output, "object_key"),
        },
        capabilities=[CAPABILITY_NAMED_IAM, CAPABILITY_AUTO_EXPAND],
        replace_on_failure=True,
    )

    # 파이프라인 서비스가 역할을 assume 할 수 있도록
    role.grant(role, "assume")

    definition = PipelineDefinition(
        name=cfg.pipeline_name,
        role=role,
        stages=[
            Stage("Source", StageKind.SOURCE, [checkout]),
            Stage("Build", StageKind.BUILD, [build_template, build_code]),
            Stage("Deploy", StageKind.DEPLOY, [deploy]),
        ],
        artifact_store=artifact_store,
        build_runner=runner,
    )
    definition.validate()

    notifier: Optional[Notifier] = None
    if cfg.enable_notifications:
        topic = NotificationTopic(cfg.notification_topic_name, list(cfg.notification_emails))
        role.grant(topic, "publish")
        notifier = Notifier(
            topic,
            [
                NotificationRule(f"{project.name}-notifications", project.name)
                for project in (template_project, code_project)
            ],
            role,
            transport=notification_transport,
        )
    else:
        logger.debug("ENABLE_NOTIFICATIONS=false 로 설정되어 알림 구성을 건너뜁니다.")

    return PipelineStack(
        config=cfg,
        role=role,
        key=key,
        token=token,
        build_runner=runner,
        artifacts={a.name: a for a in (source, template_output, code_output)},
        definition=definition,
        notifier=notifier,
        work_dir=_resolve(base_dir, cfg.work_dir),
    )
