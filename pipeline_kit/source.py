"""
source
------

소스 저장소 체크아웃 action 과 push 이벤트 처리.

설정된 브랜치에 push 가 들어오면 새 파이프라인 실행이 시작된다.
접근 토큰은 실행 시점에 secret 저장소에서 꺼내며, 로그에는 남기지 않는다.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import os
import shutil
from dataclasses import dataclass
from typing import Callable, Optional

from .access_role import AccessRole, SERVICE_SOURCE
from .artifact_store import Artifact
from .logging_utils import get_logger
from .pipeline import Action, ActionContext, StageKind
from .secret_store import SecretRef, SecretValue
from .subprocess_utils import run_command


logger = get_logger(__name__)


@dataclass(frozen=True)
class RepositoryCoordinates:
    owner: str
    repo: str
    branch: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass(frozen=True)
class PushEvent:
    owner: str
    repo: str
    branch: str
    commit: Optional[str] = None

    @classmethod
    def from_github_payload(cls, payload: dict) -> "PushEvent":
        """
        GitHub push webhook payload 에서 이벤트를 만든다.
        브랜치 push 가 아니면 (태그 등) ValueError.
        """
        if not isinstance(payload, dict):
            raise ValueError(f"payload 는 JSON 객체여야 합니다: {type(payload).__name__}")
        ref = payload.get("ref") or ""
        prefix = "refs/heads/"
        if not ref.startswith(prefix):
            raise ValueError(f"브랜치 push 이벤트가 아닙니다: ref={ref!r}")

        repository = payload.get("repository") or {}
        full_name = repository.get("full_name") or ""
        if "/" not in full_name:
            raise ValueError(f"payload 에 repository.full_name 이 없습니다: {full_name!r}")
        owner, repo = full_name.split("/", 1)

        return cls(owner=owner, repo=repo, branch=ref[len(prefix):], commit=payload.get("after"))

    @classmethod
    def manual(cls, coordinates: RepositoryCoordinates, commit: Optional[str] = None) -> "PushEvent":
        return cls(
            owner=coordinates.owner,
            repo=coordinates.repo,
            branch=coordinates.branch,
            commit=commit,
        )


def verify_webhook_signature(secret: str, body: bytes, signature_header: Optional[str]) -> bool:
    """
    X-Hub-Signature-256 헤더(sha256=<hex>)를 검증한다.
    """
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header[len("sha256="):])


# (coordinates, token, dest_dir, commit) -> None
Fetcher = Callable[[RepositoryCoordinates, SecretValue, str, Optional[str]], None]


class GitFetcher:
    """
    git CLI 로 HTTPS 얕은 clone 을 수행한다.
    토큰은 URL 이 아니라 인증 헤더로 넘기고, 명령 로그에서는 가린다.
    """

    def __init__(self, host: str = "github.com", timeout: float = 600.0) -> None:
        self.host = host
        self.timeout = timeout

    def __call__(
        self,
        coordinates: RepositoryCoordinates,
        token: SecretValue,
        dest_dir: str,
        commit: Optional[str] = None,
    ) -> None:
        raw = token.reveal()
        basic = base64.b64encode(f"x-access-token:{raw}".encode("utf-8")).decode("ascii")
        auth = f"http.extraheader=AUTHORIZATION: basic {basic}"
        secrets = [raw, basic]
        url = f"https://{self.host}/{coordinates.full_name}.git"

        run_command(
            ["git", "-c", auth, "clone", "--depth", "1", "--branch", coordinates.branch, url, dest_dir],
            timeout=self.timeout,
            secrets=secrets,
        )
        if commit:
            run_command(
                ["git", "-c", auth, "fetch", "--depth", "1", "origin", commit],
                cwd=dest_dir,
                timeout=self.timeout,
                secrets=secrets,
            )
            run_command(["git", "checkout", "--quiet", commit], cwd=dest_dir, timeout=self.timeout)

        # 소스 아티팩트에는 작업 트리만 담는다
        shutil.rmtree(os.path.join(dest_dir, ".git"), ignore_errors=True)


class CheckoutAction(Action):
    service = SERVICE_SOURCE
    stage_kind = StageKind.SOURCE
    is_checkout = True

    def __init__(
        self,
        name: str,
        coordinates: RepositoryCoordinates,
        token: SecretRef,
        output: Artifact,
        role: AccessRole,
        fetcher: Optional[Fetcher] = None,
    ) -> None:
        super().__init__(name, role, inputs=[], outputs=[output])
        self.coordinates = coordinates
        self.token = token
        self.fetcher: Fetcher = fetcher or GitFetcher()

    def matches(self, event: PushEvent) -> bool:
        return (
            event.owner.lower() == self.coordinates.owner.lower()
            and event.repo.lower() == self.coordinates.repo.lower()
            and event.branch == self.coordinates.branch
        )

    def execute(self, ctx: ActionContext) -> None:
        self.role.assume(self.service)

        # 토큰을 못 꺼내면 아티팩트를 만들기 전에 실패한다
        token = self.token.resolve(self.role)

        dest_dir = ctx.action_dir(self.name, "checkout")
        commit = ctx.event.commit if ctx.event is not None else None
        logger.info(
            "소스 체크아웃: %s@%s%s",
            self.coordinates.full_name,
            self.coordinates.branch,
            f" ({commit})" if commit else "",
        )
        self.fetcher(self.coordinates, token, dest_dir, commit)

        for artifact in self.outputs:
            ctx.publish_output(artifact, dest_dir, self.role)

    def describe(self) -> str:
        return super().describe() + f" repo={self.coordinates.full_name}@{self.coordinates.branch}"
