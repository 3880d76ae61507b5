"""
secret_store
------------

소스 저장소 토큰 같은 자격증명을 secret 저장소에서 꺼내 오는 모듈.

- 로컬: .env.secrets 파일 (python-dotenv)
- GCP: Secret Manager

꺼낸 값은 SecretValue 로 감싸서 넘기며, 로그나 repr 에 원문이 남지 않게 한다.
"""

from __future__ import annotations

import json
import os
from typing import Dict, FrozenSet, Optional

from dotenv import dotenv_values
from google.api_core.exceptions import NotFound
from google.cloud import secretmanager

from .access_role import AccessRole
from .errors import SecretNotFoundError
from .logging_utils import REDACTED, get_logger


logger = get_logger(__name__)


class SecretValue:
    """원문은 reveal() 로만 꺼낼 수 있다."""

    __slots__ = ("_value",)

    def __init__(self, value: str) -> None:
        self._value = value

    def reveal(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"SecretValue({REDACTED})"

    __str__ = __repr__


class SecretStore:
    def get(self, name: str) -> str:
        raise NotImplementedError

    def exists(self, name: str) -> bool:
        try:
            self.get(name)
        except SecretNotFoundError:
            return False
        return True


class DotenvSecretStore(SecretStore):
    """
    .env.secrets 파일을 secret 저장소로 사용한다.
    파일은 조회할 때마다 다시 읽는다.
    """

    def __init__(self, base_dir: str = ".", filename: str = ".env.secrets") -> None:
        self.path = os.path.join(base_dir, filename)

    def _load(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            logger.debug("secret 파일이 없습니다: %s", self.path)
            return {}
        # 값이 없는 키는 dotenv 에서 None 으로 들어온다
        return {k: v for k, v in dotenv_values(self.path).items() if v is not None}

    def get(self, name: str) -> str:
        secrets = self._load()
        if name not in secrets or not secrets[name]:
            raise SecretNotFoundError(f"secret 을 찾을 수 없습니다: {name} ({self.path})")
        return secrets[name]


class SecretManagerStore(SecretStore):
    def __init__(self, project_id: str, client=None) -> None:  # noqa: ANN001
        self.project_id = project_id
        self._client = client

    @property
    def client(self):  # noqa: ANN201
        if self._client is None:
            self._client = secretmanager.SecretManagerServiceClient()
        return self._client

    def get(self, name: str) -> str:
        version_name = f"projects/{self.project_id}/secrets/{name}/versions/latest"
        try:
            response = self.client.access_secret_version(name=version_name)
        except NotFound as e:
            raise SecretNotFoundError(
                f"Secret Manager 에 secret 이 없습니다: {name} (project={self.project_id})"
            ) from e
        return response.payload.data.decode("utf-8")


class SecretRef:
    """
    저장소 안의 secret 하나를 가리키는 참조. 역할에 read 권한을 부여할 수 있다.
    """

    supported_permissions: FrozenSet[str] = frozenset({"read"})

    def __init__(self, name: str, store: SecretStore, json_field: Optional[str] = None) -> None:
        self.name = name
        self.store = store
        self.json_field = json_field

    @property
    def resource_id(self) -> str:
        return f"secret/{self.name}"

    def __repr__(self) -> str:
        return f"SecretRef(name={self.name!r})"

    def resolve(self, role: AccessRole) -> SecretValue:
        role.check(self, "read")
        raw = self.store.get(self.name)
        logger.info("secret 조회 완료: %s", self.name)

        if not self.json_field:
            return SecretValue(raw)

        try:
            data = json.loads(raw)
        except ValueError as e:
            raise SecretNotFoundError(
                f"secret {self.name} 이 JSON 형식이 아니어서 {self.json_field!r} 키를 읽을 수 없습니다."
            ) from e
        if not isinstance(data, dict) or not data.get(self.json_field):
            raise SecretNotFoundError(
                f"secret {self.name} 에 {self.json_field!r} 키가 없습니다."
            )
        return SecretValue(str(data[self.json_field]))
