"""
access_role
-----------

파이프라인의 모든 action(체크아웃/빌드/배포)이 공유하는 단일 실행 역할.

각 컴포넌트는 자기가 필요로 하는 권한을 role.grant(resource, permission) 으로
직접 부여받는다. 역할 하나의 권한을 넓히면 모든 stage 에 동시에 영향이 가므로,
권한 목록은 policy_document() 로 한 번에 점검한다.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, List, Set, Tuple

from .errors import AccessDeniedError, PermissionKindError
from .logging_utils import get_logger


logger = get_logger(__name__)

# 역할을 assume 할 수 있는 서비스 이름
SERVICE_SOURCE = "source"
SERVICE_BUILD = "build"
SERVICE_DEPLOY = "deploy"
SERVICE_PIPELINE = "pipeline"


class AccessRole:
    """
    grant 대상 리소스는 다음 두 속성을 가져야 한다.

    - resource_id: 권한 문서에 기록될 식별자
    - supported_permissions: 해당 리소스가 지원하는 권한 종류 집합
    """

    supported_permissions: FrozenSet[str] = frozenset({"assume"})

    def __init__(
        self,
        name: str,
        description: str,
        managed_policy: str,
        trusted_services: Iterable[str] = (),
    ) -> None:
        self.name = name
        self.description = description
        # 외부 IAM 에 붙일 관리형 정책 식별자. 로컬 권한 판단에는 쓰지 않는다.
        self.managed_policy = managed_policy
        self.trusted_services: Set[str] = set(trusted_services)
        self._grants: Dict[str, Set[str]] = {}

    @property
    def resource_id(self) -> str:
        return f"role/{self.name}"

    def __repr__(self) -> str:
        return f"AccessRole(name={self.name!r})"

    def trust(self, service: str) -> None:
        self.trusted_services.add(service)

    def assume(self, service: str) -> None:
        if service not in self.trusted_services:
            raise AccessDeniedError(
                f"서비스 {service!r} 는 역할 {self.name} 을 assume 할 수 없습니다. "
                f"(trusted: {', '.join(sorted(self.trusted_services)) or '(none)'})"
            )

    def grant(self, resource, permission: str) -> None:  # noqa: ANN001
        supported = getattr(resource, "supported_permissions", None)
        resource_id = getattr(resource, "resource_id", None)
        if supported is None or resource_id is None:
            raise PermissionKindError(
                f"권한을 부여할 수 없는 대상입니다: {resource!r}"
            )
        if permission not in supported:
            raise PermissionKindError(
                f"{resource_id} 는 {permission!r} 권한을 지원하지 않습니다. "
                f"(지원: {', '.join(sorted(supported))})"
            )

        granted = self._grants.setdefault(resource_id, set())
        if permission not in granted:
            granted.add(permission)
            logger.debug("권한 부여: %s -> %s:%s", self.name, resource_id, permission)

    def is_allowed(self, resource, permission: str) -> bool:  # noqa: ANN001
        resource_id = getattr(resource, "resource_id", None)
        if resource_id is None:
            return False
        return permission in self._grants.get(resource_id, set())

    def check(self, resource, permission: str) -> None:  # noqa: ANN001
        if not self.is_allowed(resource, permission):
            raise AccessDeniedError(
                f"역할 {self.name} 에 {getattr(resource, 'resource_id', resource)}:"
                f"{permission} 권한이 없습니다."
            )

    def grants(self) -> List[Tuple[str, str]]:
        return sorted(
            (resource_id, perm)
            for resource_id, perms in self._grants.items()
            for perm in perms
        )

    def policy_document(self) -> dict:
        """
        역할의 전체 권한 집합을 하나의 문서로 돌려준다.
        """
        return {
            "role": self.name,
            "description": self.description,
            "managed_policy": self.managed_policy,
            "trusted_services": sorted(self.trusted_services),
            "statements": [
                {"resource": resource_id, "permissions": sorted(perms)}
                for resource_id, perms in sorted(self._grants.items())
            ],
        }
