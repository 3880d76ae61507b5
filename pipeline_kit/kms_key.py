"""
kms_key
-------

아티팩트 저장소 전체를 감싸는 암호화 키.
encrypt/decrypt 권한은 파이프라인 역할에만 부여한다.
"""

from __future__ import annotations

from typing import FrozenSet, Optional

from .access_role import AccessRole
from .logging_utils import get_logger


logger = get_logger(__name__)


class EncryptionKey:
    supported_permissions: FrozenSet[str] = frozenset({"encrypt", "decrypt"})

    def __init__(self, description: str, key_name: Optional[str] = None) -> None:
        self.description = description
        # Cloud KMS 키 리소스 이름 (projects/.../cryptoKeys/...). 로컬 저장소에서는 None.
        self.key_name = key_name

    @property
    def resource_id(self) -> str:
        return f"key/{self.key_name or self.description}"

    def grant_encrypt_decrypt(self, role: AccessRole) -> None:
        logger.info("암호화 키 사용 권한 부여: %s -> %s", self.resource_id, role.name)
        role.grant(self, "encrypt")
        role.grant(self, "decrypt")

    def check_encrypt(self, role: AccessRole) -> None:
        role.check(self, "encrypt")

    def check_decrypt(self, role: AccessRole) -> None:
        role.check(self, "decrypt")
