"""
errors
------

파이프라인 정의/실행 중 발생하는 오류 분류.

- 설정 오류: 정의 시점에 검출, 파이프라인 자체가 만들어지지 않는다.
- 권한 오류: 역할에 부여되지 않은 작업을 시도한 경우, 해당 stage 실패.
- 빌드 오류: 빌드 명령 non-zero exit 또는 산출물 누락, 이후 stage 는 시작되지 않는다.
- 배포 오류: 템플릿 적용 실패, 롤백/교체 처리 후 보고된다.
"""

from __future__ import annotations


class PipelineConfigError(ValueError):
    """정의 시점 검증 실패."""


class PermissionKindError(ValueError):
    """grant 대상 리소스가 요청한 권한 종류를 지원하지 않는 경우."""


class AccessDeniedError(RuntimeError):
    """역할에 부여되지 않은 권한으로 리소스에 접근한 경우."""


class SecretNotFoundError(RuntimeError):
    pass


class ArtifactError(RuntimeError):
    pass


class BuildError(RuntimeError):
    pass


class DeployError(RuntimeError):
    pass
