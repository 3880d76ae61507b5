"""
pipeline_kit
------------

소스 체크아웃 → 빌드 → 배포로 이어지는 배포 파이프라인 정의/실행 패키지.
Secret 저장소, 빌드 러너, 아티팩트 저장소, 공용 실행 역할(+암호화 키)과
파이프라인 오케스트레이터를 환경변수 기반 설정 하나로 엮는 것을 목표로 한다.
"""

__all__ = [
    "config",
    "orchestrator",
    "pipeline",
    "stack",
]
