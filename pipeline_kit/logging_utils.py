import logging
import sys
from typing import Iterable


REDACTED = "***"


def setup_logging(verbosity: int = 0) -> None:
    level = logging.INFO
    if verbosity >= 1:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def redact(text: str, secrets: Iterable[str]) -> str:
    """
    text 안에 포함된 secret 문자열을 *** 로 가린다.
    로그/에러 메시지에 토큰이 그대로 남지 않도록 하기 위해 사용한다.
    """
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text
