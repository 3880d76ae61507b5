"""
notifications
-------------

빌드 성공/실패 이벤트를 토픽 구독자(e-mail)에게 알리는 선택 기능.
ENABLE_NOTIFICATIONS=true 일 때만 구성된다.

실제 메일 발송은 transport 로 넘기며, 기본 transport 는 로그만 남긴다.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Callable, FrozenSet, List, Optional, Sequence

from .access_role import AccessRole
from .logging_utils import get_logger


logger = get_logger(__name__)

EVENT_BUILD_SUCCEEDED = "build-succeeded"
EVENT_BUILD_FAILED = "build-failed"
BUILD_EVENTS = (EVENT_BUILD_SUCCEEDED, EVENT_BUILD_FAILED)

DEFAULT_SENDER = "deploy-pipeline@localhost"


@dataclass
class NotificationTopic:
    name: str
    subscribers: List[str] = field(default_factory=list)

    supported_permissions = frozenset({"publish"})

    @property
    def resource_id(self) -> str:
        return f"topic/{self.name}"


@dataclass(frozen=True)
class NotificationRule:
    name: str
    source: str
    events: FrozenSet[str] = frozenset(BUILD_EVENTS)

    def __post_init__(self) -> None:
        unknown = sorted(set(self.events) - set(BUILD_EVENTS))
        if unknown:
            raise ValueError(f"지원하지 않는 알림 이벤트입니다: {', '.join(unknown)}")

    def matches(self, source: str, event: str) -> bool:
        return source == self.source and event in self.events


def log_transport(message: EmailMessage) -> None:
    logger.info("알림 (발송 생략): to=%s subject=%s", message["To"], message["Subject"])


class Notifier:
    def __init__(
        self,
        topic: NotificationTopic,
        rules: Sequence[NotificationRule],
        role: AccessRole,
        transport: Optional[Callable[[EmailMessage], None]] = None,
        sender: str = DEFAULT_SENDER,
    ) -> None:
        self.topic = topic
        self.rules = list(rules)
        self.role = role
        self.transport = transport or log_transport
        self.sender = sender

    def _build_message(self, recipient: str, source: str, event: str, run_id: str, detail: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = recipient
        message["Subject"] = f"[{self.topic.name}] {source}: {event} ({run_id})"
        message["X-Pipeline-Run-Id"] = run_id
        body = [
            f"Build project: {source}",
            f"Event:         {event}",
            f"Run ID:        {run_id}",
        ]
        if detail:
            body += ["", detail]
        message.set_content("\n".join(body))
        return message

    def notify(self, source: str, event: str, run_id: str, detail: str = "") -> List[EmailMessage]:
        """
        규칙과 일치하면 구독자마다 메시지를 만들어 transport 로 넘기고, 만든 메시지를 반환한다.
        """
        if not any(rule.matches(source, event) for rule in self.rules):
            return []

        self.role.check(self.topic, "publish")

        messages = [
            self._build_message(recipient, source, event, run_id, detail)
            for recipient in self.topic.subscribers
        ]
        for message in messages:
            try:
                self.transport(message)
            except Exception:  # noqa: BLE001
                # 알림 실패가 파이프라인 결과를 바꾸지는 않는다
                logger.exception("알림 발송 실패: %s", message["To"])
        return messages
