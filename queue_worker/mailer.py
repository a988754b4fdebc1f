import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class EmailSender(ABC):
    @abstractmethod
    async def send(self, to: str, subject: str, body: str) -> None:
        ...


class LoggingEmailSender(EmailSender):
    """Writes the e-mail as a structured log line. A real system would call an SMTP/ESP API."""

    async def send(self, to: str, subject: str, body: str) -> None:
        logger.info(
            "EMAIL: %s",
            subject,
            extra={"to": to, "subject": subject, "body_length": len(body)},
        )
