from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Optional, Protocol
from urllib.error import URLError
from urllib.request import Request, urlopen

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from config import get_settings


logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates" / "emails"
RESEND_URL = "https://api.resend.com/emails"


class NotifierFailure(RuntimeError):
    pass


@dataclass(frozen=True)
class NotifierResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class Notifier(Protocol):
    def send(self, recipient: str, subject: str, body: str) -> NotifierResult: ...


def format_currency(amount: Decimal | int | float) -> str:
    return f"${Decimal(str(amount)).quantize(Decimal('0.01')):,}"


@lru_cache(maxsize=1)
def _environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
    )
    env.filters["currency"] = format_currency
    return env


def render_email(template_name: str, **context: object) -> str:
    return _environment().get_template(template_name).render(**context)


class ResendNotifier:
    def __init__(
        self,
        api_key: str,
        *,
        sender: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key
        self.sender = sender or settings.email_from
        self.timeout = timeout if timeout is not None else settings.http_timeout_secs

    def send(self, recipient: str, subject: str, body: str) -> NotifierResult:
        try:
            message_id = self._post(recipient, subject, body)
        except NotifierFailure as exc:
            logger.error(f"notifier_send_failed: to={recipient} error={exc}")
            return NotifierResult(success=False, error=str(exc))
        logger.info(f"notifier_sent: to={recipient} id={message_id}")
        return NotifierResult(success=True, message_id=message_id)

    def _post(self, recipient: str, subject: str, body: str) -> Optional[str]:
        payload = json.dumps(
            {
                "from": self.sender,
                "to": [recipient],
                "subject": subject,
                "text": body,
            }
        ).encode("utf-8")
        req = Request(
            RESEND_URL,
            data=payload,
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                data = json.loads(resp.read().decode("utf-8") or "{}")
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise NotifierFailure(f"Email delivery to {recipient} failed") from exc
        return data.get("id")


class LoggingNotifier:
    """Stands in for email delivery when no provider key is configured."""

    def send(self, recipient: str, subject: str, body: str) -> NotifierResult:
        logger.info(f"notifier_log: to={recipient} subject={subject!r}\n{body}")
        return NotifierResult(success=True)


def get_notifier() -> Notifier:
    settings = get_settings()
    if settings.resend_api_key:
        return ResendNotifier(settings.resend_api_key)
    logger.warning("notifier: FINTRACK_RESEND_API_KEY not set, emails are only logged")
    return LoggingNotifier()
