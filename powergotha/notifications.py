"""Best-effort email queue.

``enqueue`` hands the message to a small thread pool and returns at once; a
failed render or send is logged and dropped, never raised to the caller.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Optional

import resend
import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

from . import config

logger = structlog.get_logger()

TEMPLATES = Environment(
    loader=FileSystemLoader(Path(__file__).parent / "templates"),
    autoescape=select_autoescape(["html"]),
)


def render(template: str, data: dict) -> str:
    return TEMPLATES.get_template(f"{template}.html").render(**data)


def send_email(message: dict, api_key: Optional[str] = None, sender: Optional[str] = None) -> None:
    html = render(message["template"], message.get("data") or {})
    api_key = api_key or config.RESEND_API_KEY
    if not api_key:
        logger.info("email_skipped", to=message["to"], subject=message["subject"], reason="no api key")
        return
    resend.api_key = api_key
    resend.Emails.send({
        "from": sender or config.MAIL_FROM,
        "to": [message["to"]],
        "subject": message["subject"],
        "html": html,
    })
    logger.info("email_sent", to=message["to"], template=message["template"])


class EmailQueue:
    def __init__(self, workers: int = config.MAIL_WORKERS, sender=send_email):
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mail")
        self._send = sender

    def enqueue(self, message: dict) -> Optional[Future]:
        if not message.get("to"):
            logger.warning("email_dropped", subject=message.get("subject"), reason="no recipient")
            return None
        try:
            future = self._pool.submit(self._send, message)
        except RuntimeError as e:
            logger.error("email_enqueue_failed", subject=message.get("subject"), error=str(e))
            return None
        future.add_done_callback(self._report)
        return future

    @staticmethod
    def _report(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("email_send_failed", error=str(exc))

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
