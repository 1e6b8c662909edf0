"""Transport adapters that perform the actual delivery of a queued message.

The queue only relies on the :class:`Transport` protocol. Two adapters ship
with the package:

- :class:`SMTPTransport` renders the message (optionally through a jinja2
  template) and sends it with ``aiosmtplib``.
- :class:`RecordingTransport` keeps delivered messages in memory; it is used
  when no SMTP server is configured.
"""

from __future__ import annotations

import asyncio
from collections import deque
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Deque, Mapping, Optional, Protocol, runtime_checkable

import aiosmtplib
from jinja2 import DictLoader, Environment, FileSystemLoader, StrictUndefined, TemplateError, TemplateNotFound, select_autoescape

from .logger import get_logger
from .models import DeliveryResult, QueuedMessage
from .retry import classify_delivery_error

DEFAULT_SENDER = "noreply@forexfactory.cc"
TEMPLATE_SUFFIX = ".html"
RECORDING_LIMIT = 1000


@runtime_checkable
class Transport(Protocol):
    """Delivery port consumed by the scheduler.

    Ordinary delivery failures are returned as ``DeliveryResult.failure``;
    raising is reserved for programming errors.
    """

    async def deliver(self, message: QueuedMessage) -> DeliveryResult:
        ...


class TemplateRenderer:
    """Render named HTML templates with jinja2.

    Templates are looked up as ``<name>.html`` inside ``directory``, or in the
    ``templates`` mapping when one is given (mainly for tests).
    """

    def __init__(self, directory: str | Path | None = None, templates: Optional[Mapping[str, str]] = None):
        if templates is not None:
            loader = DictLoader({f"{name}{TEMPLATE_SUFFIX}": body for name, body in templates.items()})
        elif directory is not None:
            loader = FileSystemLoader(str(directory))
        else:
            raise ValueError("TemplateRenderer needs a directory or a templates mapping")
        self.env = Environment(
            loader=loader,
            autoescape=select_autoescape(["html", "xml"]),
            undefined=StrictUndefined,
        )

    def has_template(self, name: str) -> bool:
        try:
            self.env.get_template(f"{name}{TEMPLATE_SUFFIX}")
        except TemplateNotFound:
            return False
        return True

    def render(self, name: str, data: Mapping[str, Any]) -> str:
        """Render template ``name`` with ``data``; raises ``TemplateNotFound`` if missing."""
        return self.env.get_template(f"{name}{TEMPLATE_SUFFIX}").render(**dict(data))


class SMTPTransport:
    """Send queued messages through an SMTP server with ``aiosmtplib``."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        sender: str = DEFAULT_SENDER,
        renderer: TemplateRenderer | None = None,
        timeout: float = 30.0,
        logger=None,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        # Implicit TLS is the norm on 465, STARTTLS is negotiated elsewhere
        self.use_tls = bool(use_tls) if use_tls is not None else self.port == 465
        self.sender = sender
        self.renderer = renderer
        self.timeout = float(timeout)
        self.logger = logger or get_logger()

    def build_email(self, message: QueuedMessage) -> EmailMessage:
        """Translate a queued message into an :class:`EmailMessage`.

        A payload that is not a mapping is sent as the plain text body.
        Raises ``LookupError`` when the message names a template that cannot
        be rendered.
        """
        payload = message.payload
        if not isinstance(payload, Mapping):
            payload = {"text": str(payload)} if payload else {}
        html = payload.get("html")
        text = payload.get("text")
        if message.template:
            if self.renderer is None:
                raise LookupError(f"Template '{message.template}' requested but no renderer configured")
            try:
                html = self.renderer.render(message.template, payload.get("data", payload))
            except TemplateNotFound as exc:
                raise LookupError(f"Template '{message.template}' not found") from exc

        msg = EmailMessage()
        msg["From"] = payload.get("from") or self.sender
        msg["To"] = ", ".join(message.recipients)
        msg["Subject"] = message.subject
        if reply_to := payload.get("reply_to"):
            msg["Reply-To"] = reply_to
        if text:
            msg.set_content(text)
            if html:
                msg.add_alternative(html, subtype="html")
        elif html:
            msg.set_content(html, subtype="html")
        else:
            msg.set_content("")
        return msg

    async def deliver(self, message: QueuedMessage) -> DeliveryResult:
        try:
            email_msg = self.build_email(message)
        except (LookupError, TemplateError) as exc:
            return DeliveryResult.failure(str(exc), permanent=True)

        try:
            async with asyncio.timeout(self.timeout):
                await aiosmtplib.send(
                    email_msg,
                    hostname=self.host,
                    port=self.port,
                    username=self.user,
                    password=self.password,
                    use_tls=self.use_tls,
                    timeout=self.timeout,
                )
        except Exception as exc:
            permanent, smtp_code = classify_delivery_error(exc)
            reason = f"{exc} (SMTP {smtp_code})" if smtp_code else (str(exc) or exc.__class__.__name__)
            self.logger.debug("SMTP delivery of %s failed: %s", message.id, reason)
            return DeliveryResult.failure(reason, permanent=permanent)
        return DeliveryResult.success()


class RecordingTransport:
    """Keep the last ``limit`` delivered messages in memory instead of sending them."""

    def __init__(self, logger=None, limit: int = RECORDING_LIMIT):
        self.logger = logger or get_logger()
        self.delivered: Deque[QueuedMessage] = deque(maxlen=limit)

    async def deliver(self, message: QueuedMessage) -> DeliveryResult:
        self.delivered.append(message)
        self.logger.info(
            "Recorded message %s to %s (no SMTP server configured)",
            message.id,
            message.recipient_summary,
        )
        return DeliveryResult.success()
