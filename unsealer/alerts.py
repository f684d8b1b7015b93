from __future__ import annotations

import logging
import smtplib
import socket
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from .settings import EmailSettings

logger = logging.getLogger(__name__)


class AlertDeliveryError(Exception):
    pass


class Notifier(Protocol):
    def send(self, body: str, subject: str) -> None: ...


class EmailNotifier:
    """Deliver batches over SMTP.

    The first send address is the recipient, any others are CC'd. STARTTLS is
    used when the server offers it and required when `mandatory_tls` is set.
    """

    def __init__(self, cfg: EmailSettings, timeout_s: float = 30.0):
        self.cfg = cfg
        self.timeout_s = timeout_s

    def send(self, body: str, subject: str) -> None:
        cfg = self.cfg
        msg = MIMEMultipart()
        msg["From"] = cfg.from_addr
        msg["To"] = cfg.send_addrs[0]
        if len(cfg.send_addrs) > 1:
            msg["Cc"] = ", ".join(cfg.send_addrs[1:])
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        try:
            with smtplib.SMTP(cfg.hostname, cfg.port, local_hostname=local_hostname(), timeout=self.timeout_s) as server:
                server.ehlo()
                if server.has_extn("starttls"):
                    server.starttls()
                    server.ehlo()
                elif cfg.mandatory_tls:
                    raise AlertDeliveryError(f"{cfg.hostname}:{cfg.port} does not support STARTTLS")
                if cfg.username:
                    server.login(cfg.username, cfg.password)
                server.sendmail(cfg.from_addr, list(cfg.send_addrs), msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise AlertDeliveryError(f"sending mail via {cfg.hostname}:{cfg.port}: {e}") from e
        logger.info("successfully sent notifications to %s", ",".join(cfg.send_addrs))


class LogNotifier:
    """Used when email is disabled: the batch only ends up in the local log."""

    def send(self, body: str, subject: str) -> None:
        logger.warning("%s (email disabled)\n%s", subject, body)


def local_hostname() -> str:
    try:
        return socket.gethostname() or "localhost"
    except OSError:
        return "localhost"
