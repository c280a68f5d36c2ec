"""
auth/mailer.py -- Out-of-band delivery seam for password-reset links.

Real email delivery is an external collaborator. The gateway depends only on
the Mailer protocol; LoggingMailer is the default and records that a message
was queued. In the local profile it also logs the link itself so a developer
can complete the reset flow without an SMTP server. The link is a credential,
so it is never logged in production.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("caskbook.auth.mailer")


class Mailer(Protocol):
    def send_password_reset(self, email: str, username: str, reset_url: str) -> None: ...


class LoggingMailer:
    def __init__(self, reveal_links: bool = False) -> None:
        self.reveal_links = reveal_links

    def send_password_reset(self, email: str, username: str, reset_url: str) -> None:
        logger.info("Password reset email queued for user=%s", username)
        if self.reveal_links:
            logger.info("Password reset link (local profile only): %s", reset_url)
