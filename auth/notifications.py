"""
auth/notifications.py -- Delivery hook for password reset tokens.

Email delivery is configured outside this service. The API hands every
issued token to app.state.reset_notifier; deployments plug in a notifier
that talks to their mail gateway. The default only logs that a token was
issued -- never the token itself.
"""

from __future__ import annotations

import logging
from typing import Protocol

from auth.models import User

logger = logging.getLogger("hr_auth.auth")


class ResetNotifier(Protocol):
    def send_password_reset(self, user: User, raw_token: str) -> None: ...


class LoggingResetNotifier:
    """Default notifier: records the event, drops the token."""

    def send_password_reset(self, user: User, raw_token: str) -> None:
        logger.info("Password reset token issued (user_id=%d); no delivery channel configured", user.id)
