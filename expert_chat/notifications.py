"""
Notification port for success/error banners.

The chat components report user-visible outcomes here instead of calling
any UI toolkit directly. The default implementation only logs.
"""

import logging

logger = logging.getLogger(__name__)


class Notifier:
    """Receives user-facing notifications. Subclass to show them."""

    def success(self, title: str, message: str) -> None:
        logger.info("%s: %s", title, message)

    def error(self, title: str, message: str) -> None:
        logger.warning("%s: %s", title, message)

