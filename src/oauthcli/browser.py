"""Best-effort browser launcher for the authorization URL."""

from __future__ import annotations

import logging
import webbrowser

from oauthcli.exceptions import BrowserError

logger = logging.getLogger(__name__)


def open_browser(url: str) -> None:
    """Open *url* in the user's default browser without waiting for it.

    Callers should always show the URL as well: on headless machines no
    browser exists and the user has to open it by hand.

    Raises:
        BrowserError: If no browser could be launched.
    """
    try:
        opened = webbrowser.open(url)
    except webbrowser.Error as exc:
        raise BrowserError(f"Failed to open browser: {exc}") from exc
    if not opened:
        raise BrowserError("No browser available to open the authorization URL")
    logger.debug("Opened browser for %s", url)
