"""Hand URLs to the user's web browser."""

from __future__ import annotations

import os
import webbrowser

from sshtokenlogin.errors import BrowserLaunchError

NO_BROWSER_ENV_VAR = "SSHTOKENLOGIN_NO_BROWSER"


def open_browser(url: str) -> None:
    if os.getenv(NO_BROWSER_ENV_VAR):
        raise BrowserLaunchError(f"browser launch disabled by {NO_BROWSER_ENV_VAR}")
    try:
        opened = webbrowser.open(url)
    except (webbrowser.Error, OSError) as exc:
        raise BrowserLaunchError(str(exc)) from exc
    if not opened:
        raise BrowserLaunchError("no usable browser found")
