"""Applies explorer actions to the browser."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from sitewright.driver.base import PageDriver
from sitewright.exceptions import DriverDisconnectedError, SitewrightError
from sitewright.explorer.actions import (
    ClickAction,
    DoneAction,
    ExplorerAction,
    ObserveAction,
    ScrollAction,
    TypeTextAction,
)

logger = logging.getLogger(__name__)


@dataclass
class ToolOutcome:
    success: bool
    observation: str


class ToolExecutor:
    """Runs one explorer action and describes what happened.

    Failures are reported as observations for the next decision; only a
    lost browser propagates.

    Args:
        driver: Page to act on.
        settle_delay_sec: Pause after clicks and typing so the page can react.
    """

    def __init__(self, driver: PageDriver, *, settle_delay_sec: float = 0.5) -> None:
        self._driver = driver
        self._settle_delay_sec = settle_delay_sec

    async def execute(self, action: ExplorerAction) -> ToolOutcome:
        try:
            if isinstance(action, ClickAction):
                return await self._click(action)
            if isinstance(action, ScrollAction):
                ok = await self._driver.scroll(action.direction)
                return ToolOutcome(ok, f"Scrolled {action.direction}" if ok else f"Could not scroll {action.direction}")
            if isinstance(action, TypeTextAction):
                ok = await self._driver.type_text(action.selector, action.text)
                if ok:
                    await asyncio.sleep(self._settle_delay_sec)
                    return ToolOutcome(True, f'Typed "{action.text}" into "{action.selector}"')
                return ToolOutcome(False, f'Typing failed: "{action.selector}" not found')
            if isinstance(action, ObserveAction):
                return ToolOutcome(True, f"Observed {action.what or 'page'}")
            if isinstance(action, DoneAction):
                return ToolOutcome(True, "Exploration finished")
        except DriverDisconnectedError:
            raise
        except SitewrightError as e:
            logger.warning("Action %s failed: %s", action.type, e)
            return ToolOutcome(False, f"{action.type} failed: {e}")
        raise TypeError(f"unsupported explorer action {action!r}")

    async def _click(self, action: ClickAction) -> ToolOutcome:
        ok = await self._driver.click(action.selector)
        if not ok:
            return ToolOutcome(False, f'Click failed: "{action.selector}" not found or not clickable')
        await asyncio.sleep(self._settle_delay_sec)
        reason = f" ({action.reason})" if action.reason else ""
        return ToolOutcome(True, f'Clicked "{action.selector}"{reason}')
