from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from .page_status import PageStatus

if TYPE_CHECKING:
    from .browser_api import BrowserApi


class IconVariant(str, Enum):
    NEUTRAL = "pageAction"
    DISABLED = "pageActionDisabled"
    ENABLED = "pageActionEnabled"


@dataclass(frozen=True, slots=True)
class ActionPresentation:
    title: str
    icon: IconVariant
    visible: bool

    def icon_path(self, icon_dir: str) -> str:
        return f"{icon_dir.rstrip('/')}/{self.icon.value}19.png"


def _title(verb: str, product_name: str) -> str:
    name = (product_name or "").strip()
    return f"{verb} {name} on this page" if name else f"{verb} on this page"


def presentation_for(status: PageStatus, *, visible: bool = True, product_name: str = "") -> ActionPresentation:
    if status is PageStatus.WHITELISTED:
        return ActionPresentation(_title("Disable", product_name), IconVariant.ENABLED, visible)
    if status is PageStatus.BLACKLISTED:
        return ActionPresentation(_title("Enable", product_name), IconVariant.DISABLED, visible)
    return ActionPresentation(_title("Enable", product_name), IconVariant.NEUTRAL, visible)


class PageActionReflector:
    """Pushes the page-action title/icon/visibility for a tab."""

    def __init__(self, browser: BrowserApi, *, icon_dir: str = "/assets/icons", product_name: str = "") -> None:
        self._browser = browser
        self.icon_dir = icon_dir
        self.product_name = product_name

    async def reflect(self, tab_id: int, status: PageStatus, *, visible: bool) -> ActionPresentation:
        pres = presentation_for(status, visible=visible, product_name=self.product_name)
        if not pres.visible:
            await self._browser.hide_action(tab_id)
            return pres
        await self._browser.set_action_title(tab_id, pres.title)
        await self._browser.set_action_icon(tab_id, pres.icon_path(self.icon_dir))
        await self._browser.show_action(tab_id)
        return pres
