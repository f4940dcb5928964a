from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .options import Options


class PageStatus(str, Enum):
    NONE = "none"
    BLACKLISTED = "blacklisted"
    WHITELISTED = "whitelisted"

    @classmethod
    def parse(cls, raw: object) -> PageStatus:
        v = str(raw or "").strip().lower()
        for status in cls:
            if status.value == v:
                return status
        return cls.NONE


def next_status(status: PageStatus) -> PageStatus:
    """Toggle transition.

    A page that was never classified (or was blacklisted) becomes whitelisted;
    a whitelisted page becomes blacklisted. There is no way back to NONE.
    """
    if status is PageStatus.WHITELISTED:
        return PageStatus.BLACKLISTED
    return PageStatus.WHITELISTED


def resolve(options: Options, url: str) -> PageStatus:
    return options.get_page_status(url)


async def toggle(options: Options, url: str) -> PageStatus:
    """Apply `next_status` to ``url`` and persist before returning the new status."""
    return await options.toggle_page(url, next_status)
