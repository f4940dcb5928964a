from __future__ import annotations


class InjectorError(Exception):
    pass


class IgnorableUrl(InjectorError):
    """The tab URL uses a scheme the host never touches (blob:, view-source:, chrome*:)."""

    def __init__(self, url: str) -> None:
        super().__init__(f"ignored url: {url[:200]}")
        self.url = url


class MalformedMessage(InjectorError):
    """Inbound event or agent message that could not be decoded."""


class MissingTabContext(InjectorError):
    """Event arrived without the tab it refers to (no sender tab, unknown port)."""


class GatewayError(InjectorError):
    pass
