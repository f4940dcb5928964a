"""Page URL canonicalization.

Authorization state is keyed by the canonical form of a tab URL, so every event
that refers to the same page (whatever its fragment, host case or trailing
slashes) must land on the same key. URLs the host must never touch come back as
``None`` instead of raising.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from urllib.parse import urlsplit

from .config import DEFAULT_IGNORED_SCHEMES

_DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443, "ftp": 21}


@dataclass(frozen=True, slots=True)
class CanonicalUrl:
    url: str
    scheme: str
    host: str
    path: str

    def __str__(self) -> str:
        return self.url


def _normalize_path(path: str) -> str:
    stripped = (path or "").rstrip("/")
    if not stripped:
        return "/"
    if not stripped.startswith("/"):
        stripped = "/" + stripped
    return stripped


def canonicalize(
    raw: str,
    *,
    ignored_schemes: Iterable[str] = DEFAULT_IGNORED_SCHEMES,
    internal_prefix: str = "chrome",
) -> CanonicalUrl | None:
    """Return the canonical form of ``raw`` or None when the URL is ignored.

    - scheme and host are lower-cased, userinfo, query and fragment are dropped
    - default ports are removed
    - trailing slashes are collapsed (the root path stays ``/``)
    """
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    if not text:
        return None

    lowered = text.lower()
    ignored = {s.strip().lower() for s in ignored_schemes if isinstance(s, str) and s.strip()}
    for scheme in ignored:
        if lowered.startswith(scheme + ":"):
            return None

    try:
        parts = urlsplit(text)
        port = parts.port
    except Exception:  # noqa: BLE001
        return None

    scheme = (parts.scheme or "").lower()
    if not scheme or scheme in ignored:
        return None
    # chrome:, chrome-extension:, chrome-devtools:, ...
    if internal_prefix and scheme.startswith(internal_prefix):
        return None

    host = (parts.hostname or "").rstrip(".")
    if not host and scheme != "file":
        return None
    if ":" in host:
        host = f"[{host}]"

    netloc = host
    if port is not None and _DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{host}:{port}"

    path = _normalize_path(parts.path)
    return CanonicalUrl(url=f"{scheme}://{netloc}{path}", scheme=scheme, host=host, path=path)

