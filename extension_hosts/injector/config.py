from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_IGNORED_SCHEMES: list[str] = [
    "blob",
    "view-source",
    "filesystem",
]

DEFAULT_COOKIE_NAME = "wtf"


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _split_csv(raw: str) -> list[str]:
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


@dataclass
class InjectorConfig:
    options_path: str
    host: str = "127.0.0.1"
    port: int = 8766
    cookie_name: str = DEFAULT_COOKIE_NAME
    icon_dir: str = "/assets/icons"
    product_name: str = ""
    ignored_schemes: list[str] = field(default_factory=lambda: list(DEFAULT_IGNORED_SCHEMES))
    internal_prefix: str = "chrome"
    expected_extension_id: str | None = None
    rpc_timeout: float = 10.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> InjectorConfig:
        host = (os.environ.get("INJECTOR_HOST") or "127.0.0.1").strip() or "127.0.0.1"
        try:
            port = int(os.environ.get("INJECTOR_PORT") or 8766)
        except ValueError:
            port = 8766
        options_path = expand_path(os.environ.get("INJECTOR_OPTIONS_PATH", "~/.config/injector/options.json"))
        ignored_raw = os.environ.get("INJECTOR_IGNORED_SCHEMES")
        ignored = _split_csv(ignored_raw) if ignored_raw is not None else list(DEFAULT_IGNORED_SCHEMES)
        try:
            rpc_timeout = float(os.environ.get("INJECTOR_RPC_TIMEOUT") or 10.0)
        except ValueError:
            rpc_timeout = 10.0
        return cls(
            options_path=options_path,
            host=host,
            port=port,
            cookie_name=(os.environ.get("INJECTOR_COOKIE_NAME") or DEFAULT_COOKIE_NAME).strip() or DEFAULT_COOKIE_NAME,
            icon_dir=(os.environ.get("INJECTOR_ICON_DIR") or "/assets/icons").rstrip("/"),
            product_name=(os.environ.get("INJECTOR_PRODUCT_NAME") or "").strip(),
            ignored_schemes=ignored,
            internal_prefix=(os.environ.get("INJECTOR_INTERNAL_PREFIX") or "chrome").strip().lower(),
            expected_extension_id=(os.environ.get("INJECTOR_EXTENSION_ID") or "").strip() or None,
            rpc_timeout=max(0.1, min(rpc_timeout, 120.0)),
            log_level=(os.environ.get("INJECTOR_LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        )
