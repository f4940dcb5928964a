#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[injector] host={os.environ.get('INJECTOR_HOST', '127.0.0.1')} | "
    f"port={os.environ.get('INJECTOR_PORT', '8766')} | "
    f"options={os.environ.get('INJECTOR_OPTIONS_PATH', '~/.config/injector/options.json')}",
    file=sys.stderr,
)

from extension_hosts.injector.main import main  # noqa: E402

if __name__ == "__main__":
    raise SystemExit(main())
