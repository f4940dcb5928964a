from __future__ import annotations

import asyncio
import json
from pathlib import Path


def test_options_save_load_roundtrip(tmp_path: Path) -> None:
    from extension_hosts.injector.options import GlobalSettings, Options
    from extension_hosts.injector.options_persist import JsonFileOptionsBackend
    from extension_hosts.injector.page_status import PageStatus, next_status

    path = tmp_path / "profile" / "options.json"
    options = Options(JsonFileOptionsBackend(path))

    async def _mutate() -> None:
        await options.toggle_page("https://example.com/a", next_status)
        await options.set_page_options("https://example.com/a", {"k": 1, "nested": {"x": [1, 2]}})
        await options.set_settings(GlobalSettings(show_page_action=False, show_context_menu=True))

    asyncio.run(_mutate())
    assert path.exists()

    reloaded = Options(JsonFileOptionsBackend(path))
    reloaded.load()
    assert reloaded.get_page_status("https://example.com/a") is PageStatus.WHITELISTED
    assert reloaded.get_page_options("https://example.com/a") == {"k": 1, "nested": {"x": [1, 2]}}
    assert reloaded.settings == GlobalSettings(show_page_action=False, show_context_menu=True)

    doc = json.loads(path.read_text(encoding="utf-8"))
    assert doc["version"] == 1
    assert isinstance(doc["updatedAt"], int)


def test_options_file_keeps_backup_of_previous_snapshot(tmp_path: Path) -> None:
    from extension_hosts.injector.options_persist import save_snapshot

    path = tmp_path / "options.json"
    save_snapshot({"pages": {}, "settings": {}}, path)
    save_snapshot({"pages": {"https://example.com/": {"status": "whitelisted"}}, "settings": {}}, path)

    bak = path.with_suffix(".json.bak")
    assert bak.exists()
    assert json.loads(bak.read_text(encoding="utf-8"))["pages"] == {}
    assert not path.with_suffix(".json.tmp").exists()


def test_corrupt_or_missing_options_file_loads_defaults(tmp_path: Path) -> None:
    from extension_hosts.injector.options import GlobalSettings, Options
    from extension_hosts.injector.options_persist import JsonFileOptionsBackend, load_snapshot

    assert load_snapshot(tmp_path / "missing.json") is None

    path = tmp_path / "options.json"
    path.write_text("{not json", encoding="utf-8")
    assert load_snapshot(path) is None

    options = Options(JsonFileOptionsBackend(path))
    options.load()
    assert options.settings == GlobalSettings()
    assert options.page_count() == 0


def test_snapshot_skips_invalid_entries() -> None:
    from extension_hosts.injector.options import Options
    from extension_hosts.injector.page_status import PageStatus

    options = Options()
    options.apply_snapshot(
        {
            "settings": {"showPageAction": "false"},
            "pages": {
                "https://example.com/ok": {"status": "blacklisted", "options": {"a": 1}},
                "https://example.com/bad-options": {"status": "whitelisted", "options": ["x"]},
                "": {"status": "whitelisted"},
                "https://example.com/not-a-dict": "whitelisted",
            },
        }
    )
    assert options.settings.show_page_action is False
    assert options.get_page_status("https://example.com/ok") is PageStatus.BLACKLISTED
    assert options.get_page_options("https://example.com/ok") == {"a": 1}
    assert options.get_page_options("https://example.com/bad-options") == {}
    assert options.page_count() == 2


def test_page_options_are_copied_on_read_and_write() -> None:
    from extension_hosts.injector.options import Options

    options = Options()
    payload = {"k": {"v": 1}}
    asyncio.run(options.set_page_options("https://example.com/", payload))
    payload["k"]["v"] = 2

    got = options.get_page_options("https://example.com/")
    assert got == {"k": {"v": 1}}
    got["k"]["v"] = 3
    assert options.get_page_options("https://example.com/") == {"k": {"v": 1}}
