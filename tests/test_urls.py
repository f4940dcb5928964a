from __future__ import annotations

import pytest


def test_canonicalize_strips_fragment_and_lowercases_host() -> None:
    from extension_hosts.injector.urls import canonicalize

    page = canonicalize("https://Example.COM/page#frag")
    assert page is not None
    assert page.url == "https://example.com/page"
    assert page.path == "/page"
    assert canonicalize("https://example.com/page").url == page.url


def test_canonicalize_normalizes_trailing_slashes_and_root() -> None:
    from extension_hosts.injector.urls import canonicalize

    assert canonicalize("https://example.com/a/b///").url == "https://example.com/a/b"
    assert canonicalize("https://example.com").url == "https://example.com/"
    assert canonicalize("https://example.com/").path == "/"


def test_canonicalize_drops_query_userinfo_and_default_port() -> None:
    from extension_hosts.injector.urls import canonicalize

    assert canonicalize("https://user:pw@example.com:443/x?q=1").url == "https://example.com/x"
    assert canonicalize("http://example.com:8080/x").url == "http://example.com:8080/x"
    assert canonicalize("http://[::1]:3000/app/").url == "http://[::1]:3000/app"


@pytest.mark.parametrize(
    "raw",
    [
        "blob:https://example.com/2f1c",
        "view-source:https://example.com/",
        "chrome://extensions",
        "chrome-extension://abcdefghijklmnopabcdefghijklmnop/options.html",
        "chrome-devtools://devtools/bundled/inspector.html",
        "about:blank",
        "javascript:void(0)",
        "http://example.com:99999/",
        "http://[::1/",
        "not a url",
        "",
        "   ",
        None,
        42,
    ],
)
def test_canonicalize_ignores_internal_and_malformed(raw: object) -> None:
    from extension_hosts.injector.urls import canonicalize

    assert canonicalize(raw) is None  # type: ignore[arg-type]


def test_canonicalize_respects_configured_schemes() -> None:
    from extension_hosts.injector.urls import canonicalize

    assert canonicalize("ftp://files.example.com/pub") is not None
    assert canonicalize("ftp://files.example.com/pub", ignored_schemes=["ftp"]) is None
    assert canonicalize("edge://settings", internal_prefix="edge") is None
    assert canonicalize("file:///tmp/trace/") is not None
    assert canonicalize("file:///tmp/trace/").url == "file:///tmp/trace"


@pytest.mark.parametrize(
    "raw",
    [
        "https://Example.com/Path/To//#x",
        "http://EXAMPLE.com:80",
        "https://example.com./a/",
        "http://[::1]:8080/",
        "file:///C:/traces/",
        "https://example.com/%7Euser/",
        "https://example.com//double",
    ],
)
def test_canonicalize_is_idempotent(raw: str) -> None:
    from extension_hosts.injector.urls import canonicalize

    once = canonicalize(raw)
    assert once is not None
    twice = canonicalize(once.url)
    assert twice == once
