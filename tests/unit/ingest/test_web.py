"""Tests for WebLoader: SSRF guard, scheme validation, parsing of fetched bodies."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from quarry.config import WebSource
from quarry.errors import LoaderError, SsrfError
from quarry.ingest.web import WebLoader

URL = "https://example.com/docs"


# ------------------------------------------------------------------
# Scheme validation
# ------------------------------------------------------------------


def test_scheme_https_ok():
    WebLoader._validate_scheme("https://example.com/page")  # no exception


def test_scheme_http_ok():
    WebLoader._validate_scheme("http://example.com/page")  # no exception


@pytest.mark.parametrize("url", ["ftp://example.com", "file:///etc/passwd"])
def test_scheme_other_raises(url):
    with pytest.raises(LoaderError, match="scheme"):
        WebLoader._validate_scheme(url)


def test_check_ssrf_no_hostname_raises():
    with pytest.raises(LoaderError, match="hostname"):
        WebLoader._check_ssrf("https://")


# ------------------------------------------------------------------
# SSRF guard: _check_ssrf()
# ------------------------------------------------------------------


def _patch_getaddrinfo(ip: str):
    """Return a context manager that makes getaddrinfo resolve to *ip*."""
    addr_info = [(None, None, None, None, (ip, 0))]
    return patch("quarry.ingest.web.socket.getaddrinfo", return_value=addr_info)


def test_ssrf_public_ip_ok():
    with _patch_getaddrinfo("93.184.216.34"):
        WebLoader._check_ssrf("https://example.com")  # no exception


@pytest.mark.parametrize(
    "ip",
    ["127.0.0.1", "192.168.1.1", "169.254.169.254", "10.0.0.1", "172.16.0.1", "::1", "0.0.0.0"],
)
def test_ssrf_private_ranges_blocked(ip):
    with _patch_getaddrinfo(ip):
        with pytest.raises(SsrfError, match="private address"):
            WebLoader._check_ssrf("http://internal.example/")


def test_ssrf_error_is_a_loader_error():
    assert issubclass(SsrfError, LoaderError)


def test_dns_failure_raises_loader_error():
    import socket

    with patch("quarry.ingest.web.socket.getaddrinfo", side_effect=socket.gaierror("no such host")):
        with pytest.raises(LoaderError, match="DNS resolution failed"):
            WebLoader._check_ssrf("https://nope.invalid/")


def test_load_blocks_before_fetching():
    loader = WebLoader(WebSource(url="http://metadata.internal/"))
    with _patch_getaddrinfo("169.254.169.254"), patch.object(WebLoader, "_fetch") as fetch:
        with pytest.raises(SsrfError):
            loader.load()
    fetch.assert_not_called()


# ------------------------------------------------------------------
# _fetch(): content type and size checks
# ------------------------------------------------------------------


def _fake_response(body: bytes, content_type: str) -> MagicMock:
    response = MagicMock()
    response.headers = {"Content-Type": content_type}
    response.read.return_value = body
    return response


def _patch_opener(response: MagicMock):
    opener = MagicMock()
    opener.open.return_value = response
    return patch("quarry.ingest.web.urllib.request.build_opener", return_value=opener)


def test_fetch_returns_body_and_content_type():
    with _patch_opener(_fake_response(b"hi", "text/plain; charset=utf-8")):
        body, ct = WebLoader._fetch(URL)
    assert body == b"hi"
    assert ct == "text/plain"


def test_fetch_rejects_binary_content_type():
    with _patch_opener(_fake_response(b"%PDF", "application/pdf")):
        with pytest.raises(LoaderError, match="Unsupported Content-Type"):
            WebLoader._fetch(URL)


def test_fetch_rejects_oversized_body():
    with _patch_opener(_fake_response(b"x" * (5 * 1024 * 1024 + 1), "text/html")):
        with pytest.raises(LoaderError, match="5 MB"):
            WebLoader._fetch(URL)


def test_fetch_404_raises_loader_error():
    import urllib.error

    opener = MagicMock()
    opener.open.side_effect = urllib.error.HTTPError(URL, 404, "Not Found", {}, None)
    with patch("quarry.ingest.web.urllib.request.build_opener", return_value=opener):
        with pytest.raises(LoaderError, match="404"):
            WebLoader._fetch(URL)


# ------------------------------------------------------------------
# load(): parsing per loader type (fetch mocked)
# ------------------------------------------------------------------


def _load(source: WebSource, loader_type: str, body: bytes, content_type: str = "text/html"):
    with _patch_getaddrinfo("93.184.216.34"), patch.object(
        WebLoader, "_fetch", return_value=(body, content_type)
    ):
        return WebLoader(source, loader_type).load()


def test_load_html_strips_scripts_and_nav():
    html = (
        b"<html><head><title>T</title></head><body><nav>Menu</nav>"
        b"<script>alert('x')</script><p>DMX512 protocol.</p><footer>Legal</footer></body></html>"
    )
    docs = _load(WebSource(url=URL), "html", html)
    assert len(docs) == 1
    text = docs[0].page_content
    assert "DMX512" in text
    assert "alert" not in text
    assert "Menu" not in text
    assert "Legal" not in text
    assert docs[0].metadata == {"source": URL}


def test_load_html_with_selector():
    html = b"<body><div class='ad'>Buy now</div><main><p>Real content</p></main></body>"
    docs = _load(WebSource(url=URL, selector="main"), "html", html)
    assert "Real content" in docs[0].page_content
    assert "Buy now" not in docs[0].page_content
    assert docs[0].metadata["selector"] == "main"


def test_load_html_selector_without_match_returns_empty():
    docs = _load(WebSource(url=URL, selector="#missing"), "html", b"<body><p>x</p></body>")
    assert docs == []


def test_load_text():
    docs = _load(WebSource(url=URL), "text", b"  plain body \n", "text/plain")
    assert [d.page_content for d in docs] == ["plain body"]


def test_load_json_with_path():
    body = b'{"data": {"items": ["first", {"note": "second"}]}, "meta": "skip"}'
    docs = _load(WebSource(url=URL, json_path="data.items"), "json", body, "application/json")
    assert [d.page_content for d in docs] == ["first", "second"]


def test_load_json_missing_path_raises():
    with pytest.raises(LoaderError, match="json_path"):
        _load(WebSource(url=URL, json_path="nope"), "json", b'{"a": 1}', "application/json")


def test_load_csv_rows():
    docs = _load(WebSource(url=URL), "csv", b"name,role\nalice,admin\nbob,dev\n", "text/csv")
    assert [d.metadata["_raw_row"]["name"] for d in docs] == ["alice", "bob"]
