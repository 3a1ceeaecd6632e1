"""Web loader: URL fetching with SSRF protection.

Security requirements:
- SSRF guard: ipaddress module blocks private/loopback/link-local ranges before
  any connection is established.
- Allowed URL schemes: https:// and http:// only.
- Content-Type whitelist: HTML, plain text, markdown, CSV and JSON.
- Max response body: 5 MB.
- Timeout: 30 seconds (connect + read).
- Max redirects: 3.
"""

from __future__ import annotations

import ipaddress
import json
import socket
import urllib.error
import urllib.parse
import urllib.request
from http.client import HTTPResponse

from quarry import __version__
from quarry.config import WebSource
from quarry.errors import LoaderError, SsrfError
from quarry.ingest.base import Document
from quarry.ingest.files import html_to_text, parse_csv_content, parse_json_content
from quarry.log_config import get_logger

log = get_logger(__name__)

_USER_AGENT = f"quarry/{__version__}"
_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
_TIMEOUT = 30  # seconds
_MAX_REDIRECTS = 3
_ALLOWED_SCHEMES = {"https", "http"}
_ALLOWED_CONTENT_TYPES = {
    "text/html",
    "text/plain",
    "text/markdown",
    "text/csv",
    "application/json",
}


class WebLoader:
    """Fetch a URL and parse the body according to the store's loader type.

    Loader types:
    - ``html`` (default): strip non-content tags, optional CSS ``selector``,
      convert to text with html2text; one document.
    - ``text`` / ``markdown``: the trimmed body; one document.
    - ``json``: one document per string leaf, optionally below ``json_path``
      (dot-separated keys).
    - ``csv``: one document per row.

    SSRF protection is applied *before* any connection is made.
    """

    def __init__(self, source: WebSource, loader_type: str = "html") -> None:
        self.source = source
        self.loader_type = loader_type

    def load(self) -> list[Document]:
        url = self.source.url
        log.info(f"Loading from {url} (type: {self.loader_type})")
        self._validate_scheme(url)
        self._check_ssrf(url)
        body, _ = self._fetch(url, self.source.headers)
        content = body.decode("utf-8", errors="replace")

        if self.loader_type == "json":
            return parse_json_content(self._extract_json_path(content), url)
        if self.loader_type == "csv":
            return parse_csv_content(content, url)
        if self.loader_type in ("text", "markdown"):
            text = content.strip()
            return [Document(page_content=text, metadata={"source": url})] if text else []

        text = html_to_text(content, self.source.selector)
        if not text:
            log.warning(f"No text content found for selector '{self.source.selector or 'body'}' at {url}")
            return []
        metadata = {"source": url}
        if self.source.selector:
            metadata["selector"] = self.source.selector
        return [Document(page_content=text, metadata=metadata)]

    def _extract_json_path(self, content: str) -> str:
        path = self.source.json_path
        if not path:
            return content
        try:
            value = json.loads(content)
        except json.JSONDecodeError as exc:
            raise LoaderError(f"Invalid JSON from {self.source.url}: {exc}") from exc
        for key in path.split("."):
            if isinstance(value, dict) and key in value:
                value = value[key]
            elif isinstance(value, list) and key.isdigit() and int(key) < len(value):
                value = value[int(key)]
            else:
                raise LoaderError(f"json_path '{path}' not found in response from {self.source.url}")
        return json.dumps(value)

    # ------------------------------------------------------------------
    # Fetch pipeline
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_scheme(url: str) -> None:
        parsed = urllib.parse.urlparse(url)
        if parsed.scheme not in _ALLOWED_SCHEMES:
            raise LoaderError(
                f"Unsupported URL scheme '{parsed.scheme}'. Only https:// and http:// are allowed."
            )

    @staticmethod
    def _check_ssrf(url: str) -> None:
        """Resolve the hostname and block private/reserved IP ranges.

        Raises SsrfError if any resolved address is private, loopback,
        link-local, or otherwise reserved.
        """
        hostname = urllib.parse.urlparse(url).hostname
        if not hostname:
            raise LoaderError(f"URL has no hostname: {url}")

        try:
            addrinfos = socket.getaddrinfo(hostname, None)
        except socket.gaierror as exc:
            raise LoaderError(f"DNS resolution failed for '{hostname}': {exc}") from exc

        for addrinfo in addrinfos:
            try:
                ip = ipaddress.ip_address(addrinfo[4][0])
            except ValueError:
                continue
            if (
                ip.is_private
                or ip.is_loopback
                or ip.is_link_local
                or ip.is_reserved
                or ip.is_multicast
                or ip.is_unspecified
            ):
                raise SsrfError(
                    f"URL resolves to private address ({ip}). "
                    "Access to internal network addresses is not allowed."
                )

    @staticmethod
    def _fetch(url: str, headers: dict[str, str] | None = None) -> tuple[bytes, str]:
        """Fetch *url* with timeout, redirect limit, size cap, and Content-Type check.

        Returns (body_bytes, content_type_without_params).
        """
        request = urllib.request.Request(url, headers={"User-Agent": _USER_AGENT, **(headers or {})})
        opener = urllib.request.build_opener(_LimitedRedirectHandler(_MAX_REDIRECTS))

        try:
            response: HTTPResponse = opener.open(request, timeout=_TIMEOUT)
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                raise LoaderError(f"Web page not found (404): {url}") from exc
            raise LoaderError(f"Failed to load web content from {url}: HTTP {exc.code}") from exc
        except urllib.error.URLError as exc:
            raise LoaderError(f"Network error loading {url}: {exc.reason}") from exc

        ct = response.headers.get("Content-Type", "text/html").split(";")[0].strip().lower()
        if ct not in _ALLOWED_CONTENT_TYPES:
            raise LoaderError(
                f"Unsupported Content-Type '{ct}' for URL '{url}'. "
                f"Accepted: {', '.join(sorted(_ALLOWED_CONTENT_TYPES))}"
            )

        body = response.read(_MAX_BYTES + 1)
        if len(body) > _MAX_BYTES:
            raise LoaderError(
                f"Response body exceeds {_MAX_BYTES // (1024 * 1024)} MB limit for URL '{url}'."
            )
        return body, ct


class _LimitedRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Raise an error after more than *max_redirects* redirects."""

    def __init__(self, max_redirects: int) -> None:
        self._max_redirects = max_redirects
        self._count = 0

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        self._count += 1
        if self._count > self._max_redirects:
            raise LoaderError(f"Too many redirects (>{self._max_redirects}) for URL '{req.full_url}'.")
        WebLoader._check_ssrf(newurl)
        return super().redirect_request(req, fp, code, msg, headers, newurl)
