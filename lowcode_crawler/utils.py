"""URL, filename and download helpers shared by the extractor and packager."""

from __future__ import annotations

import pathlib
import posixpath
import re
import urllib.parse
from typing import Dict, Optional, Tuple

import httpx

# ───────── URL utilities ─────────

def is_absolute_http_url(value: str) -> bool:
    """True for http(s) URLs with a host."""
    if not isinstance(value, str):
        return False
    lowered = value.strip().lower()
    return lowered.startswith(("http://", "https://"))


def resolve_url(value: Optional[str], base_url: Optional[str]) -> Optional[str]:
    """Resolve a possibly relative URL against the page URL.

    ``None``/empty stays ``None``; anything urljoin cannot handle is kept as-is.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if is_absolute_http_url(value) or not base_url:
        return value
    if value.lower().startswith(("javascript:", "mailto:", "tel:", "data:")):
        return value
    try:
        return urllib.parse.urljoin(base_url, value)
    except ValueError:
        return value


def url_path_extension(url: str) -> str:
    """Lower-cased extension (without dot) of a URL's path, or ''.

    Query, fragment and CDN ``@`` suffixes (``a.jpg@672w_378h``) are ignored.
    """
    try:
        path = urllib.parse.urlparse(url).path
    except ValueError:
        return ""
    path = path.split("@")[0]
    return posixpath.splitext(path)[1].lower().lstrip(".")


# ───────── filename helpers ─────────

_ILLEGAL_PATH_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_WHITESPACE = re.compile(r"\s+")


def sanitize_segment(value: str, max_length: int = 100) -> str:
    """Make a value safe to embed in a file path segment."""
    cleaned = _ILLEGAL_PATH_CHARS.sub("_", str(value))
    cleaned = _WHITESPACE.sub("_", cleaned)
    return cleaned[:max_length]


def is_within(root: pathlib.Path, candidate: pathlib.Path) -> bool:
    """True if candidate resolves inside root."""
    try:
        candidate.resolve().relative_to(root.resolve())
        return True
    except ValueError:
        return False


# ───────── HTTP headers ─────────

def build_download_headers(base: dict) -> dict:
    """Build consistent headers for binary downloads."""
    ua = base.get("user-agent") or base.get("User-Agent") or (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/139.0.0.0 Safari/537.36"
    )
    h = {
        "user-agent": ua,
        "accept": "*/*",
        "accept-language": base.get("accept-language") or "en-US,en;q=0.9",
        "cache-control": "no-cache",
    }
    if base.get("referer"):
        h["referer"] = base["referer"]
    return h


# ───────── bounded downloads ─────────

async def download_to_file(
    client: httpx.AsyncClient,
    url: str,
    dest: pathlib.Path,
    *,
    max_bytes: int,
    timeout: float,
    headers: Optional[Dict[str, str]] = None,
) -> Tuple[bool, Optional[str]]:
    """
    Stream ``url`` into ``dest`` through a ``.part`` file.
    Returns: (success, error_reason). Never raises for HTTP/IO problems.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    temp_path = dest.with_name(dest.name + ".part")
    try:
        async with client.stream("GET", url, headers=headers or {}, timeout=timeout) as response:
            if response.status_code != 200:
                return False, f"http_{response.status_code}"

            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > max_bytes:
                return False, "too_large"

            written = 0
            with open(temp_path, "wb") as f:
                async for chunk in response.aiter_bytes():
                    written += len(chunk)
                    if written > max_bytes:
                        break
                    f.write(chunk)

        if written > max_bytes:
            temp_path.unlink(missing_ok=True)
            return False, "too_large"
        if written == 0:
            temp_path.unlink(missing_ok=True)
            return False, "empty_file"

        temp_path.replace(dest)
        return True, None

    except httpx.TimeoutException:
        temp_path.unlink(missing_ok=True)
        return False, "timeout"
    except httpx.HTTPError as e:
        temp_path.unlink(missing_ok=True)
        return False, f"request_error_{e.__class__.__name__}"
    except OSError as e:
        temp_path.unlink(missing_ok=True)
        return False, f"io_error_{e.__class__.__name__}"
