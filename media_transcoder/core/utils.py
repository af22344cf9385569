"""Shared utility functions for the transcoding service.

Contains:
- env_int / env_float: tolerant environment parsing
- format_size_mb: size helper for logs
- download_bytes: fetch a URL-sourced upload with security validation
"""

import ipaddress
import logging
import os
import socket
from typing import Optional
from urllib.parse import urljoin, urlparse

import requests

from media_transcoder.core.exceptions import DownloadError

DOWNLOAD_TIMEOUT: int = 120
USER_AGENT: str = "media-transcoder/1.0"

logger = logging.getLogger(__name__)


def env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("[settings] Invalid %s=%s; using %s", name, raw, default)
        return default


def env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("[settings] Invalid %s=%s; using %s", name, raw, default)
        return default


def format_size_mb(size_bytes: int) -> str:
    return f"{size_bytes / (1024 * 1024):.2f}MB"


def redact_url_for_log(url: str, max_len: int = 200) -> str:
    """Return a URL safe for logs (no query/fragment/userinfo)."""
    if not url or not isinstance(url, str):
        return "EMPTY/NONE"

    trimmed = url.strip()
    parsed = urlparse(trimmed)
    if parsed.scheme and parsed.netloc:
        host = parsed.hostname or ""
        netloc = f"{host}:{parsed.port}" if parsed.port else host
        trimmed = parsed._replace(netloc=netloc, query="", fragment="", params="").geturl()

    if len(trimmed) > max_len:
        return trimmed[:max_len] + "..."
    return trimmed


def _is_disallowed_ip(ip) -> bool:
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


def _resolve_hostname_ips(hostname: str) -> list:
    try:
        addrinfos = socket.getaddrinfo(hostname, None)
    except socket.gaierror:
        return []

    ips = []
    for info in addrinfos:
        try:
            ip = ipaddress.ip_address(info[4][0])
        except ValueError:
            continue
        if ip not in ips:
            ips.append(ip)
    return ips


def validate_external_url(url: str) -> None:
    """Reject URLs that point at internal or metadata endpoints (SSRF guard)."""
    if not url or not isinstance(url, str):
        raise DownloadError.invalid_url(str(url))

    trimmed = url.strip()
    parsed = urlparse(trimmed)

    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        raise DownloadError.invalid_url(trimmed)

    # Credentials in the URL are a common SSRF trick
    if parsed.username or parsed.password:
        raise DownloadError.blocked_url(trimmed)

    hostname = (parsed.hostname or "").strip()
    if not hostname:
        raise DownloadError.invalid_url(trimmed)
    if hostname.lower() in ("localhost", "metadata.google.internal"):
        raise DownloadError.blocked_url(trimmed)

    try:
        candidates = [ipaddress.ip_address(hostname)]
    except ValueError:
        candidates = _resolve_hostname_ips(hostname)
        if not candidates:
            raise DownloadError.invalid_url(trimmed)

    for ip in candidates:
        if _is_disallowed_ip(ip):
            raise DownloadError.blocked_url(trimmed)


def download_bytes(url: str, max_bytes: int, timeout: Optional[int] = None) -> bytes:
    """Download a URL-sourced upload into memory.

    Args:
        url: The URL to download from.
        max_bytes: Maximum allowed body size in bytes.
        timeout: Request timeout in seconds (default DOWNLOAD_TIMEOUT).

    Returns:
        The response body.

    Raises:
        DownloadError: If the URL is blocked, the download fails, or the body is too large.
    """
    validate_external_url(url)
    timeout = timeout or DOWNLOAD_TIMEOUT
    limit_mb = max_bytes / (1024 * 1024)

    logger.info("Downloading upload from %s", redact_url_for_log(url, max_len=120))

    def _perform_request(target_url: str) -> requests.Response:
        return requests.get(
            target_url,
            timeout=timeout,
            stream=True,
            headers={"User-Agent": USER_AGENT},
            allow_redirects=False,  # redirects are re-validated below
        )

    try:
        response = _perform_request(url)

        # Follow a single redirect after re-validating its target
        if response.is_redirect or response.status_code in (301, 302, 303, 307, 308):
            redirect_target = response.headers.get("location")
            if not redirect_target:
                raise DownloadError.invalid_url(url)
            redirect_url = urljoin(url, redirect_target)
            validate_external_url(redirect_url)
            logger.info("[URL_REDIRECT] Following redirect to %s", redact_url_for_log(redirect_url))
            response.close()
            response = _perform_request(redirect_url)

        status = response.status_code
        if status == 404:
            raise DownloadError.not_found(redact_url_for_log(url))
        if status in (401, 403):
            raise DownloadError.expired_or_forbidden(status)
        if status >= 400:
            raise DownloadError(f"Download failed (HTTP {status})", status_code=502)

        content_length = response.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > max_bytes:
            raise DownloadError.too_large(int(content_length) / (1024 * 1024), limit_mb)

        body = bytearray()
        for chunk in response.iter_content(chunk_size=8192):
            if not chunk:
                continue
            body.extend(chunk)
            if len(body) > max_bytes:
                raise DownloadError.too_large(len(body) / (1024 * 1024), limit_mb)

        if not body:
            raise DownloadError("Downloaded file is empty")

        logger.info("Downloaded %s bytes (%s)", f"{len(body):,}", format_size_mb(len(body)))
        return bytes(body)

    except requests.exceptions.Timeout as e:
        raise DownloadError(f"Download timed out after {timeout} seconds", status_code=504) from e
    except requests.exceptions.RequestException as e:
        raise DownloadError(f"Download failed: {e}", status_code=502) from e
