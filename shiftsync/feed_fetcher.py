from __future__ import annotations

import ipaddress
import logging
import re
import socket
from urllib.parse import urljoin, urlparse

import requests

from shiftsync.errors import FetchFailed, FetchTimeout, InvalidUrl
from shiftsync.models import FetchConfig


logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = {"http", "https", "webcal"}
WEBCAL_PATTERN = re.compile(r"^webcal://", re.IGNORECASE)
MAX_REDIRECTS = 5
REDIRECT_STATUSES = {301, 302, 303, 307, 308}
CHUNK_SIZE = 64 * 1024
PROVIDER_DOMAINS = {
    "icloud": "icloud.com",
    "google": "google.com",
}


def normalize_feed_url(url: str) -> str:
    return WEBCAL_PATTERN.sub("https://", str(url or "").strip())


def _host_in_domain(hostname: str, domain: str) -> bool:
    return hostname == domain or hostname.endswith(f".{domain}")


def detect_source_kind(url: str) -> str:
    try:
        hostname = (urlparse(str(url or "").strip()).hostname or "").lower()
    except ValueError:
        return "custom"
    for kind, domain in PROVIDER_DOMAINS.items():
        if hostname and _host_in_domain(hostname, domain):
            return kind
    return "custom"


def _is_blocked_address(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    mapped = getattr(address, "ipv4_mapped", None)
    if mapped is not None:
        address = mapped
    return address.is_private or address.is_loopback or address.is_link_local or address.is_unspecified


def _resolve_addresses(hostname: str) -> list[ipaddress.IPv4Address | ipaddress.IPv6Address]:
    try:
        return [ipaddress.ip_address(hostname)]
    except ValueError:
        pass
    try:
        infos = socket.getaddrinfo(hostname, None)
    except (socket.gaierror, UnicodeError) as exc:
        raise InvalidUrl(f"Could not resolve calendar host: {hostname}") from exc
    addresses = []
    for info in infos:
        raw = str(info[4][0]).split("%", 1)[0]
        try:
            addresses.append(ipaddress.ip_address(raw))
        except ValueError:
            continue
    return addresses


def validate_feed_url(url: str, source_kind: str) -> str:
    text = str(url or "").strip()
    try:
        parsed = urlparse(text)
        hostname = (parsed.hostname or "").lower()
    except ValueError as exc:
        raise InvalidUrl(f"Invalid calendar URL: {text}") from exc
    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise InvalidUrl("Calendar URL must use http://, https:// or webcal://")
    if not hostname:
        raise InvalidUrl("Calendar URL is missing a host name")

    domain = PROVIDER_DOMAINS.get(source_kind)
    if domain is not None:
        if not _host_in_domain(hostname, domain):
            raise InvalidUrl(f"Invalid {source_kind} calendar URL. Host must be on the {domain} domain")
        return normalize_feed_url(text)

    if hostname == "localhost" or hostname.endswith(".localhost"):
        logger.warning("Rejected calendar URL pointing at localhost: %s", text)
        raise InvalidUrl("Calendar URL must not point at a local or private address")
    for address in _resolve_addresses(hostname):
        if _is_blocked_address(address):
            logger.warning("Rejected calendar URL %s resolving to %s", text, address)
            raise InvalidUrl("Calendar URL must not point at a local or private address")
    return normalize_feed_url(text)


class FeedFetcher:
    def __init__(self, config: FetchConfig | None = None) -> None:
        self.config = config or FetchConfig()

    def fetch(self, url: str, source_kind: str = "custom") -> str:
        fetch_url = validate_feed_url(url, source_kind)
        for _hop in range(MAX_REDIRECTS + 1):
            response = self._get(fetch_url)
            try:
                if response.status_code in REDIRECT_STATUSES:
                    location = response.headers.get("Location")
                    if not location:
                        raise FetchFailed(f"Failed to fetch calendar: HTTP {response.status_code} without a Location")
                    # Redirect targets always get the address check, whatever the feed kind.
                    fetch_url = validate_feed_url(urljoin(fetch_url, location), "custom")
                    logger.debug("Following redirect to %s", fetch_url)
                    continue
                if not response.ok:
                    raise FetchFailed(
                        f"Failed to fetch calendar: HTTP {response.status_code} {response.reason or ''}".rstrip()
                    )
                content = self._read_body(response)
            finally:
                response.close()
            logger.debug("Fetched %d bytes from %s", len(content), fetch_url)
            return content.decode("utf-8", errors="replace")
        raise FetchFailed(f"Failed to fetch calendar: more than {MAX_REDIRECTS} redirects")

    def _get(self, url: str) -> requests.Response:
        try:
            return requests.get(
                url,
                headers={"User-Agent": self.config.user_agent},
                timeout=self.config.timeout_seconds,
                allow_redirects=False,
                stream=True,
            )
        except requests.RequestException as exc:
            raise self._map_request_error(exc) from exc

    def _read_body(self, response: requests.Response) -> bytes:
        chunks: list[bytes] = []
        total = 0
        try:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if not chunk:
                    continue
                total += len(chunk)
                if total > self.config.max_bytes:
                    raise FetchFailed(f"Calendar document exceeds {self.config.max_bytes} bytes")
                chunks.append(chunk)
        except requests.RequestException as exc:
            raise self._map_request_error(exc) from exc
        return b"".join(chunks)

    def _map_request_error(self, exc: requests.RequestException) -> FetchFailed | FetchTimeout:
        if isinstance(exc, requests.Timeout):
            return FetchTimeout(
                f"Request timed out after {self.config.timeout_seconds:g} seconds. Please try again."
            )
        return FetchFailed(f"Failed to fetch calendar: {exc}")
