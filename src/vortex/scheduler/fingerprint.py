"""
Request fingerprinting and the per-crawl fingerprint store.
"""

from __future__ import annotations

import hashlib
from typing import Iterable, Set
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from vortex.protocols import Request

_DEFAULT_PORTS = {"http": 80, "https": 443}


def canonicalize_url(url: str) -> str:
    """Normalize a URL so equivalent spellings produce the same string.

    Lowercases scheme and host, drops default ports and the fragment, turns an
    empty path into ``/`` and sorts query parameters (blank values kept).
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    try:
        port = parts.port
    except ValueError:
        port = None

    netloc = host
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"
    if port is not None and _DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{netloc}:{port}"

    path = quote(parts.path or "/", safe="/%:@!$&'()*+,;=-._~")
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return urlunsplit((scheme, netloc, path, query, ""))


def request_fingerprint(request: Request) -> str:
    """Stable hex digest identifying a request for de-duplication."""
    digest = hashlib.sha256()
    digest.update(request.method.upper().encode("ascii"))
    digest.update(b"\n")
    digest.update(canonicalize_url(request.url).encode("utf-8"))
    digest.update(b"\n")
    if request.body:
        digest.update(hashlib.sha256(request.body).hexdigest().encode("ascii"))
    return digest.hexdigest()


class FingerprintStore:
    """Set of fingerprints seen during one crawl.

    Mutated only through the Scheduler, which serializes access.
    """

    def __init__(self, fingerprints: Iterable[str] = ()):
        self._seen: Set[str] = set(fingerprints)

    def add(self, fingerprint: str) -> bool:
        """Record a fingerprint; returns True only if it was not seen before."""
        if fingerprint in self._seen:
            return False
        self._seen.add(fingerprint)
        return True

    def __contains__(self, fingerprint: object) -> bool:
        return fingerprint in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def clear(self) -> None:
        self._seen.clear()
