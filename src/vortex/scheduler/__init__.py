"""Admission, de-duplication and ordering of crawl requests."""

from .feedback import HostFeedback, HostState
from .fingerprint import FingerprintStore, canonicalize_url, request_fingerprint
from .frontier import Frontier, FrontierEntry
from .scheduler import DEGRADED_PRIORITY_OFFSET, Scheduler

__all__ = [
    "DEGRADED_PRIORITY_OFFSET",
    "FingerprintStore",
    "Frontier",
    "FrontierEntry",
    "HostFeedback",
    "HostState",
    "Scheduler",
    "canonicalize_url",
    "request_fingerprint",
]
