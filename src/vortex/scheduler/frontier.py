"""
Priority frontier of pending requests.
"""

from __future__ import annotations

import heapq
import itertools
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from vortex.protocols import Request

HeadKey = Tuple[float, int, str]


@dataclass(order=True)
class FrontierEntry:
    """Heap entry; higher priority first, then insertion order."""

    sort_key: float
    sequence: int
    request: Request = field(compare=False)
    fingerprint: str = field(compare=False)
    priority: float = field(compare=False)
    valid: bool = field(default=True, compare=False)


class Frontier:
    """Heap-backed priority queue keyed by fingerprint.

    Entries live in one heap per host; a second heap orders the hosts by their
    best entry. Skipping an ineligible host therefore costs one head, however
    many requests it has queued.

    Re-prioritization pushes a fresh entry with the original sequence number and
    invalidates the old one, so FIFO order within a priority tier survives.
    """

    def __init__(self) -> None:
        self._host_heaps: Dict[str, List[FrontierEntry]] = {}
        self._heads: List[HeadKey] = []
        self._head_of: Dict[str, HeadKey] = {}
        self._live: Dict[str, FrontierEntry] = {}
        self._by_host: Dict[str, Set[str]] = {}
        self._sequence = itertools.count()

    def __len__(self) -> int:
        return len(self._live)

    def __contains__(self, fingerprint: object) -> bool:
        return fingerprint in self._live

    def __iter__(self) -> Iterator[FrontierEntry]:
        return iter(sorted(self._live.values()))

    def hosts(self) -> List[str]:
        return [host for host, fps in self._by_host.items() if fps]

    def push(self, request: Request, priority: float, fingerprint: str) -> FrontierEntry:
        if fingerprint in self._live:
            raise ValueError(f"fingerprint already queued: {fingerprint}")
        entry = FrontierEntry(-priority, next(self._sequence), request, fingerprint, priority)
        host = request.host
        heapq.heappush(self._host_heaps.setdefault(host, []), entry)
        self._live[fingerprint] = entry
        self._by_host.setdefault(host, set()).add(fingerprint)
        self._refresh_head(host)
        return entry

    def pop(self, skip_host: Optional[Callable[[str], bool]] = None) -> Optional[FrontierEntry]:
        """Remove and return the best entry whose host is not rejected by ``skip_host``.

        Entries of skipped hosts stay queued unchanged.
        """
        skipped: List[HeadKey] = []
        found: Optional[FrontierEntry] = None
        while self._heads:
            key = heapq.heappop(self._heads)
            host = key[2]
            if self._head_of.get(host) != key:
                continue  # superseded head
            if skip_host is not None and skip_host(host):
                skipped.append(key)
                continue
            found = heapq.heappop(self._host_heaps[host])
            del self._head_of[host]
            break

        for key in skipped:
            heapq.heappush(self._heads, key)

        if found is not None:
            self._forget(found)
            self._refresh_head(found.request.host)
        return found

    def reprioritize(self, host: str, priority_fn: Callable[[FrontierEntry], float]) -> int:
        """Recompute the priority of every pending entry for ``host``."""
        changed = 0
        heap = self._host_heaps.get(host)
        for fingerprint in list(self._by_host.get(host, ())):
            old = self._live[fingerprint]
            priority = priority_fn(old)
            if priority == old.priority:
                continue
            old.valid = False
            request = old.request.replace(priority=priority)
            entry = FrontierEntry(-priority, old.sequence, request, fingerprint, priority)
            heapq.heappush(heap, entry)  # type: ignore[arg-type]
            self._live[fingerprint] = entry
            changed += 1

        if changed:
            self._compact(host)
            self._refresh_head(host)
        return changed

    def clear(self) -> None:
        self._host_heaps.clear()
        self._heads.clear()
        self._head_of.clear()
        self._live.clear()
        self._by_host.clear()

    def _best(self, host: str) -> Optional[FrontierEntry]:
        heap = self._host_heaps.get(host)
        while heap and not heap[0].valid:
            heapq.heappop(heap)
        if not heap:
            self._host_heaps.pop(host, None)
            return None
        return heap[0]

    def _refresh_head(self, host: str) -> None:
        best = self._best(host)
        if best is None:
            self._head_of.pop(host, None)
            return
        key = (best.sort_key, best.sequence, host)
        if self._head_of.get(host) != key:
            self._head_of[host] = key
            heapq.heappush(self._heads, key)
            if len(self._heads) > 2 * len(self._head_of) + 64:
                self._heads = list(self._head_of.values())
                heapq.heapify(self._heads)

    def _forget(self, entry: FrontierEntry) -> None:
        del self._live[entry.fingerprint]
        fingerprints = self._by_host.get(entry.request.host)
        if fingerprints is not None:
            fingerprints.discard(entry.fingerprint)
            if not fingerprints:
                del self._by_host[entry.request.host]

    def _compact(self, host: str) -> None:
        heap = self._host_heaps.get(host)
        if heap is not None and len(heap) > 2 * len(self._by_host.get(host, ())) + 64:
            heap[:] = [entry for entry in heap if entry.valid]
            heapq.heapify(heap)
