"""
Pipeline sinks receiving extracted records.

Storage and indexing stages live outside the engine; these sinks cover
collecting records in memory and logging them.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import structlog

from vortex.protocols import FieldValue, Record


class MemorySink:
    """Collects every accepted record in a list."""

    def __init__(self, critical: bool = False):
        self.critical = critical
        self.records: List[Record] = []
        self._lock = asyncio.Lock()

    async def accept(self, record: Record) -> None:
        async with self._lock:
            self.records.append(record)

    def __len__(self) -> int:
        return len(self.records)

    def by_url(self, url: str) -> List[Record]:
        return [record for record in self.records if record.url == url]


def crop(value: FieldValue, max_len: Optional[int]) -> Any:
    """Shorten long strings (recursively) for display."""
    if max_len is None:
        return value
    if isinstance(value, str):
        return value if len(value) <= max_len else value[:max_len] + "..."
    if isinstance(value, list):
        return [crop(item, max_len) for item in value]
    if isinstance(value, dict):
        return {key: crop(item, max_len) for key, item in value.items()}
    return value


class LoggingSink:
    """Logs one structured line per record, cropping long values."""

    def __init__(self, max_len: Optional[int] = 200, logger: Optional[Any] = None, critical: bool = False):
        self.max_len = max_len
        self.critical = critical
        self.count = 0
        self.logger = logger or structlog.get_logger("vortex.records")

    async def accept(self, record: Record) -> None:
        self.count += 1
        fields: Dict[str, Any] = {key: crop(value, self.max_len) for key, value in record.fields.items()}
        self.logger.info(
            "record",
            url=record.url,
            rule=record.rule,
            fetched_at=record.fetched_at.isoformat(),
            fields=fields,
        )
