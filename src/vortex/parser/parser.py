"""
Applies crawl rules to fetched responses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Sequence

import structlog

from vortex.exceptions import ExtractionError
from vortex.protocols import ErrorInfo, ErrorSeverity, Record, Request, Response

from .page import Page
from .rules import ParseRule, validate_rules

logger = structlog.get_logger(__name__)


@dataclass
class ExtractionFailure:
    """One rule (or the whole response) that could not be processed."""

    url: str
    error: ErrorInfo
    rule: Optional[str] = None


@dataclass
class ParseResult:
    """Everything a response produced: new requests, records and failures."""

    requests: List[Request] = field(default_factory=list)
    records: List[Record] = field(default_factory=list)
    failures: List[ExtractionFailure] = field(default_factory=list)


class Parser:
    """Stateless rule evaluator.

    Failures never escape ``parse``: an undecodable response yields an empty
    result with one failure, and a failing rule yields a failure for that rule
    while the other rules still run.
    """

    def __init__(self, rules: Sequence[ParseRule] = ()):
        if rules:
            validate_rules(rules)
        self.rules = tuple(rules)

    def parse(self, response: Response, rules: Optional[Sequence[ParseRule]] = None) -> ParseResult:
        rules = self.rules if rules is None else rules
        result = ParseResult()

        try:
            page = Page(response)
        except (UnicodeDecodeError, LookupError) as exc:
            result.failures.append(self._failure(response.url, exc, None))
            return result

        fetched_at = datetime.now(timezone.utc)
        seen_links = set()
        for rule in rules:
            try:
                if rule.condition.follows:
                    for url in rule.links.extract_links(page):
                        if url in seen_links or not rule.pattern.matches(url):
                            continue
                        seen_links.add(url)
                        result.requests.append(self._follow(response, url))

                if rule.condition.parses and rule.pattern.matches(response.url):
                    extracted = rule.field_extractor().extract(page)
                    result.records.extend(self._records(extracted, response.url, fetched_at, rule))
            except Exception as exc:
                result.failures.append(self._failure(response.url, exc, rule.label))

        return result

    def _follow(self, response: Response, url: str) -> Request:
        return Request(url=url, depth=response.request.depth + 1, meta={"referer": response.url})

    def _records(self, extracted: Any, url: str, fetched_at: datetime, rule: ParseRule) -> List[Record]:
        if extracted is None:
            return []
        items = [extracted] if isinstance(extracted, Mapping) else list(extracted)
        records = []
        for item in items:
            if not isinstance(item, Mapping):
                raise ExtractionError(
                    f"extractor returned {type(item).__name__}, expected a mapping", url=url, rule=rule.label
                )
            if item:
                records.append(Record(fields=dict(item), url=url, fetched_at=fetched_at, rule=rule.name))
        return records

    def _failure(self, url: str, exc: BaseException, rule: Optional[str]) -> ExtractionFailure:
        logger.warning("Extraction failed", url=url, rule=rule, error_type=type(exc).__name__, error=str(exc))
        return ExtractionFailure(
            url=url,
            rule=rule,
            error=ErrorInfo.from_exception(exc, severity=ErrorSeverity.MEDIUM, url=url, rule=rule),
        )
