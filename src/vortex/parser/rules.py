"""
Crawl rules: which links to follow and which pages to extract.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Optional, Pattern, Sequence, Tuple, Union

from vortex.exceptions import ConfigurationError

from .extractors import FieldExtractor, as_extractor
from .page import Page

PatternLike = Union[str, Pattern[str]]


def _compile_all(patterns: Union[PatternLike, Iterable[PatternLike], None]) -> Tuple[Pattern[str], ...]:
    if patterns is None:
        return ()
    if isinstance(patterns, (str, re.Pattern)):
        patterns = [patterns]
    try:
        return tuple(re.compile(p) if isinstance(p, str) else p for p in patterns)
    except re.error as exc:
        raise ConfigurationError(f"invalid URL pattern: {exc}") from exc


class UrlPattern:
    """Allow/deny regex sets over URLs.

    A URL matches when it is matched (``re.search``) by at least one allow
    pattern, or the allow set is empty, and by no deny pattern.
    """

    def __init__(
        self,
        allow: Union[PatternLike, Iterable[PatternLike], None] = None,
        deny: Union[PatternLike, Iterable[PatternLike], None] = None,
    ):
        self.allow = _compile_all(allow)
        self.deny = _compile_all(deny)

    def matches(self, url: str) -> bool:
        if any(p.search(url) for p in self.deny):
            return False
        return not self.allow or any(p.search(url) for p in self.allow)

    def __repr__(self) -> str:
        allow = [p.pattern for p in self.allow]
        deny = [p.pattern for p in self.deny]
        return f"UrlPattern(allow={allow!r}, deny={deny!r})"


class Condition(Enum):
    """What a rule does for URLs matching its pattern."""

    FOLLOW = "follow"
    PARSE = "parse"
    BOTH = "both"

    @property
    def follows(self) -> bool:
        return self in (Condition.FOLLOW, Condition.BOTH)

    @property
    def parses(self) -> bool:
        return self in (Condition.PARSE, Condition.BOTH)


@dataclass(frozen=True)
class LinkExtractor:
    """Where candidate links are found in a page."""

    css: str = "a[href]"
    attr: str = "href"
    regex: Optional[str] = None

    def extract_links(self, page: Page) -> List[str]:
        links = page.links(self.css, self.attr)
        if self.regex:
            pattern = re.compile(self.regex)
            links = [url for url in links if pattern.search(url)]
        return links


@dataclass(frozen=True)
class ParseRule:
    """A URL pattern plus what to do with it.

    FOLLOW rules filter the links discovered on every fetched page by the
    pattern. PARSE rules run their extractor on fetched pages whose URL matches
    the pattern. BOTH does both.
    """

    pattern: UrlPattern
    condition: Condition = Condition.FOLLOW
    extractor: Optional[Any] = None
    links: LinkExtractor = field(default_factory=LinkExtractor)
    name: Optional[str] = None

    @classmethod
    def follow(cls, allow: Any = None, deny: Any = None, **kwargs: Any) -> ParseRule:
        return cls(UrlPattern(allow, deny), Condition.FOLLOW, **kwargs)

    @classmethod
    def parse(cls, allow: Any, extractor: Any, deny: Any = None, **kwargs: Any) -> ParseRule:
        return cls(UrlPattern(allow, deny), Condition.PARSE, extractor=extractor, **kwargs)

    @property
    def label(self) -> str:
        return self.name or repr(self.pattern)

    def field_extractor(self) -> FieldExtractor:
        if self.extractor is None:
            raise ConfigurationError(f"rule {self.label} has no extractor")
        return as_extractor(self.extractor)


def validate_rules(rules: Sequence[ParseRule]) -> None:
    """Reject rule sets that cannot work; raises ConfigurationError."""
    if not rules:
        raise ConfigurationError("rule set is empty")
    for rule in rules:
        if not isinstance(rule, ParseRule):
            raise ConfigurationError(f"not a ParseRule: {rule!r}")
        if rule.condition.parses:
            if rule.extractor is None:
                raise ConfigurationError(f"parse rule {rule.label} has no extractor")
            try:
                as_extractor(rule.extractor)
            except TypeError as exc:
                raise ConfigurationError(str(exc)) from exc
