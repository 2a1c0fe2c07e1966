"""
Spider bundle: what to crawl and how to process it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional, Tuple

from vortex.config.config import Config
from vortex.exceptions import ConfigurationError
from vortex.parser.rules import ParseRule, validate_rules
from vortex.protocols import Request


@dataclass(frozen=True)
class Spider:
    """Start requests, rules and settings for one crawl."""

    name: str
    start_requests: Tuple[Request, ...]
    rules: Tuple[ParseRule, ...]
    config: Config = field(default_factory=Config)

    @classmethod
    def from_urls(
        cls,
        name: str,
        urls: Iterable[str],
        rules: Iterable[ParseRule],
        config: Optional[Config] = None,
    ) -> Spider:
        return cls(
            name=name,
            start_requests=tuple(Request(url=url, depth=0) for url in urls),
            rules=tuple(rules),
            config=config or Config(),
        )

    def validate(self) -> None:
        """Raise ConfigurationError if the crawl cannot start."""
        if not self.name:
            raise ConfigurationError("spider needs a name")
        if not self.start_requests:
            raise ConfigurationError(f"spider {self.name!r} has no start requests")
        for request in self.start_requests:
            if request.scheme not in ("http", "https") or not request.host:
                raise ConfigurationError(f"start URL is not an absolute HTTP(S) URL: {request.url!r}")
        validate_rules(self.rules)
