"""
Vortex - an asynchronous, rule-driven web crawl engine.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config, CrawlStrategy
from .engine import CrawlSummary, Crawler, EngineState
from .parser import Condition, CssField, FieldSet, ParseRule, RegexField, UrlPattern
from .protocols import Outcome, OutcomeKind, Record, Request, Response
from .sinks import LoggingSink, MemorySink
from .spider import Spider

__all__ = [
    "__version__",
    "Condition",
    "Config",
    "CrawlStrategy",
    "CrawlSummary",
    "Crawler",
    "CssField",
    "EngineState",
    "FieldSet",
    "LoggingSink",
    "MemorySink",
    "Outcome",
    "OutcomeKind",
    "ParseRule",
    "Record",
    "RegexField",
    "Request",
    "Response",
    "Spider",
    "UrlPattern",
]
