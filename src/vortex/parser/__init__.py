"""Link discovery and structured extraction from fetched pages."""

from .extractors import CallableExtractor, CssField, Field, FieldExtractor, FieldSet, RegexField, as_extractor
from .page import Page, absolutize
from .parser import ExtractionFailure, ParseResult, Parser
from .rules import Condition, LinkExtractor, ParseRule, UrlPattern, validate_rules

__all__ = [
    "CallableExtractor",
    "Condition",
    "CssField",
    "ExtractionFailure",
    "Field",
    "FieldExtractor",
    "FieldSet",
    "LinkExtractor",
    "Page",
    "ParseResult",
    "ParseRule",
    "Parser",
    "RegexField",
    "UrlPattern",
    "absolutize",
    "as_extractor",
    "validate_rules",
]
