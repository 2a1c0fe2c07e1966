"""
Field extractors turning a parsed page into record fields.

Anything with an ``extract(page)`` method, or any plain callable taking a
page, can serve as a rule's extractor. Results may be a mapping (one record),
a list of mappings (several records) or None (nothing extracted).
"""

from __future__ import annotations

import re
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Union, runtime_checkable

from selectolax.parser import HTMLParser, Node

from vortex.protocols import FieldValue

from .page import Page

ExtractedFields = Union[Mapping[str, FieldValue], Sequence[Mapping[str, FieldValue]], None]
Scope = Union[HTMLParser, Node]


@runtime_checkable
class FieldExtractor(Protocol):
    """Pluggable page-to-fields strategy."""

    def extract(self, page: Page) -> ExtractedFields: ...


class Field:
    """A single named value read from a scope (the whole page or a node)."""

    def __init__(self, name: str, *, many: bool = False, default: FieldValue = None):
        self.name = name
        self.many = many
        self.default = default

    def value(self, scope: Scope, page: Page) -> FieldValue:
        raise NotImplementedError

    def _shape(self, values: List[str]) -> FieldValue:
        if self.many:
            return values
        return values[0] if values else self.default


class CssField(Field):
    """Text (or an attribute) of the nodes matching a CSS selector."""

    def __init__(
        self,
        name: str,
        selector: str,
        *,
        attr: Optional[str] = None,
        many: bool = False,
        default: FieldValue = None,
        transform: Optional[Callable[[str], str]] = None,
    ):
        super().__init__(name, many=many, default=default)
        self.selector = selector
        self.attr = attr
        self.transform = transform

    def value(self, scope: Scope, page: Page) -> FieldValue:
        values: List[str] = []
        for node in scope.css(self.selector):
            raw = node.attributes.get(self.attr) if self.attr else node.text(strip=True)
            if raw is None:
                continue
            values.append(self.transform(raw) if self.transform else raw)
        return self._shape(values)

    def __repr__(self) -> str:
        return f"CssField({self.name!r}, {self.selector!r})"


class RegexField(Field):
    """Regex matches over the page text, or over a node's HTML when scoped."""

    def __init__(
        self,
        name: str,
        pattern: Union[str, "re.Pattern[str]"],
        *,
        group: Union[int, str] = 0,
        many: bool = False,
        default: FieldValue = None,
    ):
        super().__init__(name, many=many, default=default)
        self.pattern = re.compile(pattern) if isinstance(pattern, str) else pattern
        self.group = group

    def value(self, scope: Scope, page: Page) -> FieldValue:
        if scope is page.tree:
            return self._shape(page.regex(self.pattern, self.group))
        return self._shape([match.group(self.group) for match in self.pattern.finditer(scope.html or "")])

    def __repr__(self) -> str:
        return f"RegexField({self.name!r}, {self.pattern.pattern!r})"


class FieldSet(Field):
    """Ordered group of fields producing a record.

    With ``scope`` set, one record is built per node matching the selector; as
    a nested field that yields a list of nested records.
    """

    def __init__(self, *fields: Field, name: str = "", scope: Optional[str] = None):
        super().__init__(name, many=scope is not None)
        if not fields:
            raise ValueError("FieldSet needs at least one field")
        names = [f.name for f in fields]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate field names in FieldSet: {names}")
        self.fields = fields
        self.scope = scope

    def _build(self, scope: Scope, page: Page) -> Dict[str, FieldValue]:
        return {f.name: f.value(scope, page) for f in self.fields}

    def value(self, scope: Scope, page: Page) -> FieldValue:
        if self.scope is None:
            return self._build(scope, page)
        return [self._build(node, page) for node in scope.css(self.scope)]

    def extract(self, page: Page) -> ExtractedFields:
        return self.value(page.tree, page)  # type: ignore[return-value]


class CallableExtractor:
    """Wraps a plain function ``fn(page) -> fields``."""

    def __init__(self, fn: Callable[[Page], ExtractedFields], name: Optional[str] = None):
        self.fn = fn
        self.name = name or getattr(fn, "__name__", "callable")

    def extract(self, page: Page) -> ExtractedFields:
        return self.fn(page)

    def __repr__(self) -> str:
        return f"CallableExtractor({self.name!r})"


def as_extractor(candidate: Any) -> FieldExtractor:
    """Coerce a rule's extractor argument into a FieldExtractor."""
    if isinstance(candidate, FieldExtractor):
        return candidate
    if callable(candidate):
        return CallableExtractor(candidate)
    raise TypeError(f"not an extractor: {candidate!r}")
