"""
Parsed view of an HTML response.
"""

from __future__ import annotations

import re
from functools import cached_property
from typing import List, Optional, Pattern, Union
from urllib.parse import urldefrag, urljoin, urlsplit

from selectolax.parser import HTMLParser, Node

from vortex.protocols import Response


def absolutize(base_url: str, href: str) -> Optional[str]:
    """Resolve ``href`` against ``base_url``; None for non-HTTP(S) targets."""
    href = href.strip()
    if not href or href.startswith(("javascript:", "mailto:", "tel:", "data:")):
        return None
    try:
        url, _fragment = urldefrag(urljoin(base_url, href))
        scheme = urlsplit(url).scheme
    except ValueError:
        return None  # malformed, e.g. an unbalanced IPv6 bracket
    if scheme not in ("http", "https"):
        return None
    return url


class Page:
    """A decoded response with a selectolax tree.

    Construction decodes the body strictly, so an undecodable response raises
    ``UnicodeDecodeError`` here rather than producing garbled fields later.
    """

    def __init__(self, response: Response):
        self.response = response
        self.url = response.url
        self.text = response.text()
        self.tree = HTMLParser(self.text)

    @cached_property
    def base_url(self) -> str:
        base = self.tree.css_first("base[href]")
        if base is not None:
            href = base.attributes.get("href")
            if href:
                return absolutize(self.url, href) or self.url
        return self.url

    @cached_property
    def title(self) -> Optional[str]:
        node = self.tree.css_first("title")
        return node.text(strip=True) if node is not None else None

    def css(self, selector: str) -> List[Node]:
        return self.tree.css(selector)

    def css_first(self, selector: str) -> Optional[Node]:
        return self.tree.css_first(selector)

    def regex(self, pattern: Union[str, Pattern[str]], group: Union[int, str] = 0) -> List[str]:
        compiled = re.compile(pattern) if isinstance(pattern, str) else pattern
        return [match.group(group) for match in compiled.finditer(self.text)]

    def links(self, selector: str = "a[href]", attr: str = "href") -> List[str]:
        """Absolute HTTP(S) links in document order, fragments removed, no repeats."""
        seen = set()
        links: List[str] = []
        for node in self.tree.css(selector):
            href = node.attributes.get(attr)
            if not href:
                continue
            url = absolutize(self.base_url, href)
            if url is None or url in seen:
                continue
            seen.add(url)
            links.append(url)
        return links

    def __repr__(self) -> str:
        return f"<Page url={self.url!r}>"

