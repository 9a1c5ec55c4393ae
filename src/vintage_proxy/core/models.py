from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from bs4 import BeautifulSoup, UnicodeDammit
from bs4.dammit import EntitySubstitution
from bs4.formatter import HTMLFormatter

# Minimal escaping and no XHTML-style "<br/>" for legacy HTML parsers.
LEGACY_HTML_FORMATTER = HTMLFormatter(
    entity_substitution=EntitySubstitution.substitute_xml,
    void_element_close_prefix=None,
)


@dataclass(frozen=True)
class FetchResult:
    url: str
    final_url: str
    status: int
    content_type: str
    charset: str | None
    body: bytes

    @property
    def text(self) -> str:
        if self.charset:
            try:
                return self.body.decode(self.charset, errors="replace")
            except LookupError:
                pass
        dammit = UnicodeDammit(self.body, is_html=True)
        if dammit.unicode_markup is not None:
            return dammit.unicode_markup
        return self.body.decode("utf-8", errors="replace")


@dataclass
class DocumentTree:
    soup: BeautifulSoup
    base_url: str
    title: str = ""

    def body_markup(self) -> str:
        body = self.soup.body
        if body is None:
            return self.soup.decode(formatter=LEGACY_HTML_FORMATTER)
        return body.decode_contents(formatter=LEGACY_HTML_FORMATTER)


@dataclass(frozen=True)
class ExtractedArticle:
    title: str
    content: DocumentTree


class AssetRole(str, Enum):
    IMAGE = "image"
    LOGO = "logo"


@dataclass(frozen=True)
class AssetReference:
    source_url: str
    role: AssetRole
    origin_hint: str = ""


@dataclass(frozen=True)
class CacheEntry:
    content_hash: str
    stored_path: Path
    format: str
    width: int
    height: int


@dataclass(frozen=True)
class ServableAsset:
    source_url: str
    servable_path: str
    width: int | None = None
    height: int | None = None
    passthrough: bool = False


@dataclass(frozen=True)
class RelayResponse:
    status: int
    body: bytes
    content_type: str = "text/plain"
    location: str | None = None
