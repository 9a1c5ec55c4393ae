from __future__ import annotations

import codecs
import html
import logging
from dataclasses import dataclass

from vintage_proxy.core.models import ServableAsset

logger = logging.getLogger(__name__)


# Typographic characters that single-byte charsets usually lack.
_ASCII_FALLBACKS = str.maketrans(
    {
        "\u2018": "'",
        "\u2019": "'",
        "\u201a": ",",
        "\u201c": '"',
        "\u201d": '"',
        "\u201e": '"',
        "\u2013": "-",
        "\u2014": "--",
        "\u2026": "...",
        "\u2022": "*",
        "\u00a0": " ",
        "\u200b": "",
    }
)


@dataclass(frozen=True)
class RenderExtras:
    request_origin: str = ""
    original_href: str | None = None
    logo: ServableAsset | None = None
    search_action: str | None = None
    heading: bool = True


class LegacyRenderer:
    """Assembles the fixed document skeleton and encodes it for legacy browsers.

    The charset token in the meta tag and in ``content_type`` come from the same
    attribute so they cannot disagree.
    """

    def __init__(self, *, charset: str = "ISO-8859-1", errors: str = "replace") -> None:
        codecs.lookup(charset)
        self._charset = charset
        self._errors = errors

    @property
    def charset(self) -> str:
        return self._charset

    @property
    def content_type(self) -> str:
        return f"text/html; charset={self._charset}"

    def encode(self, text: str) -> bytes:
        text = text.translate(_ASCII_FALLBACKS)
        try:
            return text.encode(self._charset)
        except UnicodeEncodeError as e:
            logger.debug("Lossy %s encoding (first unmappable char %r)", self._charset, e.object[e.start : e.end])
            return text.encode(self._charset, errors=self._errors)

    def render(self, title: str, body_markup: str, extras: RenderExtras | None = None) -> bytes:
        extras = extras or RenderExtras()
        safe_title = html.escape(title or "Page", quote=False)
        parts = [
            "<!DOCTYPE html>\n",
            "<html>\n",
            "<head>\n",
            f'<meta charset="{self._charset}">\n',
            f"<title>{safe_title}</title>\n",
            "</head>\n",
            "<body>\n",
        ]
        if extras.original_href:
            parts.append(self._toolbar(extras.original_href))
        if extras.logo is not None or extras.search_action:
            parts.append(self._header(safe_title, extras))
        elif extras.heading and title:
            parts.append(f"<h1>{safe_title}</h1>\n")
        parts.append(body_markup)
        parts.append("\n</body>\n</html>\n")
        return self.encode("".join(parts))

    @staticmethod
    def _toolbar(original_href: str) -> str:
        href = html.escape(original_href)
        return (
            '<table width="100%" border="0" cellpadding="4" cellspacing="0" bgcolor="#333333"><tr>'
            f'<td align="center"><a href="{href}"><font color="#FFFFFF"><b>View Original Page</b></font></a></td>'
            "</tr></table>\n"
        )

    @staticmethod
    def _header(safe_title: str, extras: RenderExtras) -> str:
        cells: list[str] = []
        if extras.logo is not None:
            src = html.escape(f"{extras.request_origin.rstrip('/')}{extras.logo.servable_path}")
            size = ""
            if extras.logo.width and extras.logo.height:
                size = f' width="{extras.logo.width}" height="{extras.logo.height}"'
            cells.append(f'<td width="60" align="center" valign="middle"><img src="{src}"{size} alt="" border="0"></td>')
        cells.append(f'<td align="left" valign="middle"><font size="5"><b>{safe_title}</b></font></td>')
        if extras.search_action:
            action = html.escape(extras.search_action)
            cells.append(
                '<td width="250" align="right" valign="middle">'
                f'<form method="get" action="{action}">'
                '<input type="text" maxlength="128" name="keys" size="15">'
                '<input type="submit" value="Search"></form></td>'
            )
        return (
            '<table width="100%" border="0" cellpadding="4" cellspacing="0"><tr>'
            + "".join(cells)
            + "</tr></table>\n<hr>\n"
        )
