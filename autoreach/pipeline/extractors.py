"""
Contact Content Extraction - emails, phones, links, forms, tables, metadata

Works on a static HTML snapshot (selectolax), so the same extractor serves
rendered tab content and statically fetched pages.
"""

import html as html_lib
import re
from typing import List, Optional, Set
from urllib.parse import urljoin, urlparse

from selectolax.parser import HTMLParser, Node

from ..schemas import ExtractedContent, LinkInfo, PageMetadata, TableInfo
from .forms import parse_forms
from .vocabulary import CONTACT_LINK_WORDS, contains_any


class ContentExtractor:
    """Extracts structured contact data from a page."""

    def __init__(self, max_table_rows: int = 50, max_links: int = 500):
        self.max_table_rows = max_table_rows
        self.max_links = max_links

        self.email_pattern = re.compile(
            r'\b[a-z0-9._%+-]+@[a-z0-9.-]+\.[a-z]{2,}\b', re.IGNORECASE
        )

        # International, North American and Japanese layouts
        self.phone_patterns = [
            re.compile(r'\+\d{1,3}[\s.-]?\(?\d{1,4}\)?(?:[\s.-]?\d{1,4}){1,4}'),
            re.compile(r'\(?\b\d{3}\)?[\s.-]\d{3}[\s.-]\d{4}\b'),
            re.compile(r'\b0\d{1,4}-\d{1,4}-\d{3,4}\b'),
            re.compile(r'\b0120-?\d{2,3}-?\d{3}\b'),
        ]

        # Image/asset suffixes that look like addresses (logo@2x.png)
        self._asset_suffixes = ('.png', '.jpg', '.jpeg', '.gif', '.svg', '.webp', '.css', '.js')

    # -------------------------
    # Emails
    # -------------------------
    def _deobfuscate_email(self, text: str) -> Optional[str]:
        """Best-effort deobfuscation: (at)/[at] -> @, (dot)/[dot] -> ."""
        if not text:
            return None
        s = html_lib.unescape(str(text)).replace('\u200b', '')
        s = re.sub(r"(?i)\s*[\(\[]at[\)\]]\s*", "@", s)
        s = re.sub(r"(?i)\s*[\(\[]dot[\)\]]\s*", ".", s)
        s = re.sub(r"(?i)mailto:\s*", "", s)
        m = self.email_pattern.search(s)
        return m.group(0) if m else None

    def _valid_email(self, email: str) -> bool:
        e = email.lower()
        return not e.endswith(self._asset_suffixes)

    def extract_emails(self, parser: HTMLParser, text: str) -> List[str]:
        found: List[str] = []
        seen: Set[str] = set()

        def _add(candidate: Optional[str]) -> None:
            if not candidate:
                return
            c = candidate.strip().lower()
            if c and c not in seen and self._valid_email(c):
                seen.add(c)
                found.append(c)

        for a in parser.css('a[href^="mailto:"], a[href^="MAILTO:"]'):
            href = (a.attrs or {}).get("href") or ""
            raw = href[7:].split('?', 1)[0].split('#', 1)[0]
            m = self.email_pattern.match(raw.strip())
            _add(m.group(0) if m else self._deobfuscate_email(a.text() or ""))
        for m in self.email_pattern.finditer(text):
            _add(m.group(0))
        # Obfuscated forms: "info (at) example (dot) com"
        for m in re.finditer(r"[\w.+-]+\s*[\(\[]at[\)\]]\s*[\w.-]+(?:\s*[\(\[]dot[\)\]]\s*\w+)+", text, re.I):
            _add(self._deobfuscate_email(m.group(0)))
        return found

    # -------------------------
    # Phones
    # -------------------------
    def extract_phones(self, parser: HTMLParser, text: str) -> List[str]:
        found: List[str] = []
        seen: Set[str] = set()

        def _add(raw: str) -> None:
            digits = re.sub(r"\D", "", raw)
            if not (7 <= len(digits) <= 15):
                return
            # "+1 555 123 4567" and "555 123 4567" are the same number
            if any(d.endswith(digits) for d in seen):
                return
            seen.add(digits)
            found.append(raw.strip())

        for a in parser.css('a[href^="tel:"]'):
            _add(((a.attrs or {}).get("href") or "")[4:])
        for pattern in self.phone_patterns:
            for m in pattern.finditer(text):
                _add(m.group(0))
        return found

    # -------------------------
    # Links
    # -------------------------
    def extract_links(self, parser: HTMLParser, source_url: str) -> List[LinkInfo]:
        out: List[LinkInfo] = []
        seen: Set[str] = set()
        for a in parser.css("a[href]"):
            href = ((a.attrs or {}).get("href") or "").strip()
            if not href or href.startswith(("#", "javascript:", "mailto:", "tel:")):
                continue
            abs_url = urljoin(source_url, href)
            if urlparse(abs_url).scheme not in ("http", "https"):
                continue
            if abs_url in seen:
                continue
            seen.add(abs_url)
            text = " ".join((a.text() or "").split())
            out.append(LinkInfo(
                text=text,
                url=abs_url,
                is_contact=contains_any(text, CONTACT_LINK_WORDS) or contains_any(href, CONTACT_LINK_WORDS),
            ))
            if len(out) >= self.max_links:
                break
        return out

    # -------------------------
    # Tables
    # -------------------------
    def _table_selector(self, table: Node, index: int) -> str:
        attrs = table.attrs or {}
        if attrs.get("id"):
            return f'table[id="{attrs["id"]}"]'
        return f"table >> nth={index}"

    def extract_tables(self, parser: HTMLParser) -> List[TableInfo]:
        tables: List[TableInfo] = []
        for index, table in enumerate(parser.css("table")):
            rows: List[List[str]] = []
            for tr in table.css("tr"):
                cells = [" ".join((c.text() or "").split()) for c in tr.css("th, td")]
                if cells:
                    rows.append(cells)
            if not rows:
                continue
            tables.append(TableInfo(
                selector=self._table_selector(table, index),
                rows=len(rows),
                columns=max(len(r) for r in rows),
                data=rows[: self.max_table_rows],
            ))
        return tables

    # -------------------------
    # Metadata
    # -------------------------
    def extract_metadata(self, parser: HTMLParser) -> PageMetadata:
        title_node = parser.css_first("title")
        title = (title_node.text() or "").strip() if title_node else ""
        description = None
        keywords: List[str] = []
        for meta in parser.css("meta"):
            attrs = meta.attrs or {}
            name = (attrs.get("name") or attrs.get("property") or "").lower()
            content = (attrs.get("content") or "").strip()
            if not content:
                continue
            if name in ("description", "og:description") and description is None:
                description = content
            elif name == "keywords":
                keywords = [k.strip() for k in content.split(",") if k.strip()]
        return PageMetadata(title=title, description=description, keywords=keywords)

    def extract(self, html: str, source_url: str) -> ExtractedContent:
        parser = HTMLParser(html or "")
        for junk in parser.css("script, style, noscript"):
            junk.decompose()
        body = parser.body
        raw_text = body.text(separator=" ") if body is not None else ""
        text = " ".join(raw_text.split())
        links = self.extract_links(parser, source_url)
        return ExtractedContent(
            source_url=source_url,
            emails=self.extract_emails(parser, text),
            phones=self.extract_phones(parser, text),
            contact_links=[l.url for l in links if l.is_contact],
            links=links,
            forms=parse_forms(html),
            tables=self.extract_tables(parser),
            metadata=self.extract_metadata(parser),
            text=text,
        )
