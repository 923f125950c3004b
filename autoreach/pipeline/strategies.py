"""
Contact-page detection strategies.

Each strategy reads an immutable snapshot of the landing page plus the shared
static fetcher and returns its own candidate list; the PageClassifier merges
them. Strategies never touch the browser tab.
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple
from urllib.parse import urljoin, urlparse, urlunparse

import httpx
from selectolax.parser import HTMLParser

from ..config import ClassifierConfig
from ..schemas import DetectionCandidate, DetectionMethod
from .classifier import ContentClassifier, heuristic_verdict
from .fetchers.static import StaticFetcher
from .vocabulary import (
    CONTACT_INFO_MARKERS,
    CONTACT_LINK_WORDS,
    CONTACT_PATH_PATTERNS,
    CONTENT_KEYWORDS,
    FOOTER_LINK_WORDS,
    FORM_MARKERS,
    contains_any,
    infer_page_type,
)

logger = logging.getLogger(__name__)

FOOTER_SELECTORS = "footer, [class*=footer], [id*=footer]"
_LOC_RE = re.compile(r"<loc>\s*([^<\s]+)\s*</loc>", re.I)


@dataclass(frozen=True)
class LandingPage:
    """Snapshot of the rendered landing page shared by all strategies."""
    base_url: str
    url: str
    html: str
    title: str
    subject_name: str = ""

    @property
    def root(self) -> str:
        p = urlparse(self.url or self.base_url)
        return f"{p.scheme}://{p.netloc}"


def candidate_key(url: str) -> str:
    """Dedupe key: lowercase, no fragment, no trailing slash."""
    p = urlparse(url.strip().lower())
    path = p.path.rstrip("/")
    return urlunparse(p._replace(path=path, fragment=""))


def _host(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def same_site(base: str, url: str) -> bool:
    return _host(base) == _host(url)


def collect_links(
    parser_nodes,
    page_url: str,
    words: Sequence[str],
    limit: int,
) -> List[Tuple[str, str]]:
    """(absolute url, anchor text) pairs whose text or href use `words`."""
    out: List[Tuple[str, str]] = []
    seen = {candidate_key(page_url)}
    for a in parser_nodes:
        href = ((a.attrs or {}).get("href") or "").strip()
        if not href or href.startswith(("#", "javascript:", "mailto:", "tel:")):
            continue
        text = " ".join((a.text() or "").split())
        if not (contains_any(text, words) or contains_any(href, words)):
            continue
        abs_url = urljoin(page_url, href)
        if urlparse(abs_url).scheme not in ("http", "https") or not same_site(page_url, abs_url):
            continue
        key = candidate_key(abs_url)
        if key in seen:
            continue
        seen.add(key)
        out.append((abs_url, text))
        if len(out) >= limit:
            break
    return out


class Strategy:
    method: DetectionMethod
    name: str = ""

    def __init__(self, fetcher: StaticFetcher, config: ClassifierConfig) -> None:
        self.fetcher = fetcher
        self.config = config

    def run(self, page: LandingPage) -> List[DetectionCandidate]:
        raise NotImplementedError

    def verify(
        self,
        url: str,
        *,
        timeout_s: float,
        form_confidence: int,
        info_confidence: int,
        reasoning: str,
        anchor_text: str = "",
    ) -> Optional[DetectionCandidate]:
        """Fetch `url` and accept it only if it shows form or contact markers."""
        res = self.fetcher.fetch(url, timeout_s=timeout_s)
        if not res.ok or not res.html:
            return None
        parser = HTMLParser(res.html)
        title_node = parser.css_first("title")
        title = (title_node.text() or "").strip() if title_node else ""
        body = parser.body
        text = (body.text(separator=" ") if body is not None else "").lower()
        has_form = parser.css_first("form") is not None or contains_any(text, FORM_MARKERS)
        has_info = contains_any(text, CONTACT_INFO_MARKERS)
        if not (has_form or has_info):
            return None
        return DetectionCandidate(
            url=res.url,
            title=title or anchor_text or "Contact Page",
            confidence=form_confidence if has_form else info_confidence,
            method=self.method,
            has_form=has_form,
            has_contact_info=has_info,
            page_type=infer_page_type(res.url, title, anchor_text),
            reasoning=f"{reasoning} with {'form' if has_form else 'contact info'}",
        )

    def verify_all(self, links: List[Tuple[str, str, str]], *, timeout_s: float, form_confidence: int, info_confidence: int) -> List[DetectionCandidate]:
        """Verify (url, anchor text, reasoning) triples; failures skip that link only."""
        if not links:
            return []
        out: List[DetectionCandidate] = []
        workers = min(len(links), self.config.probe_workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=self.name or "verify") as pool:
            futures = [
                (url, pool.submit(
                    self.verify, url,
                    timeout_s=timeout_s,
                    form_confidence=form_confidence,
                    info_confidence=info_confidence,
                    reasoning=reasoning,
                    anchor_text=text,
                ))
                for url, text, reasoning in links
            ]
            for url, fut in futures:
                try:
                    cand = fut.result()
                except Exception as e:
                    logger.debug("%s: could not verify %s: %s", self.name, url, e)
                    continue
                if cand is not None:
                    out.append(cand)
        return out


class PatternProbe(Strategy):
    """HEAD-probe a table of localized contact paths; a 2xx is a candidate."""
    method = DetectionMethod.PATTERN_PROBE
    name = "pattern_probe"

    def __init__(self, fetcher: StaticFetcher, config: ClassifierConfig, patterns=None) -> None:
        super().__init__(fetcher, config)
        self.patterns = list(patterns if patterns is not None else CONTACT_PATH_PATTERNS)

    def _probe(self, url: str) -> int:
        return self.fetcher.head(url, timeout_s=self.config.probe_timeout_s)

    def run(self, page: LandingPage) -> List[DetectionCandidate]:
        root = page.root
        out: List[DetectionCandidate] = []
        with ThreadPoolExecutor(max_workers=self.config.probe_workers, thread_name_prefix="probe") as pool:
            futures = [
                (path, page_type, confidence, root + path, pool.submit(self._probe, root + path))
                for path, page_type, confidence in self.patterns
            ]
            for path, page_type, confidence, url, fut in futures:
                try:
                    status = fut.result()
                except Exception as e:
                    logger.debug("probe %s failed: %s", url, e)
                    continue
                if 200 <= status < 300:
                    out.append(DetectionCandidate(
                        url=url,
                        title=f"Contact Page - {path}",
                        confidence=confidence,
                        method=self.method,
                        has_form=False,
                        has_contact_info=False,
                        page_type=page_type,
                        reasoning=f"URL pattern {path} responded {status}",
                    ))
        return out


class ContentScan(Strategy):
    """Ask the content classifier about the landing page when it uses contact vocabulary."""
    method = DetectionMethod.CONTENT_SCAN
    name = "content_scan"

    def __init__(
        self,
        fetcher: StaticFetcher,
        config: ClassifierConfig,
        classifier: Optional[ContentClassifier] = None,
    ) -> None:
        super().__init__(fetcher, config)
        self.classifier = classifier

    def _ask(self, page: LandingPage, excerpt: str):
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="classifier")
        try:
            fut = pool.submit(self.classifier.analyze_contact_page, page.url, page.title, excerpt, page.subject_name)
            return fut.result(timeout=self.config.classifier_timeout_s)
        finally:
            # a hung classifier call is abandoned, not joined
            pool.shutdown(wait=False)

    def run(self, page: LandingPage) -> List[DetectionCandidate]:
        parser = HTMLParser(page.html or "")
        for junk in parser.css("script, style, noscript"):
            junk.decompose()
        body = parser.body
        text = " ".join((body.text(separator=" ") if body is not None else "").split())
        if not contains_any(text, CONTENT_KEYWORDS):
            return []
        excerpt = text[: self.config.excerpt_chars]
        form_count = len(parser.css("form"))
        verdict = None
        if self.classifier is not None:
            try:
                verdict = self._ask(page, excerpt)
            except FutureTimeout:
                logger.warning("content classifier timed out for %s; using heuristics", page.url)
            except Exception as e:
                logger.warning("content classifier failed for %s: %s; using heuristics", page.url, e)
        if verdict is None:
            verdict = heuristic_verdict(excerpt, form_count=form_count)
        return [DetectionCandidate(
            url=page.url,
            title=page.title or "Contact Page",
            confidence=verdict.confidence,
            method=self.method,
            has_form=verdict.has_contact_form,
            has_contact_info=verdict.has_contact_info,
            page_type=verdict.page_type,
            reasoning=verdict.reasoning,
            content_summary=verdict.content_summary or None,
        )]


class LinkTraversal(Strategy):
    """Follow same-site anchors that use contact vocabulary and verify them."""
    method = DetectionMethod.LINK_TRAVERSAL
    name = "link_traversal"

    def run(self, page: LandingPage) -> List[DetectionCandidate]:
        parser = HTMLParser(page.html or "")
        links = collect_links(parser.css("a[href]"), page.url, CONTACT_LINK_WORDS, self.config.max_link_checks)
        return self.verify_all(
            [(url, text, f'contact link "{text}"') for url, text in links],
            timeout_s=self.config.link_timeout_s,
            form_confidence=90,
            info_confidence=75,
        )


class FooterScan(Strategy):
    """Verify contact links found in the footer and in /sitemap.xml."""
    method = DetectionMethod.FOOTER_SCAN
    name = "footer_scan"

    def sitemap_links(self, page: LandingPage) -> List[str]:
        res = self.fetcher.fetch(f"{page.root}/sitemap.xml", timeout_s=self.config.footer_timeout_s)
        if not res.ok or not res.html:
            return []
        urls = []
        for loc in _LOC_RE.findall(res.html):
            if same_site(page.url, loc) and contains_any(urlparse(loc).path, CONTACT_LINK_WORDS):
                urls.append(loc)
        return urls[: self.config.max_footer_checks]

    def run(self, page: LandingPage) -> List[DetectionCandidate]:
        parser = HTMLParser(page.html or "")
        anchors = []
        for container in parser.css(FOOTER_SELECTORS):
            anchors.extend(container.css("a[href]"))
        footer = collect_links(anchors, page.url, FOOTER_LINK_WORDS, self.config.max_footer_checks)
        links = [(url, text, "contact link in footer") for url, text in footer]
        seen = {candidate_key(url) for url, _ in footer}
        try:
            sitemap = self.sitemap_links(page)
        except httpx.HTTPError as e:
            logger.debug("sitemap unavailable for %s: %s", page.root, e)
            sitemap = []
        for url in sitemap:
            if candidate_key(url) not in seen:
                seen.add(candidate_key(url))
                links.append((url, "", "contact page listed in sitemap.xml"))
        return self.verify_all(links, timeout_s=self.config.footer_timeout_s, form_confidence=85, info_confidence=70)

