"""
Multi-strategy contact page classifier.

The landing page is rendered once; the four strategies then run in parallel
against that snapshot. Each strategy owns its candidate list and a failing
strategy contributes nothing. The merge below is the only point where
results meet.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from selectolax.parser import HTMLParser

from ..config import ClassifierConfig
from ..schemas import ClassificationResult, DetectionCandidate
from .classifier import ContentClassifier
from .fetchers.static import StaticFetcher
from .strategies import (
    ContentScan,
    FooterScan,
    LandingPage,
    LinkTraversal,
    PatternProbe,
    Strategy,
    candidate_key,
)

logger = logging.getLogger(__name__)

# Returns (final url, html, title) of the landing page as rendered in a tab.
RenderFn = Callable[[], Tuple[str, str, str]]


def merge_candidates(candidates: Iterable[DetectionCandidate], min_confidence: int = 0) -> List[DetectionCandidate]:
    """Rank by confidence and keep the first (highest) entry per normalized URL.

    The sort is stable, so equal confidences keep strategy order.
    """
    ranked = sorted(candidates, key=lambda c: -c.confidence)
    seen = set()
    out: List[DetectionCandidate] = []
    for cand in ranked:
        if cand.confidence < min_confidence:
            continue
        key = candidate_key(cand.url)
        if key in seen:
            continue
        seen.add(key)
        out.append(cand)
    return out


class PageClassifier:
    def __init__(
        self,
        *,
        fetcher: Optional[StaticFetcher] = None,
        config: Optional[ClassifierConfig] = None,
        classifier: Optional[ContentClassifier] = None,
        strategies: Optional[Sequence[Strategy]] = None,
    ) -> None:
        self.config = config or ClassifierConfig()
        self.fetcher = fetcher or StaticFetcher(
            timeout_s=self.config.fetch_timeout_s,
            respect_robots=self.config.respect_robots,
        )
        if strategies is None:
            strategies = [
                PatternProbe(self.fetcher, self.config),
                ContentScan(self.fetcher, self.config, classifier),
                LinkTraversal(self.fetcher, self.config),
                FooterScan(self.fetcher, self.config),
            ]
        self.strategies = list(strategies)

    def landing_page(self, base_url: str, subject_name: str = "", render: Optional[RenderFn] = None) -> LandingPage:
        if render is not None:
            try:
                url, html, title = render()
                return LandingPage(base_url=base_url, url=url or base_url, html=html or "", title=title or "", subject_name=subject_name)
            except Exception as e:
                logger.warning("rendered snapshot of %s unavailable (%s); fetching statically", base_url, e)
        try:
            res = self.fetcher.fetch(base_url)
        except Exception as e:
            # Pattern probes still work without landing content
            logger.warning("static fetch of %s failed: %s", base_url, e)
            return LandingPage(base_url=base_url, url=base_url, html="", title="", subject_name=subject_name)
        html = res.html or ""
        title_node = HTMLParser(html).css_first("title") if html else None
        title = (title_node.text() or "").strip() if title_node else ""
        return LandingPage(base_url=base_url, url=res.url or base_url, html=html, title=title, subject_name=subject_name)

    def classify(self, base_url: str, subject_name: str = "", render: Optional[RenderFn] = None) -> ClassificationResult:
        start = time.perf_counter()
        page = self.landing_page(base_url, subject_name, render)
        collected: List[DetectionCandidate] = []
        errors: Dict[str, str] = {}
        with ThreadPoolExecutor(max_workers=max(1, len(self.strategies)), thread_name_prefix="strategy") as pool:
            futures = [(s, pool.submit(s.run, page)) for s in self.strategies]
            for strategy, fut in futures:
                name = strategy.name or type(strategy).__name__
                try:
                    found = fut.result()
                except Exception as e:
                    logger.warning("strategy %s failed for %s: %s", name, base_url, e)
                    errors[name] = str(e) or type(e).__name__
                    continue
                logger.debug("strategy %s produced %d candidates", name, len(found))
                collected.extend(found)
        candidates = merge_candidates(collected, self.config.min_confidence)
        return ClassificationResult(
            base_url=base_url,
            candidates=candidates,
            errors=errors,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )

    def close(self) -> None:
        self.fetcher.close()
