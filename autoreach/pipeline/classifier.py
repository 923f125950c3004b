from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel, Field, ValidationError

from ..schemas import PageType
from .vocabulary import CONTENT_KEYWORDS, FORM_MARKERS, contains_any

logger = logging.getLogger(__name__)


class ClassifierVerdict(BaseModel):
    """Answer of a content classifier for one page excerpt."""
    confidence: int = Field(..., ge=0, le=100)
    has_contact_form: bool = False
    has_contact_info: bool = False
    page_type: PageType = PageType.OTHER
    content_summary: str = ""
    reasoning: str = ""


class ContentClassifier(Protocol):
    def analyze_contact_page(self, url: str, title: str, excerpt: str, subject_name: str) -> ClassifierVerdict: ...


def heuristic_verdict(excerpt: str, *, form_count: int) -> ClassifierVerdict:
    """Pattern-based verdict used when no classifier answers."""
    has_form = form_count > 0
    has_contact_content = contains_any(excerpt, CONTENT_KEYWORDS) or contains_any(excerpt, FORM_MARKERS)
    return ClassifierVerdict(
        confidence=80 if has_form else 65 if has_contact_content else 50,
        has_contact_form=has_form,
        has_contact_info=has_contact_content,
        page_type=PageType.CONTACT,
        content_summary=f"Found {form_count} forms, contact content: {has_contact_content}",
        reasoning="pattern-based analysis (classifier unavailable)",
    )


class HttpContentClassifier:
    """Content classifier served over HTTP.

    POSTs {url, title, excerpt, subject_name} as JSON and expects a body with
    the ClassifierVerdict fields. Any transport or schema error propagates so
    the caller can fall back.
    """

    def __init__(self, endpoint: str, *, timeout_s: float = 15.0, api_key: Optional[str] = None) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.endpoint = endpoint
        self._client = httpx.Client(timeout=timeout_s, headers=headers)

    def close(self) -> None:
        self._client.close()

    def analyze_contact_page(self, url: str, title: str, excerpt: str, subject_name: str) -> ClassifierVerdict:
        resp = self._client.post(
            self.endpoint,
            json={"url": url, "title": title, "excerpt": excerpt, "subject_name": subject_name},
        )
        resp.raise_for_status()
        try:
            return ClassifierVerdict.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            logger.warning("classifier returned an unusable body for %s: %s", url, e)
            raise
