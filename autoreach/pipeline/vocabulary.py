"""
Multilingual contact vocabulary shared by the detection strategies, the
content extractor and the form handler (EN / JA / ES / DE / FR).
"""

from __future__ import annotations

from typing import Iterable, List, Tuple

from ..schemas import PageType


# (path, page_type, confidence) probed by the pattern strategy, most specific first.
CONTACT_PATH_PATTERNS: List[Tuple[str, PageType, int]] = [
    ("/contact", PageType.CONTACT, 85),
    ("/contact-us", PageType.CONTACT, 85),
    ("/contactus", PageType.CONTACT, 85),
    ("/get-in-touch", PageType.CONTACT, 85),
    ("/reach-us", PageType.CONTACT, 85),
    ("/about/contact", PageType.CONTACT, 85),
    ("/support/contact", PageType.CONTACT, 85),
    ("/help/contact", PageType.CONTACT, 85),
    ("/contact-form", PageType.CONTACT, 85),
    ("/contact/form", PageType.CONTACT, 85),
    ("/write-to-us", PageType.CONTACT, 85),
    ("/お問い合わせ", PageType.CONTACT, 85),
    ("/連絡先", PageType.CONTACT, 85),
    ("/コンタクト", PageType.CONTACT, 85),
    ("/contacto", PageType.CONTACT, 85),
    ("/kontakt", PageType.CONTACT, 85),
    ("/kontaktiere-uns", PageType.CONTACT, 85),
    ("/contactez-nous", PageType.CONTACT, 85),
    ("/inquiry", PageType.INQUIRY, 80),
    ("/enquiry", PageType.INQUIRY, 80),
    ("/inquiry/form", PageType.INQUIRY, 80),
    ("/customer-service", PageType.SUPPORT, 60),
    ("/customer-support", PageType.SUPPORT, 60),
    ("/support", PageType.SUPPORT, 60),
    ("/help", PageType.SUPPORT, 55),
    ("/サポート", PageType.SUPPORT, 60),
    ("/お客様サポート", PageType.SUPPORT, 60),
    ("/about", PageType.ABOUT, 50),
    ("/company", PageType.ABOUT, 50),
    ("/会社情報", PageType.ABOUT, 50),
]

# Landing-page text that suggests contact content (content scan gate).
CONTENT_KEYWORDS = [
    "contact", "inquiry", "enquiry", "reach us", "get in touch", "send message",
    "write to us", "customer service",
    "お問い合わせ", "連絡先", "コンタクト", "お客様サポート", "フォーム", "送信",
    "contacto", "contáctenos", "kontakt", "contactez", "nous contacter",
]

# Anchor text / href vocabulary for link traversal and footer scans.
CONTACT_LINK_WORDS = [
    "contact", "inquiry", "enquiry", "get in touch", "get-in-touch", "reach us", "reach-us",
    "お問い合わせ", "問い合わせ", "お問合せ", "連絡先", "コンタクト",
    "contacto", "contáctenos", "kontakt", "contactez", "nous-contacter",
]

FOOTER_LINK_WORDS = CONTACT_LINK_WORDS + ["support", "help", "サポート", "ヘルプ"]

# Body-text markers used to verify a fetched candidate page.
FORM_MARKERS = ["submit", "send message", "送信", "フォーム", "enviar", "absenden", "envoyer"]
CONTACT_INFO_MARKERS = [
    "contact", "phone", "email", "e-mail", "tel:", "address",
    "お問い合わせ", "連絡先", "電話", "teléfono", "telefon", "téléphone",
]

# Page-type inference from URL or title; first match wins, default contact.
PAGE_TYPE_HINTS: List[Tuple[PageType, Tuple[str, ...]]] = [
    (PageType.INQUIRY, ("inquiry", "enquiry")),
    (PageType.CONTACT, ("contact", "kontakt", "contacto", "contactez", "お問い合わせ", "問い合わせ", "連絡先", "コンタクト")),
    (PageType.SUPPORT, ("support", "help", "サポート", "ヘルプ")),
    (PageType.ABOUT, ("about", "company", "会社")),
]


def contains_any(text: str, words: Iterable[str]) -> bool:
    t = (text or "").lower()
    return any(w in t for w in words)


def infer_page_type(*texts: str) -> PageType:
    joined = " ".join(t for t in texts if t).lower()
    for page_type, hints in PAGE_TYPE_HINTS:
        if any(h in joined for h in hints):
            return page_type
    return PageType.CONTACT
