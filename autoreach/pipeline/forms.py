"""
Form analysis, filling and submission for contact pages.

Static analysis works on an HTML snapshot (selectolax); filling and
submission act on a leased tab through Playwright-style selectors
(`form[id="x"] >> [name="email"]`).
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from selectolax.parser import HTMLParser, Node

from ..schemas import FormAnalysis, FormField, FormInfo, SubmissionResult

logger = logging.getLogger(__name__)


CONTACT_FORM_KEYWORDS = [
    "contact", "inquiry", "enquiry", "message", "feedback", "support", "help",
    "question", "comment", "suggestion", "complaint",
    "お問い合わせ", "連絡", "メッセージ", "サポート", "ヘルプ",
]

# field category -> substrings of the field name; first match wins, so
# "name" stays last ("company_name" is a company, "email_name" an email)
FIELD_CATEGORIES: Dict[str, tuple] = {
    "email": ("email", "mail", "メール"),
    "company": ("company", "organization", "organisation", "会社"),
    "phone": ("phone", "tel", "電話"),
    "subject": ("subject", "title", "件名"),
    "message": ("message", "comment", "content", "body", "inquiry", "メッセージ", "コメント", "内容"),
    "name": ("name", "姓名", "名前"),
}

SUCCESS_MARKERS = [
    "thank you", "thanks for", "success", "submitted", "has been sent", "message sent",
    "received", "confirmation",
    "ありがとう", "送信完了", "送信しました", "受け付けました",
]
ERROR_MARKERS = [
    "error", "failed", "invalid", "is required", "missing",
    "エラー", "必須項目", "入力してください",
]

_SKIP_INPUT_TYPES = {"hidden", "submit", "button", "image", "reset", "file"}


def _field_category(name: str) -> Optional[str]:
    n = (name or "").lower()
    for category, needles in FIELD_CATEGORIES.items():
        if any(k in n for k in needles):
            return category
    return None


def _form_selector(form: Node, index: int) -> str:
    attrs = form.attrs or {}
    if attrs.get("id"):
        return f'form[id="{attrs["id"]}"]'
    if attrs.get("name"):
        return f'form[name="{attrs["name"]}"]'
    return f"form >> nth={index}"


def _label_for(parser: HTMLParser, node: Node) -> Optional[str]:
    attrs = node.attrs or {}
    node_id = attrs.get("id")
    if node_id:
        for label in parser.css("label"):
            if (label.attrs or {}).get("for") == node_id:
                return (label.text() or "").strip() or None
    parent = node.parent
    while parent is not None and parent.tag not in ("form", "body", "html"):
        if parent.tag == "label":
            return (parent.text() or "").strip() or None
        parent = parent.parent
    return None


def parse_forms(html: str) -> List[FormInfo]:
    parser = HTMLParser(html or "")
    forms: List[FormInfo] = []
    for index, form in enumerate(parser.css("form")):
        form_sel = _form_selector(form, index)
        attrs = form.attrs or {}
        fields: List[FormField] = []
        for el in form.css("input, textarea, select"):
            el_attrs = el.attrs or {}
            ftype = (el_attrs.get("type") or "text").lower()
            if el.tag == "textarea":
                ftype = "textarea"
            elif el.tag == "select":
                ftype = "select"
            if ftype in _SKIP_INPUT_TYPES:
                continue
            name = el_attrs.get("name") or el_attrs.get("id")
            if not name:
                continue
            required = "required" in el_attrs or (el_attrs.get("aria-required") or "").lower() == "true"
            fields.append(FormField(
                name=name,
                type=ftype,
                required=required,
                label=_label_for(parser, el),
                placeholder=el_attrs.get("placeholder"),
                selector=f'{form_sel} >> [name="{name}"]' if el_attrs.get("name") else f'{form_sel} >> [id="{name}"]',
            ))
        submit_sel = None
        for btn in form.css("input, button"):
            battrs = btn.attrs or {}
            btype = (battrs.get("type") or "").lower()
            if btype == "submit" or (btn.tag == "button" and not btype):
                if btn.tag == "input":
                    submit_sel = f'{form_sel} >> input[type="submit"]'
                else:
                    submit_sel = f'{form_sel} >> button >> nth=0' if not btype else f'{form_sel} >> button[type="submit"]'
                break
        forms.append(FormInfo(
            selector=form_sel,
            action=attrs.get("action"),
            method=(attrs.get("method") or "get").lower(),
            fields=fields,
            submit_selector=submit_sel,
        ))
    return forms


def score_contact_form(form: FormInfo) -> tuple[bool, float]:
    """Return (is_contact_form, confidence 0..1)."""
    action = (form.action or "").lower()
    names = [f.name.lower() for f in form.fields]
    categories = {_field_category(n) for n in names}
    has_contact_action = any(k in action for k in CONTACT_FORM_KEYWORDS)
    has_contact_fields = any(k in n for k in CONTACT_FORM_KEYWORDS for n in names)
    has_name = "name" in categories
    has_email = "email" in categories
    has_message = "message" in categories or any(f.type == "textarea" for f in form.fields)
    is_contact = has_contact_action or has_contact_fields or (has_name and has_email) or has_message
    if not is_contact:
        return False, 0.0
    confidence = 0.3
    if has_contact_action:
        confidence += 0.3
    if has_name:
        confidence += 0.2
    if has_email:
        confidence += 0.2
    if has_message:
        confidence += 0.2
    if any(f.required for f in form.fields):
        confidence += 0.1
    return True, round(min(confidence, 1.0), 2)


def page_text(html: str) -> str:
    parser = HTMLParser(html or "")
    body = parser.body
    node = body if body is not None else parser.root
    return " ".join((node.text(separator=" ") if node else "").split()).lower()


class FormHandler:
    def analyze(self, html: str) -> FormAnalysis:
        forms = parse_forms(html)
        for form in forms:
            is_contact, confidence = score_contact_form(form)
            form.is_contact_form = is_contact
            form.confidence = confidence
        return FormAnalysis(forms=forms, contact_forms=[f for f in forms if f.is_contact_form])

    @staticmethod
    def default_contact_data(subject_name: str) -> Dict[str, str]:
        subject_name = subject_name or "your company"
        message = "Hello, I'm interested in your services. Please contact me for more information."
        return {
            "name": f"Test User from {subject_name}",
            "email": "test@example.com",
            "phone": "+81-3-1234-5678",
            "subject": f"Inquiry from {subject_name}",
            "message": message,
            "company": subject_name,
        }

    @staticmethod
    def value_for(field: FormField, data: Dict[str, str]) -> Optional[str]:
        if field.name in data:
            return data[field.name]
        category = _field_category(field.name) or _field_category(field.label or "") or _field_category(field.placeholder or "")
        if category is None and field.type == "textarea":
            category = "message"
        if category is None and field.type == "email":
            category = "email"
        if category is None and field.type == "tel":
            category = "phone"
        return data.get(category) if category else None

    def fill(self, session, form: FormInfo, data: Dict[str, str]) -> int:
        """Fill every field we have a value for; returns the number filled."""
        filled = 0
        for field in form.fields:
            if field.type in ("checkbox", "radio", "select"):
                continue
            value = self.value_for(field, data)
            if value is None:
                continue
            try:
                session.fill(field.selector, value)
                filled += 1
            except Exception as e:
                logger.warning("could not fill field %s: %s", field.name, e)
        return filled

    def submit(self, session, form: FormInfo, *, settle_ms: int = 3000) -> SubmissionResult:
        if not form.submit_selector:
            return SubmissionResult(attempted=False, skipped_reason="no submit control found")
        before_url = session.url
        session.click(form.submit_selector)
        # Give the page a moment to show the confirmation or navigate away
        session.wait_for("body", timeout_ms=settle_ms)
        ok = self.check_submission(session.content(), before_url=before_url, after_url=session.url)
        return SubmissionResult(
            attempted=True,
            success=ok,
            message="submission confirmed" if ok else "error markers present after submit",
        )

    @staticmethod
    def check_submission(html: str, *, before_url: Optional[str] = None, after_url: Optional[str] = None) -> bool:
        text = page_text(html)
        if any(m in text for m in SUCCESS_MARKERS):
            return True
        if before_url and after_url and after_url != before_url:
            path = after_url.lower()
            if "contact" not in path and "form" not in path:
                return True
        return not any(m in text for m in ERROR_MARKERS)
