"""
Automated-access defense detection.

Vendor challenges and anti-bot protections are described as data tables;
detection is a pure function of an HTML snapshot.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from selectolax.parser import HTMLParser

from ..schemas import ChallengeStatus, ChallengeType, DefenseChallenge, ProtectionReport, ProtectionType

HIT_WEIGHT = 25
LEXICAL_CONFIDENCE = 30


@dataclass(frozen=True)
class ChallengeRule:
    type: ChallengeType
    selectors: Tuple[str, ...]
    iframe_patterns: Tuple[str, ...] = ()
    # Checkbox the responder clicks, inside `frame_selector` when set
    frame_selector: Optional[str] = None
    checkbox: Optional[str] = None


# Table order breaks confidence ties.
CHALLENGE_RULES: Tuple[ChallengeRule, ...] = (
    ChallengeRule(
        type=ChallengeType.RECAPTCHA,
        selectors=(
            ".g-recaptcha",
            "#recaptcha",
            "[data-sitekey]:not(.h-captcha)",
            'iframe[src*="recaptcha"]',
            'iframe[src*="google.com/recaptcha"]',
            'iframe[src*="recaptcha.net"]',
        ),
        iframe_patterns=("google.com/recaptcha", "recaptcha.net/recaptcha", "recaptcha/api2"),
        frame_selector='iframe[src*="recaptcha"]',
        checkbox=".recaptcha-checkbox-border",
    ),
    ChallengeRule(
        type=ChallengeType.HCAPTCHA,
        selectors=(
            ".h-captcha",
            "#hcaptcha",
            'iframe[src*="hcaptcha.com"]',
            "[data-sitekey][data-hcaptcha]",
        ),
        iframe_patterns=("hcaptcha.com/captcha", "hcaptcha.com/1"),
        frame_selector='iframe[src*="hcaptcha"]',
        checkbox="#checkbox",
    ),
    ChallengeRule(
        type=ChallengeType.EDGE_CHALLENGE,
        selectors=(
            "#cf-challenge-running",
            "#challenge-stage",
            "#cf-please-wait",
            ".cf-browser-verification",
            'iframe[src*="cloudflare.com"]',
        ),
        iframe_patterns=("cloudflare.com/cdn-cgi", "cloudflare.com/challenge"),
    ),
)

GENERIC_RULE = ChallengeRule(
    type=ChallengeType.GENERIC,
    selectors=(
        'input[name*="captcha"]',
        'input[id*="captcha"]',
        'img[src*="captcha"]',
        'img[alt*="captcha"]',
        ".captcha",
        "#captcha",
    ),
)

CHALLENGE_PHRASES = (
    "captcha",
    "i'm not a robot",
    "i am not a robot",
    "verify you are human",
    "verify that you are human",
    "checking your browser",
    "complete the security check",
)

CAPTCHA_INPUT_SELECTOR = 'input[name*="captcha"], input[id*="captcha"]'

# Page-side check for a cleared challenge: a filled response token or captcha
# input, or no challenge widget left on the page.
SOLVED_STATE_SCRIPT = """() => {
  const filled = (sel) => {
    const el = document.querySelector(sel);
    return !!(el && el.value && el.value.length > 0);
  };
  if (filled('#g-recaptcha-response') || filled('textarea[name="g-recaptcha-response"]')) return true;
  if (filled('[name="h-captcha-response"]')) return true;
  if (filled('input[name*="captcha"]')) return true;
  const widgets = '.g-recaptcha, .h-captcha, #cf-challenge-running, #challenge-stage, '
    + '.cf-browser-verification, iframe[src*="recaptcha"], iframe[src*="hcaptcha"], input[name*="captcha"]';
  return document.querySelector(widgets) === null;
}"""

PROTECTION_SELECTORS: Dict[ProtectionType, Tuple[str, ...]] = {
    ProtectionType.EDGE_CHALLENGE: ("#cf-challenge-running", "#challenge-stage", ".cf-browser-verification"),
    ProtectionType.AKAMAI: ('iframe[src*="akamai.com"]', ".akamai-challenge"),
    ProtectionType.IMPERVA: ('iframe[src*="incapsula.com"]', ".incapsula-challenge"),
    ProtectionType.CAPTCHA: (".g-recaptcha", ".h-captcha", "#recaptcha", "#hcaptcha"),
}

PROTECTION_PHRASES: Dict[ProtectionType, Tuple[str, ...]] = {
    ProtectionType.RATE_LIMIT: ("rate limit", "too many requests", "error 429", "quota exceeded"),
    ProtectionType.BOT_DETECTION: ("bot detected", "automated access", "suspicious activity", "security check"),
}

# Raw-markup markers of an edge interstitial
EDGE_MARKUP_MARKERS = (
    r"Just a moment\s*\.\.\.",
    r"Enable JavaScript and cookies to continue",
    r"__cf_chl_",
)


def rule_for(challenge_type: ChallengeType) -> Optional[ChallengeRule]:
    for rule in CHALLENGE_RULES + (GENERIC_RULE,):
        if rule.type == challenge_type:
            return rule
    return None


def _body_text(parser: HTMLParser) -> str:
    body = parser.body
    return (body.text(separator=" ") if body is not None else "").lower()


class DefenseDetector:
    def __init__(self, rules: Tuple[ChallengeRule, ...] = CHALLENGE_RULES, generic: ChallengeRule = GENERIC_RULE) -> None:
        self.rules = rules
        self.generic = generic

    @staticmethod
    def _score(rule: ChallengeRule, parser: HTMLParser, iframe_srcs: List[str]) -> Tuple[List[str], List[str], int]:
        selectors = [s for s in rule.selectors if parser.css_first(s) is not None]
        iframes = [src for src in iframe_srcs if any(p in src.lower() for p in rule.iframe_patterns)]
        confidence = min(100, HIT_WEIGHT * (len(selectors) + len(iframes)))
        return selectors, iframes, confidence

    def detect(self, html: str) -> DefenseChallenge:
        parser = HTMLParser(html or "")
        iframe_srcs = [(f.attrs or {}).get("src") or "" for f in parser.css("iframe")]
        best: Optional[DefenseChallenge] = None
        breakdown: Dict[str, int] = {}
        for rule in self.rules:
            selectors, iframes, confidence = self._score(rule, parser, iframe_srcs)
            if confidence <= 0:
                continue
            breakdown[rule.type.value] = confidence
            # strict comparison keeps the earlier rule on ties
            if best is None or confidence > best.confidence:
                best = DefenseChallenge(type=rule.type, selectors=selectors, iframe_urls=iframes, confidence=confidence)
        if best is not None:
            best.breakdown = breakdown
            return best
        selectors, _, confidence = self._score(self.generic, parser, [])
        if confidence > 0:
            return DefenseChallenge(
                type=ChallengeType.GENERIC,
                selectors=selectors,
                confidence=confidence,
                breakdown={ChallengeType.GENERIC.value: confidence},
            )
        text = _body_text(parser)
        if any(p in text for p in CHALLENGE_PHRASES):
            return DefenseChallenge(
                type=ChallengeType.GENERIC,
                confidence=LEXICAL_CONFIDENCE,
                breakdown={ChallengeType.GENERIC.value: LEXICAL_CONFIDENCE},
            )
        return DefenseChallenge(type=ChallengeType.NONE, confidence=0, status=ChallengeStatus.BYPASSED)

    def detect_protection(self, html: str) -> ProtectionReport:
        parser = HTMLParser(html or "")
        text = _body_text(parser)
        found: List[ProtectionType] = []
        for ptype, selectors in PROTECTION_SELECTORS.items():
            hit = any(parser.css_first(s) is not None for s in selectors)
            if not hit and ptype == ProtectionType.EDGE_CHALLENGE:
                hit = any(re.search(p, html or "", flags=re.IGNORECASE) for p in EDGE_MARKUP_MARKERS)
            if hit:
                found.append(ptype)
        for ptype, phrases in PROTECTION_PHRASES.items():
            if any(p in text for p in phrases):
                found.append(ptype)
        return ProtectionReport(types=found, confidence=min(100, HIT_WEIGHT * len(found)))
