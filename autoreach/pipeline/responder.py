"""
Defense response state machine.

  detected -> automated checkbox interaction -> solved
           -> text/image recognition        -> solved
           -> bounded manual-wait window     -> solved | timed_out
Every path returns an outcome with proceeding=True; a challenge never blocks
the request. Every wait is bounded and checks the cancel token.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Callable, Optional

from ..config import DefenseConfig
from ..errors import RequestCancelled
from ..scheduling import CancelToken
from ..schemas import ChallengeStatus, ChallengeType, DefenseChallenge, DefenseOutcome, OutcomeTag, ResponseMethod
from .defense import CAPTCHA_INPUT_SELECTOR, SOLVED_STATE_SCRIPT, rule_for
from .forms import page_text

logger = logging.getLogger(__name__)

# Image recognizer: screenshot bytes -> answer text, or None
Recognizer = Callable[[bytes], Optional[str]]

_ARITHMETIC_RE = re.compile(r"(\d{1,4})\s*([+\-x×*])\s*(\d{1,4})\s*(?:=|\?)")


def solve_arithmetic(text: str) -> Optional[str]:
    """Answer prompts like "What is 3 + 4?" found in page text."""
    m = _ARITHMETIC_RE.search(text or "")
    if not m:
        return None
    a, op, b = int(m.group(1)), m.group(2), int(m.group(3))
    if op == "+":
        return str(a + b)
    if op == "-":
        return str(a - b)
    return str(a * b)


class DefenseResponder:
    def __init__(
        self,
        config: Optional[DefenseConfig] = None,
        *,
        recognizer: Optional[Recognizer] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or DefenseConfig()
        self.recognizer = recognizer
        self._sleep = sleep
        self._clock = clock

    def _pause(self, seconds: float, cancel: Optional[CancelToken]) -> None:
        if cancel is not None:
            if cancel.wait(seconds):
                raise RequestCancelled("request cancelled while waiting on a challenge")
        else:
            self._sleep(seconds)

    def _is_solved(self, session) -> bool:
        return bool(session.evaluate(SOLVED_STATE_SCRIPT))

    def _wait_solved(self, session, window_s: float, cancel: Optional[CancelToken]) -> bool:
        deadline = self._clock() + window_s
        while True:
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                if self._is_solved(session):
                    return True
            except Exception as e:
                logger.debug("solved-state check failed: %s", e)
            remaining = deadline - self._clock()
            if remaining <= 0:
                return False
            self._pause(min(self.config.poll_interval_s, remaining), cancel)

    def _outcome(self, tag: OutcomeTag, method: ResponseMethod, challenge: DefenseChallenge, status: ChallengeStatus, message: str, start: float) -> DefenseOutcome:
        challenge = challenge.model_copy(update={"status": status})
        logger.info("defense %s: %s via %s (%s)", challenge.type.value, tag.value, method.value, message)
        return DefenseOutcome(
            tag=tag,
            method=method,
            proceeding=True,
            challenge=challenge,
            message=message,
            elapsed_s=round(self._clock() - start, 3),
        )

    def _try_automated(self, session, challenge: DefenseChallenge, cancel: Optional[CancelToken]) -> bool:
        rule = rule_for(challenge.type)
        if rule is None or not rule.checkbox:
            return False
        try:
            session.click(rule.checkbox, frame_selector=rule.frame_selector, timeout_ms=5000)
        except Exception as e:
            logger.info("checkbox interaction failed for %s: %s", challenge.type.value, e)
            return False
        return self._wait_solved(session, self.config.auto_wait_s, cancel)

    def _try_recognition(self, session, cancel: Optional[CancelToken]) -> bool:
        answer = None
        try:
            answer = solve_arithmetic(page_text(session.content()))
            if answer is None and self.recognizer is not None:
                answer = self.recognizer(session.screenshot())
        except Exception as e:
            logger.info("challenge recognition failed: %s", e)
            return False
        if not answer:
            return False
        try:
            session.fill(CAPTCHA_INPUT_SELECTOR, answer)
        except Exception as e:
            logger.info("could not enter challenge answer: %s", e)
            return False
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            return self._is_solved(session)
        except Exception as e:
            logger.debug("solved-state check after answer failed: %s", e)
            return False

    def respond(self, session, challenge: DefenseChallenge, cancel: Optional[CancelToken] = None) -> DefenseOutcome:
        start = self._clock()
        if not challenge.present:
            return self._outcome(OutcomeTag.NOT_PRESENT, ResponseMethod.NONE, challenge, ChallengeStatus.BYPASSED, "no challenge", start)
        try:
            if self._is_solved(session):
                return self._outcome(OutcomeTag.SOLVED, ResponseMethod.NONE, challenge, ChallengeStatus.SOLVED, "already cleared", start)
        except Exception as e:
            # The page cannot be inspected; proceed without interacting
            return self._outcome(OutcomeTag.UNAVAILABLE, ResponseMethod.NONE, challenge, ChallengeStatus.BYPASSED, f"page not inspectable: {e}", start)

        if self._try_automated(session, challenge, cancel):
            return self._outcome(OutcomeTag.SOLVED, ResponseMethod.AUTOMATED, challenge, ChallengeStatus.SOLVED, "checkbox cleared", start)

        if challenge.type == ChallengeType.GENERIC and self._try_recognition(session, cancel):
            return self._outcome(OutcomeTag.SOLVED, ResponseMethod.RECOGNITION, challenge, ChallengeStatus.SOLVED, "answer recognized", start)

        if self._wait_solved(session, self.config.manual_wait_s, cancel):
            return self._outcome(OutcomeTag.SOLVED, ResponseMethod.MANUAL, challenge, ChallengeStatus.SOLVED, "cleared during manual window", start)

        return self._outcome(
            OutcomeTag.TIMED_OUT,
            ResponseMethod.MANUAL,
            challenge,
            ChallengeStatus.TIMED_OUT,
            f"not cleared within {self.config.manual_wait_s:.0f}s; proceeding",
            start,
        )
