"""
Bot-detection monitor.

Assesses whether a page shows a block, challenge or login wall instead of the
entity, and runs a remediation sequence when it does. Each detection episode
records exactly one BlockEvent with the BackoffTracker, however many
remediation steps it takes.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from core import settings

from .errors import AdaptiveScraperError, BotDetectedError, ElementNotFoundError
from .models import BlockEvent, SessionStatus
from .page import Page
from .retry import BackoffTracker, run_with_timeout
from .urls import domain_of, normalize_url

logger = logging.getLogger(__name__)

HEADING_SELECTORS = ("title", "h1", "h2")
DISMISS_CONTROLS = ("button", "[role='button']", "a")


@dataclass
class PageAssessment:
    blocked: bool
    signature_matched: str | None = None
    has_expected_entity_markers: bool = False


@dataclass
class AccessResult:
    """Outcome of making a page accessible for extraction."""

    status: SessionStatus
    assessment: PageAssessment
    block_event: BlockEvent | None = None
    steps: list[str] = field(default_factory=list)
    diagnostics: dict[str, Any] = field(default_factory=dict)

    @property
    def accessible(self: "AccessResult") -> bool:
        return self.status == SessionStatus.OK


class BotDetectionMonitor:
    """Detects block pages and tries to get past them.

    Detection looks for:
        - Known challenge-page DOM markers (captcha widgets, challenge forms)
        - Login-wall or block vocabulary in the title, headings or body text
        - Login-wall form markers
    Vocabulary and login-wall matches only count as a block when the page is
    also missing the markers an entity page is expected to have.
    """

    def __init__(
        self: "BotDetectionMonitor",
        backoff: BackoffTracker | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
        navigation_timeout: float | None = settings.NAVIGATION_TIMEOUT,
        evaluate_timeout: float | None = settings.EVALUATE_TIMEOUT,
    ) -> None:
        """Initialize the monitor.

        Args:
            backoff: Tracker receiving one BlockEvent per detection episode
            rng: Random source for simulated interaction, seedable for tests
            sleep: Sleep function used between simulated interactions
            navigation_timeout: Timeout for navigate and reload
            evaluate_timeout: Timeout for a page assessment
        """
        self.backoff = backoff or BackoffTracker()
        self.rng = rng or random.Random()
        self.sleep = sleep
        self.navigation_timeout = navigation_timeout
        self.evaluate_timeout = evaluate_timeout

    def assess_page_state(self: "BotDetectionMonitor", page: Page) -> PageAssessment:
        """Assess whether the page is blocked.

        Returns:
            PageAssessment with the first signature matched, if any
        """
        for marker in settings.CHALLENGE_MARKERS:
            if page.query_visible_elements(marker):
                return PageAssessment(blocked=True, signature_matched=f"challenge:{marker}")

        headings = []
        for selector in HEADING_SELECTORS:
            headings.extend(e.text.lower() for e in page.query_visible_elements(selector) if e.text)
        has_markers = self._has_entity_markers(page)

        signature = None
        for text in headings:
            phrase = self._matched_phrase(text)
            if phrase:
                signature = f"vocabulary:{phrase}"
                break
        if signature is None:
            for marker in settings.LOGIN_WALL_MARKERS:
                if page.query_visible_elements(marker):
                    signature = f"login_wall:{marker}"
                    break
        if signature is None:
            body = " ".join(e.text.lower() for e in page.query_visible_elements("body"))
            phrase = self._matched_phrase(body)
            if phrase:
                signature = f"vocabulary:{phrase}"

        blocked = signature is not None and not has_markers
        return PageAssessment(blocked=blocked, signature_matched=signature, has_expected_entity_markers=has_markers)

    def _matched_phrase(self: "BotDetectionMonitor", text: str) -> str | None:
        return next((phrase for phrase in settings.BLOCK_VOCABULARY if phrase in text), None)

    def _has_entity_markers(self: "BotDetectionMonitor", page: Page) -> bool:
        for marker in settings.ENTITY_MARKERS:
            for element in page.query_visible_elements(marker):
                # a heading that just says "Sign in" is not an entity
                if element.tag == "h1" and self._matched_phrase(element.text.lower()):
                    continue
                return True
        return False

    def raise_for_block(self: "BotDetectionMonitor", page: Page) -> PageAssessment:
        """Assess the page and raise when it is blocked.

        Raises:
            BotDetectedError: If the page shows a block signature
        """
        assessment = run_with_timeout(self.assess_page_state, self.evaluate_timeout, page)
        if assessment.blocked:
            raise BotDetectedError(
                f"Page {page.url} is blocked",
                signature=assessment.signature_matched,
                has_expected_entity_markers=assessment.has_expected_entity_markers,
            )
        return assessment

    def remediate(self: "BotDetectionMonitor", page: Page, url: str) -> tuple[PageAssessment, list[str]]:
        """Run the remediation sequence, re-assessing after each step.

        Steps, in order: normalize the URL, dismiss overlay dialogs, simulate
        human pointer movement and scrolling, reload. Stops at the first step
        after which the page is no longer blocked.

        Returns:
            (final assessment, names of steps that ran)
        """
        steps = [
            ("normalize_url", lambda: self._normalize_url(page, url)),
            ("dismiss_overlays", lambda: self._dismiss_overlays(page)),
            ("simulate_human", lambda: self._simulate_human(page)),
            ("reload", lambda: run_with_timeout(page.reload, self.navigation_timeout, timeout=self.navigation_timeout)),
        ]
        ran = []
        assessment = PageAssessment(blocked=True)
        for name, step in steps:
            try:
                step()
            except AdaptiveScraperError as e:
                logger.warning(f"Remediation step {name} failed on {url}: {e}")
            ran.append(name)
            assessment = run_with_timeout(self.assess_page_state, self.evaluate_timeout, page)
            if not assessment.blocked:
                logger.info(f"Remediation succeeded on {url} after {name}")
                break
        return assessment, ran

    def _normalize_url(self: "BotDetectionMonitor", page: Page, url: str) -> None:
        target = normalize_url(url)
        if page.url == target:
            return
        logger.debug(f"Navigating to normalized URL {target}")
        run_with_timeout(page.navigate, self.navigation_timeout, target, timeout=self.navigation_timeout)

    def _dismiss_overlays(self: "BotDetectionMonitor", page: Page) -> int:
        """Click controls inside overlay dialogs whose text reads like a dismissal."""
        dismissed = 0
        for overlay in settings.OVERLAY_SELECTORS:
            query = ", ".join(f"{overlay} {control}" for control in DISMISS_CONTROLS)
            for control in page.query_visible_elements(query):
                label = (control.text or control.get("aria-label", "") or "").strip().lower()
                if not any(label == text or label.startswith(text) for text in settings.OVERLAY_DISMISS_TEXTS):
                    continue
                try:
                    page.click(control.path)
                except ElementNotFoundError:
                    # already removed with an enclosing overlay
                    continue
                dismissed += 1
                break
        logger.debug(f"Dismissed {dismissed} overlays on {page.url}")
        return dismissed

    def _simulate_human(self: "BotDetectionMonitor", page: Page) -> None:
        """Randomized pointer movement and scrolling with short pauses."""
        for _ in range(self.rng.randint(*settings.HUMAN_POINTER_MOVES)):
            page.move_pointer(self.rng.randint(100, 1200), self.rng.randint(100, 800))
            self.sleep(self.rng.uniform(*settings.HUMAN_PAUSE_SECONDS))
        for _ in range(self.rng.randint(*settings.HUMAN_SCROLLS)):
            page.scroll(self.rng.randint(200, 600))
            self.sleep(self.rng.uniform(*settings.HUMAN_PAUSE_SECONDS))

    def ensure_accessible(self: "BotDetectionMonitor", page: Page, url: str) -> AccessResult:
        """Make sure the page shows content, remediating once if it is blocked.

        Returns:
            AccessResult with status ok, or blocked when the full remediation
            sequence did not help
        """
        try:
            assessment = self.raise_for_block(page)
            return AccessResult(status=SessionStatus.OK, assessment=assessment)
        except BotDetectedError as e:
            signature = e.signature or "unknown"
            logger.warning(f"Block detected on {url}: {signature}")

        event = self.backoff.record_block(domain_of(url), signature)
        assessment, steps = self.remediate(page, url)
        if not assessment.blocked:
            return AccessResult(status=SessionStatus.OK, assessment=assessment, block_event=event, steps=steps)

        logger.error(f"Still blocked on {url} after {', '.join(steps)}")
        return AccessResult(
            status=SessionStatus.BLOCKED,
            assessment=assessment,
            block_event=event,
            steps=steps,
            diagnostics={
                "signature": assessment.signature_matched or signature,
                "initial_signature": signature,
                "remediation_steps": steps,
                "attempts": len(steps),
            },
        )
