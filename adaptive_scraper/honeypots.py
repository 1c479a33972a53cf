"""
Honeypot trap detection.

Defended pages plant elements a person never sees (hidden, pushed off-screen,
aria-hidden) or that carry bait names, hoping a scraper reads or clicks them.
Detected traps are kept per host in the learning store under
``traps:<host>`` and reused on later visits, so discovery and strategy
attempts can stay away from them.
"""

import logging
import re
import time
from typing import Any, Callable, Iterable

import soupsieve
from bs4 import BeautifulSoup, Tag

from core import settings

from .errors import AdaptiveScraperError
from .learning_store import LearningStore
from .page import Page, css_path
from .retry import run_with_timeout
from .selector_discovery import css_string
from .urls import domain_of

logger = logging.getLogger(__name__)

TRAP_PREFIX = "traps:"

_TRAP_NAME = re.compile(settings.TRAP_NAME_PATTERN, re.IGNORECASE)
_OFFSCREEN = re.compile(r"(?:^|;)(?:left|top):-(\d+(?:\.\d+)?)px")
_ZERO_SIZE = ("width:0", "height:0")


def _style(tag: Tag) -> str:
    return tag.get("style", "").replace(" ", "").lower()


def is_hidden_trap(tag: Tag) -> bool:
    """Hidden, transparent, zero-sized or off-screen according to its own markup."""
    if tag.has_attr("hidden") or tag.get("aria-hidden") == "true":
        return True
    style = _style(tag)
    if "display:none" in style or "visibility:hidden" in style or "opacity:0;" in f"{style};":
        return True
    if all(f"{size};" in f"{style};" or f"{size}px;" in f"{style};" for size in _ZERO_SIZE):
        return True
    return any(float(offset) >= settings.TRAP_OFFSCREEN_PIXELS for offset in _OFFSCREEN.findall(style))


def has_trap_name(tag: Tag) -> bool:
    values = []
    for name in settings.TRAP_NAME_ATTRIBUTES:
        value = tag.get(name)
        values.append(" ".join(value) if isinstance(value, list) else (value or ""))
    return bool(_TRAP_NAME.search(" ".join(values)))


def trap_selector(tag: Tag) -> str:
    """Selector for a trap: id, then name, then classes, then its CSS path."""
    if tag.get("id"):
        return f"#{soupsieve.escape(tag['id'])}"
    if tag.get("name"):
        return f"[name={css_string(tag['name'])}]"
    classes = tag.get("class") or []
    if classes:
        return "." + ".".join(soupsieve.escape(cls) for cls in classes)
    return css_path(tag)


def find_traps(soup: BeautifulSoup, limit: int = settings.MAX_TRAPS_PER_PAGE) -> list[str]:
    """Trap selectors in a document. Meant to run through ``Page.evaluate``."""
    traps: list[str] = []
    for tag in soup.select(settings.TRAP_CANDIDATE_QUERY):
        if tag.name == "input" and tag.get("type", "").lower() == "hidden":
            # hidden form state, not a trap
            continue
        if not (is_hidden_trap(tag) or has_trap_name(tag)):
            continue
        selector = trap_selector(tag)
        if selector not in traps:
            traps.append(selector)
        if len(traps) >= limit:
            break
    return traps


class HoneypotDetector:
    """Finds trap elements on pages and remembers them per host."""

    def __init__(
        self: "HoneypotDetector",
        store: LearningStore | None = None,
        max_per_host: int = settings.MAX_TRAPS_PER_HOST,
        evaluate_timeout: float | None = settings.EVALUATE_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the detector.

        Args:
            store: Learning store holding the per-host trap lists
            max_per_host: Maximum number of trap selectors kept per host
            evaluate_timeout: Timeout for scanning a page
            clock: Time source returning epoch seconds
        """
        self.store = store or LearningStore()
        self.max_per_host = max_per_host
        self.evaluate_timeout = evaluate_timeout
        self.clock = clock

    def detect(self: "HoneypotDetector", page: Page) -> list[str]:
        """Trap selectors on the current page, empty when the scan fails."""
        try:
            return run_with_timeout(page.evaluate, self.evaluate_timeout, find_traps)
        except AdaptiveScraperError as e:
            logger.warning(f"Trap scan failed on {page.url}: {e}")
            return []

    def known_traps(self: "HoneypotDetector", url: str) -> list[str]:
        document = self.store.load_document(self._key(url))
        return list(document["selectors"]) if document else []

    def add_traps(self: "HoneypotDetector", url: str, traps: Iterable[str]) -> list[str]:
        """Merge traps into the host's list, keeping first-seen order.

        Returns:
            The merged list
        """
        traps = list(traps)
        merged: list[str] = []

        def merge(document: dict[str, Any] | None) -> dict[str, Any]:
            document = document or {"host": domain_of(url), "selectors": []}
            selectors = list(document["selectors"])
            selectors.extend(t for t in dict.fromkeys(traps) if t not in selectors)
            document["selectors"] = selectors[: self.max_per_host]
            document["updated_at"] = self.clock()
            merged[:] = document["selectors"]
            return document

        if not traps:
            return self.known_traps(url)
        if not self.store.update_document(self._key(url), merge, "store traps"):
            return list(dict.fromkeys(traps))
        return merged

    def scan(self: "HoneypotDetector", page: Page, url: str) -> list[str]:
        """Detect traps on the page, remember them and return every trap known for the host."""
        found = self.detect(page)
        if found:
            logger.info(f"Found {len(found)} trap elements on {url}")
        return self.add_traps(url, found)

    def _key(self: "HoneypotDetector", url: str) -> str:
        return f"{TRAP_PREFIX}{domain_of(url)}"
