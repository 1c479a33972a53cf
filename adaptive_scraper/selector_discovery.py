import logging
import re
from typing import Any, Iterable

from core import settings
from utils import format_candidate

from .errors import ElementNotFoundError
from .page import Page, PageElement
from .strategies import SelectorStrategy

logger = logging.getLogger(__name__)

DISCOVERY_QUERY = "body *, head meta[content]"
LABEL_ATTRIBUTES = ("aria-label", "title", "alt", "itemprop", "property", "name")
TEST_ID_MARKERS = ("testid", "test-id", "test_id", "qa")

_CSS_IDENTIFIER = re.compile(r"^-?[A-Za-z_][\w-]*$")
_RANDOM_CLASS_PATTERNS = [
    re.compile(r"^[a-f0-9]{8,}$"),  # Hex strings
    re.compile(r"^[0-9]+$"),  # Pure numbers
    re.compile(r"[A-Z]{3,}"),  # Multiple caps
    re.compile(r"_[a-f0-9]{6,}_"),  # Underscore hex patterns
    re.compile(r"^[a-z]{1,2}[0-9]{4,}$"),  # Short letters + long numbers
    re.compile(r"^[0-9]{4,}[a-z]{1,2}$"),  # Long numbers + short letters
    re.compile(r"^(css|sc|jsx|emotion|styled)-"),  # CSS-in-JS prefixes
    re.compile(r"\d\D*\d\D*\d"),  # Three or more scattered digits
]


def is_random_class(cls: str) -> bool:
    """Check if a class name appears to be random/generated."""
    if len(cls) < settings.DISCOVERY_MIN_CLASS_LENGTH:
        return True
    return any(pattern.search(cls) for pattern in _RANDOM_CLASS_PATTERNS)


def css_string(value: str) -> str:
    """Quote a value for use inside a CSS attribute or ``:-soup-contains`` selector."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def is_trapped(path: str, trap_paths: Iterable[str]) -> bool:
    """Whether an element path is a trap or sits inside one."""
    return any(path == trap or path.startswith(f"{trap} > ") for trap in trap_paths)


class SelectorDiscovery:
    """Generates new selector candidates by inspecting the page structure.

    Works by:
    1. Enumerating visible, non-empty elements outside known traps
    2. Synthesizing selector variants per element (stable attributes,
       role and label attributes, class tokens, tag, short text containment)
    3. Scoring each variant with a fixed rubric plus field and content-hint bonuses
    4. Keeping the top-K variants that still resolve to a visible, non-empty value
    """

    def __init__(
        self: "SelectorDiscovery",
        top_k: int = settings.DISCOVERY_TOP_K,
        scores: dict[str, int] | None = None,
    ) -> None:
        """Initialize SelectorDiscovery.

        Args:
            top_k: Maximum number of candidates returned by discover
            scores: Rubric weight per variant kind
        """
        self.top_k = top_k
        self.scores = scores or dict(settings.DISCOVERY_SCORES)

    def discover(
        self: "SelectorDiscovery",
        page: Page,
        field_type: str,
        content_hint: str | None = None,
        limit: int | None = None,
        avoid: Iterable[str] = (),
    ) -> list[str]:
        """Discover selector strategies for a field.

        Args:
            page: Page to inspect
            field_type: Field the selectors should extract
            content_hint: Optional expected content; elements containing it get a relevance bonus
            limit: Maximum number of strategies, top_k when None
            avoid: Trap selectors; matching elements and their descendants are never used

        Returns:
            Strategy keys, best first, each validated against the page
        """
        limit = self.top_k if limit is None else limit
        avoid = set(avoid)
        trap_paths = self._trap_paths(page, avoid)
        ranked = self._score_variants(page, field_type, content_hint, trap_paths)

        validated = []
        for variant in ranked[: max(limit, self.top_k)]:
            strategy = SelectorStrategy.parse(variant["selector"])
            if strategy.css in avoid or self._hits_trap(page, strategy, trap_paths):
                logger.debug(f"Discarded {variant['selector']}: matches a trap")
                continue
            if strategy.attempt(page).succeeded:
                validated.append(strategy.key)
            else:
                logger.debug(f"Discarded {variant['selector']}: no visible value")
            if len(validated) >= limit:
                break

        logger.debug(f"Discovered {len(validated)} selectors for {field_type} on {page.url}")
        return validated

    def _trap_paths(self: "SelectorDiscovery", page: Page, avoid: Iterable[str]) -> set[str]:
        """CSS paths of visible elements matched by trap selectors."""
        paths = set()
        for selector in avoid:
            try:
                paths.update(element.path for element in page.query_visible_elements(selector))
            except ElementNotFoundError:
                logger.debug(f"Skipping unusable trap selector {selector!r}")
        return paths

    def _hits_trap(self: "SelectorDiscovery", page: Page, strategy: SelectorStrategy, trap_paths: set[str]) -> bool:
        if not trap_paths:
            return False
        try:
            elements = page.query_visible_elements(strategy.css)
        except ElementNotFoundError:
            return True
        return any(is_trapped(element.path, trap_paths) for element in elements)

    def _score_variants(
        self: "SelectorDiscovery",
        page: Page,
        field_type: str,
        content_hint: str | None,
        trap_paths: set[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Score every variant of every usable element, best first and unique by selector."""
        best: dict[str, dict[str, Any]] = {}
        order = 0
        for element in page.query_visible_elements(DISCOVERY_QUERY):
            if trap_paths and is_trapped(element.path, trap_paths):
                continue
            suffix = self._value_suffix(element, field_type)
            if suffix is None:
                continue

            bonus = self._field_bonus(element, field_type) + self._hint_bonus(element, content_hint)
            for css, kind in self._variants(element):
                selector = f"{css}{suffix}"
                score = self.scores.get(kind, 0) + bonus
                existing = best.get(selector)
                if existing is None:
                    best[selector] = {"selector": selector, "score": score, "kind": kind, "order": order, "element": element}
                    order += 1
                elif score > existing["score"]:
                    existing.update({"score": score, "kind": kind, "element": element})

        return sorted(best.values(), key=lambda v: (-v["score"], v["order"]))

    def _value_suffix(self: "SelectorDiscovery", element: PageElement, field_type: str) -> str | None:
        """Extraction suffix for an element, or None when it holds no value for the field."""
        if element.tag == "meta":
            return "::attr(content)" if element.get("content", "").strip() else None
        if field_type == "image":
            return "::attr(src)" if element.tag == "img" and element.get("src") else None
        if field_type == "link":
            return "::attr(href)" if element.tag == "a" and element.get("href") else None
        if not element.text or len(element.text) > settings.DESCRIPTION_MAX_LENGTH:
            return None
        return "::text"

    def _variants(self: "SelectorDiscovery", element: PageElement) -> list[tuple[str, str]]:
        """Generate multiple selector variations for an element."""
        variants = []
        tag = element.tag

        for name, value in element.attributes.items():
            if not name.startswith("data-") or not value or len(value) > settings.DISCOVERY_MAX_ATTRIBUTE_LENGTH:
                continue
            if not _CSS_IDENTIFIER.match(name) or (len(value) > 16 and is_random_class(value.replace(" ", "-"))):
                continue
            kind = "test_id" if any(marker in name for marker in TEST_ID_MARKERS) else "data_attribute"
            variants.append((f"[{name}={css_string(value)}]", kind))

        role = element.get("role")
        if role:
            variants.append((f"[role={css_string(role)}]", "role"))

        for name in LABEL_ATTRIBUTES:
            value = element.get(name)
            if value and len(value) <= settings.DISCOVERY_MAX_ATTRIBUTE_LENGTH:
                variants.append((f"{tag}[{name}={css_string(value)}]", "label_attribute"))

        classes = [c for c in element.classes if _CSS_IDENTIFIER.match(c) and not is_random_class(c)]
        for cls in classes:
            variants.append((f".{cls}", "class_token"))
        if len(classes) > 1:
            variants.append((f".{classes[0]}.{classes[1]}", "class_combination"))
        if classes:
            variants.append((f"{tag}.{classes[0]}", "tag_class"))

        if tag != "meta":
            variants.append((tag, "tag"))

        text = element.text
        if text and len(text) < settings.DISCOVERY_MAX_TEXT_LENGTH and tag != "meta":
            variants.append((f"{tag}:-soup-contains({css_string(text)})", "text_contains"))
        return variants

    def _field_bonus(self: "SelectorDiscovery", element: PageElement, field_type: str) -> int:
        if element.tag in settings.DISCOVERY_FIELD_TAGS.get(field_type, ()):
            return settings.DISCOVERY_FIELD_BONUS
        if field_type == "image" and any("logo" in v.lower() or "image" in v.lower() for v in element.attributes.values()):
            return settings.DISCOVERY_FIELD_BONUS
        return 0

    def _hint_bonus(self: "SelectorDiscovery", element: PageElement, content_hint: str | None) -> int:
        if not content_hint:
            return 0
        hint = content_hint.lower()
        if hint in element.text.lower() or any(hint in v.lower() for v in element.attributes.values()):
            return settings.DISCOVERY_HINT_BONUS
        return 0

    def get_discovery_info(
        self: "SelectorDiscovery",
        page: Page,
        field_type: str,
        content_hint: str | None = None,
    ) -> dict[str, Any]:
        """Get detailed information about the discovery process.

        Useful for debugging and understanding why certain selectors were chosen.
        """
        ranked = self._score_variants(page, field_type, content_hint)
        kinds: dict[str, int] = {}
        for variant in ranked:
            kinds[variant["kind"]] = kinds.get(variant["kind"], 0) + 1
        return {
            "field_type": field_type,
            "total_variants": len(ranked),
            "variants_by_kind": kinds,
            "top_variants": [
                {"selector": v["selector"], "kind": v["kind"], **format_candidate(v["element"], v["score"])}
                for v in ranked[: self.top_k]
            ],
        }
