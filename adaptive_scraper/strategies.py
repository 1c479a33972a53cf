"""
Extraction strategies tried by the adaptive extractor.

A strategy is stored in the learning store by its key, a short representation
string:

    selector:<css>                  value by element type (src, href, content or text)
    selector:<css>::text            element text
    selector:<css>::attr(<name>)    attribute value
    pattern:<regex>                 first match over the visible body text
    heuristic:<field>               best element picked by ElementScorer

Every strategy exposes the same ``attempt(page)`` call returning an
``AttemptOutcome`` instead of raising for page-level failures.
"""

import builtins
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass

from scrapy import Selector

from .element_scorer import best_field_value
from .errors import AdaptiveScraperError, ElementNotFoundError, classify_error
from .models import ErrorClass
from .page import Page, PageElement

logger = logging.getLogger(__name__)

_SELECTOR_KEY = re.compile(r"^(?P<css>.+?)(?:::(?:(?P<text>text)|attr\((?P<attr>[^)]+)\)))?$", re.DOTALL)
_VISIBLE_TEXT_XPATH = "//body//text()[not(ancestor::script) and not(ancestor::style) and not(ancestor::noscript)]"

DEFAULT_ATTRIBUTES = {"img": "src", "a": "href", "meta": "content", "link": "href"}


@dataclass
class AttemptOutcome:
    """Result of one strategy attempt: a value, or the class of the failure."""

    value: str | None = None
    error_class: ErrorClass | None = None
    message: str = ""
    visible: bool = True

    @property
    def succeeded(self: "AttemptOutcome") -> bool:
        return self.value is not None and self.error_class is None

    @classmethod
    def failure(cls: type["AttemptOutcome"], error: BaseException) -> "AttemptOutcome":
        return cls(error_class=classify_error(error), message=str(error))


class Strategy(ABC):
    kind = ""

    @property
    @abstractmethod
    def key(self: "Strategy") -> str:
        """Representation stored in the learning store."""

    @abstractmethod
    def extract(self: "Strategy", page: Page) -> str:
        """Return the extracted value or raise an AdaptiveScraperError."""

    def attempt(self: "Strategy", page: Page) -> AttemptOutcome:
        """Run the strategy against a page, mapping failures onto their error class."""
        try:
            return AttemptOutcome(value=self.extract(page))
        except (AdaptiveScraperError, builtins.TimeoutError) as e:
            logger.debug(f"{self.key} failed: {e}")
            return AttemptOutcome.failure(e)

    def __repr__(self: "Strategy") -> str:
        return f"<{type(self).__name__} {self.key}>"


class SelectorStrategy(Strategy):
    """CSS selector with an optional ``::text`` or ``::attr(name)`` suffix."""

    kind = "selector"

    def __init__(self: "SelectorStrategy", css: str, attribute: str | None = None, text: bool = False) -> None:
        self.css = css
        self.attribute = attribute
        self.text = text

    @classmethod
    def parse(cls: type["SelectorStrategy"], representation: str) -> "SelectorStrategy":
        match = _SELECTOR_KEY.match(representation.strip())
        if not match:
            raise ValueError(f"Invalid selector strategy: {representation!r}")
        return cls(match.group("css").strip(), attribute=match.group("attr"), text=bool(match.group("text")))

    @property
    def key(self: "SelectorStrategy") -> str:
        if self.attribute:
            return f"selector:{self.css}::attr({self.attribute})"
        if self.text:
            return f"selector:{self.css}::text"
        return f"selector:{self.css}"

    def extract(self: "SelectorStrategy", page: Page) -> str:
        elements = page.query_visible_elements(self.css)
        if not elements:
            raise ElementNotFoundError(f"No visible element for {self.css!r}")
        for element in elements:
            value = self._element_value(element)
            if value and value.strip():
                return value.strip()
        raise ElementNotFoundError(f"Elements for {self.css!r} are empty", {"matches": len(elements)})

    def _element_value(self: "SelectorStrategy", element: PageElement) -> str | None:
        if self.attribute:
            return element.get(self.attribute)
        if self.text:
            return element.text
        default_attribute = DEFAULT_ATTRIBUTES.get(element.tag)
        if default_attribute:
            return element.get(default_attribute)
        return element.text


class PatternStrategy(Strategy):
    """Regular expression over the visible body text.

    Returns the first capture group when the pattern has one, else the whole match.
    """

    kind = "pattern"

    def __init__(self: "PatternStrategy", pattern: str) -> None:
        self.pattern = pattern
        self._regex = re.compile(pattern)

    @property
    def key(self: "PatternStrategy") -> str:
        return f"pattern:{self.pattern}"

    def extract(self: "PatternStrategy", page: Page) -> str:
        selector = Selector(text=page.content())
        text = " ".join(t.strip() for t in selector.xpath(_VISIBLE_TEXT_XPATH).getall() if t.strip())
        match = self._regex.search(text)
        if not match:
            raise ElementNotFoundError(f"Pattern {self.pattern!r} did not match")
        value = match.group(1) if self._regex.groups else match.group(0)
        if not value:
            raise ElementNotFoundError(f"Pattern {self.pattern!r} matched an empty value")
        return value


class HeuristicStrategy(Strategy):
    """Element scoring heuristics for one field type, evaluated in the page."""

    kind = "heuristic"

    def __init__(self: "HeuristicStrategy", field_type: str) -> None:
        self.field_type = field_type

    @property
    def key(self: "HeuristicStrategy") -> str:
        return f"heuristic:{self.field_type}"

    def extract(self: "HeuristicStrategy", page: Page) -> str:
        value = page.evaluate(best_field_value, self.field_type, page.url)
        if not value:
            raise ElementNotFoundError(f"No {self.field_type} candidate scored above threshold")
        return value


STRATEGY_KINDS = {
    SelectorStrategy.kind: SelectorStrategy.parse,
    PatternStrategy.kind: PatternStrategy,
    HeuristicStrategy.kind: HeuristicStrategy,
}


def strategy_from_key(key: str) -> Strategy:
    """Build a strategy from its stored representation.

    Raises:
        ValueError: If the kind is unknown or the representation is malformed
    """
    kind, sep, body = key.partition(":")
    if not sep or kind not in STRATEGY_KINDS or not body:
        raise ValueError(f"Unknown strategy representation: {key!r}")
    try:
        return STRATEGY_KINDS[kind](body)
    except re.error as e:
        raise ValueError(f"Invalid pattern in {key!r}: {e}") from e
