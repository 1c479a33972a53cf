"""
Page collaborator interface and a BeautifulSoup-backed implementation.

The extraction core never talks to a browser directly. It works against the
``Page`` protocol below; browser automation layers provide their own adapter.
``HtmlPage`` adapts a static HTML snapshot (optionally re-fetched through a
loader callable) and is what the core uses for rendered-HTML input and tests.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError

from core import settings

from .errors import ElementNotFoundError, NavigationError, PageTimeoutError

logger = logging.getLogger(__name__)

NON_RENDERED_TAGS = {"script", "style", "noscript", "template", "head", "html"}
METADATA_TAGS = {"meta", "link", "title"}
HIDDEN_STYLES = ("display:none", "visibility:hidden")


@dataclass
class PageElement:
    """Snapshot of one DOM element as returned by ``query_visible_elements``."""

    tag: str
    text: str = ""
    attributes: dict[str, str] = field(default_factory=dict)
    path: str = ""
    visible: bool = True
    depth: int = 0

    def get(self: "PageElement", name: str, default: str | None = None) -> str | None:
        return self.attributes.get(name, default)

    @property
    def classes(self: "PageElement") -> list[str]:
        return self.attributes.get("class", "").split()


class Page(Protocol):
    """Operations the core needs from a rendered page."""

    @property
    def url(self) -> str: ...

    def navigate(self, url: str, timeout: float | None = None) -> None: ...

    def reload(self, timeout: float | None = None) -> None: ...

    def content(self) -> str: ...

    def evaluate(self, fn: Callable[..., Any], *args: Any) -> Any: ...

    def wait_for_condition(self, predicate: Callable[["Page"], bool], timeout: float) -> None: ...

    def query_visible_elements(self, selector: str) -> list[PageElement]: ...

    def move_pointer(self, x: int, y: int) -> None: ...

    def scroll(self, delta_y: int) -> None: ...

    def click(self, selector: str) -> None: ...


class HtmlPage:
    """Page adapter over a BeautifulSoup document.

    ``evaluate`` calls ``fn(soup, *args)``. Metadata tags (``meta``, ``link``,
    ``title``) count as visible so head-level sources can be queried like any
    other element. Clicking a control inside an overlay dialog removes the
    dialog from the snapshot.
    """

    def __init__(
        self: "HtmlPage",
        html: str,
        url: str = "about:blank",
        loader: Callable[[str], str] | None = None,
    ) -> None:
        """Initialize the page.

        Args:
            html: Initial HTML content
            url: URL the content was loaded from
            loader: Optional callable returning fresh HTML for a URL, used by
                navigate and reload
        """
        self._url = url
        self._loader = loader
        self._soup = BeautifulSoup(html, "html.parser")
        self.interactions: list[tuple[Any, ...]] = []

    @property
    def url(self: "HtmlPage") -> str:
        return self._url

    @property
    def soup(self: "HtmlPage") -> BeautifulSoup:
        return self._soup

    def navigate(self: "HtmlPage", url: str, timeout: float | None = None) -> None:
        if self._loader is None:
            raise NavigationError("Static page has no loader", {"url": url})
        try:
            html = self._loader(url)
        except Exception as e:
            raise NavigationError(f"Failed to load {url}: {e}", {"url": url}) from e
        self._soup = BeautifulSoup(html, "html.parser")
        self._url = url
        self.interactions.append(("navigate", url))

    def reload(self: "HtmlPage", timeout: float | None = None) -> None:
        self.navigate(self._url, timeout=timeout)

    def content(self: "HtmlPage") -> str:
        return str(self._soup)

    def evaluate(self: "HtmlPage", fn: Callable[..., Any], *args: Any) -> Any:
        return fn(self._soup, *args)

    def wait_for_condition(
        self: "HtmlPage",
        predicate: Callable[["HtmlPage"], bool],
        timeout: float,
        poll_interval: float = settings.WAIT_POLL_INTERVAL,
    ) -> None:
        deadline = time.monotonic() + timeout
        while not predicate(self):
            if time.monotonic() >= deadline:
                raise PageTimeoutError("Condition not met", {"timeout": timeout, "url": self._url})
            time.sleep(poll_interval)

    def query_visible_elements(self: "HtmlPage", selector: str) -> list[PageElement]:
        try:
            matches = self._soup.select(selector)
        except SelectorSyntaxError as e:
            raise ElementNotFoundError(f"Invalid selector {selector!r}", {"error": str(e)}) from e
        return [self._snapshot(tag) for tag in matches if self._is_visible(tag)]

    def move_pointer(self: "HtmlPage", x: int, y: int) -> None:
        self.interactions.append(("move", x, y))

    def scroll(self: "HtmlPage", delta_y: int) -> None:
        self.interactions.append(("scroll", delta_y))

    def click(self: "HtmlPage", selector: str) -> None:
        try:
            target = self._soup.select_one(selector)
        except SelectorSyntaxError as e:
            raise ElementNotFoundError(f"Invalid selector {selector!r}", {"error": str(e)}) from e
        if target is None or not self._is_visible(target):
            raise ElementNotFoundError(f"Nothing to click for {selector!r}")
        self.interactions.append(("click", selector))

        for overlay_selector in settings.OVERLAY_SELECTORS:
            for overlay in self._soup.select(overlay_selector):
                if overlay is target or any(node is target for node in overlay.descendants):
                    logger.debug(f"Click on {selector} dismissed overlay <{overlay.name}>")
                    overlay.decompose()
                    return

    def _is_visible(self: "HtmlPage", tag: Tag) -> bool:
        """Infer visibility from markup: hidden attributes, inline styles and non-rendered ancestors."""
        if tag.name in METADATA_TAGS:
            return True
        if tag.name in NON_RENDERED_TAGS:
            return False
        if tag.name == "input" and tag.get("type", "").lower() == "hidden":
            return False

        current = tag
        while isinstance(current, Tag) and current.name != "[document]":
            if current.name in NON_RENDERED_TAGS - {"html"}:
                return False
            if current.has_attr("hidden") or current.get("aria-hidden") == "true":
                return False
            style = current.get("style", "").replace(" ", "").lower()
            if any(hidden in style for hidden in HIDDEN_STYLES):
                return False
            current = current.parent
        return True

    def _snapshot(self: "HtmlPage", tag: Tag) -> PageElement:
        attributes = {}
        for name, value in tag.attrs.items():
            attributes[name] = " ".join(value) if isinstance(value, list) else str(value)
        return PageElement(
            tag=tag.name,
            text=tag.get_text(" ", strip=True),
            attributes=attributes,
            path=css_path(tag),
            visible=True,
            depth=len(list(tag.parents)),
        )


def css_path(tag: Tag) -> str:
    """Build a unique ``nth-of-type`` CSS path for an element."""
    parts = []
    current = tag
    while isinstance(current, Tag) and current.name != "[document]":
        parent = current.parent
        if parent is None:
            parts.append(current.name)
            break
        siblings = parent.find_all(current.name, recursive=False)
        if len(siblings) > 1:
            position = next(i for i, sibling in enumerate(siblings, 1) if sibling is current)
            parts.append(f"{current.name}:nth-of-type({position})")
        else:
            parts.append(current.name)
        current = parent
    return " > ".join(reversed(parts))
