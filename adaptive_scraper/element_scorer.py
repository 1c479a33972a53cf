import re
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, Tag

from core import settings

from .page import NON_RENDERED_TAGS


class ElementScorer:
    """Scores elements of an entity page to identify its name, description, image and link.

    Uses heuristics based on:
        - HTML tag type
        - Position in the document
        - Text length and content
        - Image attributes (src, alt, size hints)
        - Link targets (external, social, fragment)
    """

    def __init__(self: "ElementScorer") -> None:
        self.weights = {
            "name": {
                "tag_score": 0.35,
                "position_score": 0.20,
                "length_score": 0.25,
                "semantic_score": 0.20,
            },
            "description": {
                "tag_score": 0.25,
                "position_score": 0.15,
                "length_score": 0.40,
                "semantic_score": 0.20,
            },
            "image": {
                "tag_score": 0.2,
                "position_score": 0.2,
                "size_score": 0.3,
                "alt_score": 0.3,
            },
            "link": {
                "href_score": 0.5,
                "position_score": 0.1,
                "text_score": 0.4,
            },
        }

    def score_name_candidates(self: "ElementScorer", root: Tag) -> list[tuple[Tag, float]]:
        """Score all potential entity name elements.

        Returns:
            List of (element, score) tuples, sorted by score (highest first)
        """
        candidates = []
        elements = self._rendered_elements(root)

        for element in elements:
            text = element.get_text(strip=True)
            if not text or len(text) < settings.MINIMUM_NAME_LENGTH or len(text) > settings.NAME_MAX_LENGTH:
                continue

            # Want the most specific element
            if self._has_text_children(element):
                continue

            score = self._score_name(element, elements)
            if score > settings.MINIMUM_THRESHOLD_SCORE:
                candidates.append((element, score))

        candidates.sort(key=lambda x: x[1], reverse=True)
        return candidates

    def _score_name(self: "ElementScorer", element: Tag, elements: list[Tag]) -> float:
        scores = {}

        tag_hierarchy = {"h1": 1.0, "h2": 0.7, "h3": 0.5, "strong": 0.4, "span": 0.3, "div": 0.2, "p": 0.1}
        scores["tag_score"] = tag_hierarchy.get(element.name, 0.1)
        if element.get("itemprop") == "name":
            scores["tag_score"] = 1.0

        scores["position_score"] = self._get_position_score(element, elements)

        # Entity names are short: 2-80 chars is optimal
        length = len(element.get_text(strip=True))
        if 2 <= length <= 80:
            scores["length_score"] = 1.0
        elif length <= 120:
            scores["length_score"] = 0.6
        else:
            scores["length_score"] = max(0, 1.0 - (length - 120) / 200)

        scores["semantic_score"] = self._score_name_semantics(element.get_text(strip=True))

        weights = self.weights["name"]
        return sum(scores[k] * weights[k] for k in scores)

    def _score_name_semantics(self: "ElementScorer", text: str) -> float:
        """Score text based on name-like characteristics."""
        score = 0.5

        if text and text[0].isupper():
            score += 0.2

        if text and text[0].isdigit():
            score -= 0.3

        special_chars = len(re.findall(r"[^\w\s&.,'-]", text))
        if special_chars / max(len(text), 1) < 0.1:
            score += 0.2

        # Sentences are descriptions, not names
        if text.endswith((".", "!", "?")) or len(text.split()) > 12:
            score -= 0.4

        if text.lower() in settings.BLOCK_VOCABULARY:
            score -= 0.5
        return max(0, min(1, score))

    def score_description_candidates(self: "ElementScorer", root: Tag) -> list[tuple[Tag, float]]:
        """Score all potential entity description elements."""
        candidates = []
        elements = self._rendered_elements(root)

        for element in elements:
            text = element.get_text(" ", strip=True)
            if not text or len(text) < settings.MINIMUM_DESCRIPTION_LENGTH:
                continue

            if self._has_text_children(element):
                continue

            score = self._score_description(element, elements)
            if score > settings.MINIMUM_THRESHOLD_SCORE:
                candidates.append((element, score))

        candidates.sort(key=lambda x: x[1], reverse=True)
        return candidates

    def _score_description(self: "ElementScorer", element: Tag, elements: list[Tag]) -> float:
        scores = {}

        tag_hierarchy = {"p": 1.0, "section": 0.7, "div": 0.6, "span": 0.5, "blockquote": 0.5, "li": 0.2, "a": 0.1}
        scores["tag_score"] = tag_hierarchy.get(element.name, 0.3)
        if element.get("itemprop") == "description":
            scores["tag_score"] = 1.0

        scores["position_score"] = self._get_position_score(element, elements)

        # 80-600 chars reads like an about/summary paragraph
        length = len(element.get_text(" ", strip=True))
        if 80 <= length <= 600:
            scores["length_score"] = 1.0
        elif 30 <= length <= 1000:
            scores["length_score"] = 0.6
        else:
            scores["length_score"] = 0.2

        text = element.get_text(" ", strip=True)
        semantic_score = 0.5
        if text.count(".") >= 1:
            semantic_score += 0.3
        if any(word in text.lower() for word in settings.BLOCK_VOCABULARY):
            semantic_score -= 0.4
        if element.find_parent(["nav", "footer", "header"]):
            semantic_score -= 0.3
        scores["semantic_score"] = max(0, min(1, semantic_score))

        weights = self.weights["description"]
        return sum(scores[k] * weights[k] for k in scores)

    def score_image_candidates(self: "ElementScorer", root: Tag) -> list[tuple[Tag, float]]:
        """Score all potential entity image elements."""
        candidates = []
        elements = self._rendered_elements(root)

        for img in elements:
            if img.name != "img" or not img.get("src"):
                continue
            score = self._score_image(img, elements)
            if score > settings.MINIMUM_THRESHOLD_SCORE:
                candidates.append((img, score))

        candidates.sort(key=lambda x: x[1], reverse=True)
        return candidates

    def _score_image(self: "ElementScorer", img: Tag, elements: list[Tag]) -> float:
        scores = {}

        scores["tag_score"] = 1.0
        scores["position_score"] = self._get_position_score(img, elements)

        # Size score (inferred from src or attributes)
        size_score = settings.DEFAULT_IMAGE_SIZE_SCORE
        src = img.get("src", "").lower()
        if src.startswith("data:") or any(x in src for x in ["pixel", "spacer", "1x1", "sprite"]):
            size_score = 0.0
        elif any(x in src for x in ["logo", "profile", "avatar"]):
            size_score = 1.0
        elif "icon" in src:
            size_score = 0.2
        elif any(x in src for x in ["1200", "800", "large", "full"]):
            size_score = 0.8

        width = img.get("width", "")
        if width.isdigit() and int(width) < 32:
            size_score = min(size_score, 0.1)
        scores["size_score"] = size_score

        # Alt text score (logos and profile pictures usually say so)
        alt = img.get("alt", "").lower()
        if any(x in alt for x in ["logo", "profile", "avatar"]):
            scores["alt_score"] = 1.0
        elif alt and len(alt) > 10:
            scores["alt_score"] = 0.6
        elif alt:
            scores["alt_score"] = 0.4
        else:
            scores["alt_score"] = 0.2

        weights = self.weights["image"]
        return sum(scores[k] * weights[k] for k in scores)

    def score_link_candidates(self: "ElementScorer", root: Tag, page_url: str | None = None) -> list[tuple[Tag, float]]:
        """Score all potential entity website links.

        Args:
            root: Element to search
            page_url: URL of the page, used to tell external links from internal ones
        """
        candidates = []
        elements = self._rendered_elements(root)

        for link in elements:
            if link.name != "a" or not link.get("href"):
                continue
            score = self._score_link(link, elements, page_url)
            if score > 0.3:
                candidates.append((link, score))

        candidates.sort(key=lambda x: x[1], reverse=True)
        return candidates

    def _score_link(self: "ElementScorer", link: Tag, elements: list[Tag], page_url: str | None) -> float:
        scores = {}

        href = link.get("href", "").strip()
        href_score = settings.DEFAULT_LINK_SCORE
        target = urljoin(page_url, href) if page_url else href
        host = (urlsplit(target).hostname or "").lower()
        page_host = (urlsplit(page_url).hostname or "").lower() if page_url else ""

        if href.startswith(("#", "javascript:", "mailto:", "tel:")):
            href_score = 0.0
        elif any(host == social or host.endswith("." + social) for social in settings.SOCIAL_HOSTS):
            href_score = 0.1
        elif host and page_host and host != page_host:
            href_score = 1.0
        elif href.startswith("/"):
            href_score = 0.2
        if link.get("itemprop") == "url" or "me" in link.get("rel", []):
            href_score = max(href_score, 0.9)
        scores["href_score"] = href_score

        scores["position_score"] = self._get_position_score(link, elements)

        text = link.get_text(strip=True).lower()
        if any(x in text for x in ["website", "visit", "homepage", "www."]):
            scores["text_score"] = 1.0
        elif host and host.replace("www.", "") in text:
            scores["text_score"] = 0.9
        elif text:
            scores["text_score"] = 0.3
        else:
            scores["text_score"] = 0.1

        weights = self.weights["link"]
        return sum(scores[k] * weights[k] for k in scores)

    def _rendered_elements(self: "ElementScorer", root: Tag) -> list[Tag]:
        """Elements under root in document order, skipping non-rendered and hidden subtrees."""
        elements = []
        for element in root.descendants:
            if not isinstance(element, Tag):
                continue
            if element.name in NON_RENDERED_TAGS or element.find_parent(sorted(NON_RENDERED_TAGS - {"html"})):
                continue
            if element.has_attr("hidden") or element.find_parent(attrs={"hidden": True}):
                continue
            elements.append(element)
        return elements

    def _get_position_score(self: "ElementScorer", element: Tag, elements: list[Tag]) -> float:
        """Score based on position in the document.

        Earlier elements get higher scores (entity headers sit at the top).
        """
        position = next((i for i, e in enumerate(elements) if e is element), None)
        if position is None:
            return 0.5

        # First 20% of elements get score 0.8-1.0
        # Next 30% get 0.5-0.8
        # Rest get 0.2-0.5
        relative_pos = position / max(len(elements), 1)

        if relative_pos < 0.2:
            score = 1.0 - (relative_pos / 0.2) * 0.2
        elif relative_pos < 0.5:
            score = 0.8 - ((relative_pos - 0.2) / 0.3) * 0.3
        else:
            score = 0.5 - ((relative_pos - 0.5) / 0.5) * 0.3
        return max(0.1, score)

    def _has_text_children(self: "ElementScorer", element: Tag) -> bool:
        """Check if element has children with text (not a leaf text node)."""
        for child in element.children:
            if isinstance(child, Tag):
                child_text = child.get_text(strip=True)
                if child_text and len(child_text) > settings.MINIMUM_CHILD_TEXT_LENGTH:
                    return True
        return False


def element_value(element: Tag, field_type: str, page_url: str | None = None) -> str:
    """Value a field takes from an element: src for images, href for links, text otherwise."""
    if field_type == "image":
        src = element.get("src", "")
        return urljoin(page_url, src) if page_url else src
    if field_type == "link":
        href = element.get("href", "")
        return urljoin(page_url, href) if page_url else href
    return element.get_text(" ", strip=True)


def best_field_value(soup: BeautifulSoup, field_type: str, page_url: str | None = None) -> str | None:
    """Score the document and return the best value for a field.

    Meant to run through ``Page.evaluate``, which passes the parsed document.
    """
    scorer = ElementScorer()
    root = soup.body or soup
    scorers = {
        "name": scorer.score_name_candidates,
        "description": scorer.score_description_candidates,
        "image": scorer.score_image_candidates,
        "link": lambda r: scorer.score_link_candidates(r, page_url),
    }
    if field_type not in scorers:
        return None
    candidates = scorers[field_type](root)
    if not candidates:
        return None
    return element_value(candidates[0][0], field_type, page_url)
