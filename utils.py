from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from adaptive_scraper.page import PageElement


def format_candidate(elem: "PageElement", score: float) -> dict[str, Any]:
    """Format a candidate element with its tag, text, score, and classes."""
    if elem.tag == "img":
        text = elem.get("src", "")[:80]
    elif elem.tag == "a":
        text = f"{elem.text[:50]} -> {elem.get('href', '')[:30]}"
    elif elem.tag == "meta":
        text = elem.get("content", "")[:80]
    else:
        text = elem.text[:80]

    return {
        "tag": elem.tag,
        "text": text,
        "score": round(score, 3),
        "classes": elem.classes,
        "path": elem.path,
    }
