"""Field-type specific validation of extracted values."""

import re
from urllib.parse import urljoin, urlsplit

from core import settings

from .errors import ValidationError

FIELD_WEIGHTS = {
    "name": settings.NAME_WEIGHT,
    "description": settings.DESCRIPTION_WEIGHT,
    "image": settings.IMAGE_WEIGHT,
    "link": settings.LINK_WEIGHT,
}

_WHITESPACE = re.compile(r"\s+")


def clean_text(value: str) -> str:
    """Collapse runs of whitespace and strip the ends."""
    return _WHITESPACE.sub(" ", value).strip()


def validate_name(value: str) -> tuple[str, float]:
    name = clean_text(value)
    if len(name) < settings.NAME_MIN_LENGTH:
        raise ValidationError("Name too short", {"value": name})
    if len(name) > settings.NAME_MAX_LENGTH:
        raise ValidationError("Name too long", {"length": len(name)})
    if name.lower() in settings.BLOCK_VOCABULARY:
        raise ValidationError("Name is block-page text", {"value": name})
    if name.lower().startswith(("http://", "https://")):
        raise ValidationError("Name is a URL", {"value": name})
    return name, 1.0


def validate_description(value: str) -> tuple[str, float]:
    description = clean_text(value)
    if len(description) < settings.DESCRIPTION_MIN_LENGTH:
        raise ValidationError("Description too short", {"length": len(description)})
    if len(description) > settings.DESCRIPTION_MAX_LENGTH:
        description = description[: settings.DESCRIPTION_MAX_LENGTH].rsplit(" ", 1)[0]
    lowered = description.lower()
    if any(phrase in lowered for phrase in settings.BLOCK_VOCABULARY) and len(description) < 100:
        raise ValidationError("Description is block-page text", {"value": description})
    # Short blurbs are accepted with reduced confidence
    score = 1.0 if len(description) >= 50 else 0.7
    return description, score


def validate_url(value: str, base_url: str | None = None) -> str:
    """Resolve a URL against the page and check scheme and length.

    Raises:
        ValidationError: If the URL is empty, too long or not http(s)
    """
    url = value.strip()
    if not url:
        raise ValidationError("Empty URL")
    if base_url:
        url = urljoin(base_url, url)
    parts = urlsplit(url)
    if parts.scheme.lower() not in settings.ALLOWED_URL_SCHEMES:
        raise ValidationError("URL scheme not allowed", {"url": url[:100]})
    if not parts.hostname:
        raise ValidationError("URL has no host", {"url": url[:100]})
    if len(url) > settings.MAX_URL_LENGTH:
        raise ValidationError("URL too long", {"length": len(url)})
    return url


def validate_image(value: str, base_url: str | None = None) -> tuple[str, float]:
    url = validate_url(value, base_url)
    lowered = url.lower()
    if any(x in lowered for x in ["spacer", "pixel.gif", "1x1"]):
        raise ValidationError("Image is a tracking pixel", {"url": url[:100]})
    return url, 1.0


def validate_link(value: str, base_url: str | None = None) -> tuple[str, float]:
    url = validate_url(value, base_url)
    host = (urlsplit(url).hostname or "").lower()
    if any(host == social or host.endswith("." + social) for social in settings.SOCIAL_HOSTS):
        return url, 0.5
    return url, 1.0


def validate_field(field_type: str, value: str | None, base_url: str | None = None, visible: bool = True) -> tuple[str, float]:
    """Validate and normalize a value for its field type.

    Args:
        field_type: One of name, description, image, link
        value: Raw extracted value
        base_url: Page URL used to resolve relative image and link URLs
        visible: Whether the source element was visible on the page

    Returns:
        (cleaned value, validation score in (0, 1])

    Raises:
        ValidationError: If the value is rejected
    """
    if value is None or not str(value).strip():
        raise ValidationError("Empty value", {"field": field_type})
    if not visible:
        raise ValidationError("Source element is not visible", {"field": field_type})

    value = str(value)
    if field_type == "name":
        return validate_name(value)
    if field_type == "description":
        return validate_description(value)
    if field_type == "image":
        return validate_image(value, base_url)
    if field_type == "link":
        return validate_link(value, base_url)

    text = clean_text(value)
    if len(text) >= 1000:
        raise ValidationError("Value too long", {"field": field_type, "length": len(text)})
    return text, 1.0


def quality_contribution(field_type: str, validation_score: float) -> float:
    """Weighted share of the entity quality score contributed by one field."""
    return FIELD_WEIGHTS.get(field_type, 0.0) * validation_score
