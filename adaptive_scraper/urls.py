import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from core import settings

from .models import ExtractionContext

_VARIABLE_SEGMENT = re.compile(r"\d|^[0-9a-f]{16,}$|^[A-Za-z0-9_-]{25,}$")


def domain_of(url: str) -> str:
    """Return the bare hostname of a URL (no ``www.``), or the input if unparseable."""
    host = (urlsplit(url).hostname or "").lower()
    if not host:
        return url
    return host[4:] if host.startswith("www.") else host


def normalize_url(url: str) -> str:
    """Normalize an entity URL before (re)navigation.

    Drops fragments and tracking parameters, maps mobile hosts onto the
    desktop host and upgrades scheme-less or http URLs to https.
    """
    if "://" not in url:
        url = f"https://{url.lstrip('/')}"
    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    for prefix in settings.MOBILE_HOST_PREFIXES:
        if host.startswith(prefix):
            host = "www." + host[len(prefix) :]
            break
    netloc = host if parts.port is None else f"{host}:{parts.port}"

    query = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k not in settings.TRACKING_QUERY_PARAMS and not k.startswith(settings.TRACKING_QUERY_PREFIXES)
    ]
    path = parts.path or "/"
    if len(path) > 1:
        path = path.rstrip("/")
    return urlunsplit(("https", netloc, path, urlencode(query), ""))


def path_template(url: str) -> str:
    """Reduce a URL path to the template shared by all entity pages of a site."""
    parts = urlsplit(url)
    host = domain_of(url)
    path = parts.path or "/"

    for site, templates in settings.SITE_PATH_TEMPLATES.items():
        if host == site or host.endswith("." + site):
            for pattern, template in templates:
                if re.match(pattern, path):
                    return template

    segments = [s for s in path.split("/") if s][: settings.PATH_TEMPLATE_DEPTH]
    normalized = ["*" if _VARIABLE_SEGMENT.search(s) else s.lower() for s in segments]
    return "/" + "/".join(normalized)


def context_for(url: str, field_type: str) -> ExtractionContext:
    """Build the learning context (site template, field type) for a page URL."""
    return ExtractionContext(site_template=f"{domain_of(url)}{path_template(url)}", field_type=field_type)
