import pytest

from adaptive_scraper.page import HtmlPage
from adaptive_scraper.selector_discovery import SelectorDiscovery, is_random_class
from conftest import ENTITY_URL, TRAP_HTML

TEST_ID_HTML = """
<html><body>
  <div data-testid="company-name" class="x1y2z3a4">Acme Corp</div>
  <span class="company-label">Acme Corp</span>
</body></html>
"""

TWO_LABELS_HTML = """
<html><body>
  <span class="label-one">Globex</span>
  <span class="label-two">Acme Corp</span>
</body></html>
"""


@pytest.mark.parametrize(
    "cls, expected",
    [
        ("entity-title", False),
        ("company-label", False),
        ("css-1q2w3e", True),
        ("a1b2c3", True),
        ("deadbeef42", True),
        ("ab", True),
    ],
)
def test_is_random_class(cls, expected):
    assert is_random_class(cls) is expected


class TestDiscover:
    def test_stable_test_ids_rank_first(self):
        page = HtmlPage(TEST_ID_HTML, url=ENTITY_URL)

        keys = SelectorDiscovery().discover(page, "name")

        assert keys[0] == 'selector:[data-testid="company-name"]::text'
        assert not any("x1y2z3a4" in key for key in keys)

    def test_content_hint_biases_ranking(self):
        page = HtmlPage(TWO_LABELS_HTML, url=ENTITY_URL)
        discovery = SelectorDiscovery()

        assert discovery.discover(page, "name")[0] == "selector:.label-one::text"
        assert discovery.discover(page, "name", content_hint="acme")[0] == "selector:.label-two::text"

    def test_image_selectors_extract_sources(self, entity_page):
        keys = SelectorDiscovery().discover(entity_page, "image")

        assert 'selector:img[alt="Acme logo"]::attr(src)' in keys
        assert all(key.endswith(("::attr(src)", "::attr(content)")) for key in keys)

    def test_discovered_selectors_resolve_on_the_page(self, entity_page):
        keys = SelectorDiscovery(top_k=5).discover(entity_page, "name")

        assert 0 < len(keys) <= 5
        assert not any("hidden-name" in key for key in keys)

    def test_limit(self, entity_page):
        assert len(SelectorDiscovery().discover(entity_page, "description", limit=2)) == 2

    def test_limit_above_top_k(self, entity_page):
        keys = SelectorDiscovery(top_k=2).discover(entity_page, "name", limit=6)

        assert 2 < len(keys) <= 6

    def test_trap_elements_are_avoided(self):
        page = HtmlPage(TRAP_HTML, url=ENTITY_URL)
        discovery = SelectorDiscovery()

        assert "selector:.brand::text" in discovery.discover(page, "name")

        keys = discovery.discover(page, "name", avoid=[".bot-trap"])

        assert "selector:.entity-title::text" in keys
        assert not any("bot-trap" in key or ".brand::" in key for key in keys)
        assert "selector:span::text" not in keys


def test_get_discovery_info(entity_page):
    info = SelectorDiscovery(top_k=3).get_discovery_info(entity_page, "name")

    assert info["field_type"] == "name"
    assert info["total_variants"] >= 3
    assert len(info["top_variants"]) == 3
    assert {"selector", "kind", "tag", "score", "path"} <= set(info["top_variants"][0])
