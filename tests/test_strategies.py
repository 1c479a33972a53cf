import pytest

from adaptive_scraper.models import ErrorClass
from adaptive_scraper.page import HtmlPage
from adaptive_scraper.strategies import (
    HeuristicStrategy,
    PatternStrategy,
    SelectorStrategy,
    strategy_from_key,
)
from conftest import ENTITY_URL

WEBSITE_HTML = """
<html><body>
  <script>var cfg = "website https://tracker.example.net";</script>
  <p>Official website: https://acme.example.org</p>
</body></html>
"""


class TestStrategyKeys:
    @pytest.mark.parametrize(
        "key",
        [
            "selector:h1::text",
            "selector:meta[property='og:title']::attr(content)",
            "selector:img.logo",
            "pattern:(?i)website\\W+(\\S+)",
            "heuristic:name",
        ],
    )
    def test_key_survives_parsing(self, key):
        assert strategy_from_key(key).key == key

    @pytest.mark.parametrize("key", ["xpath://h1", "selector:", "heuristic", "pattern:(unclosed"])
    def test_invalid_keys_raise_value_error(self, key):
        with pytest.raises(ValueError):
            strategy_from_key(key)


class TestSelectorStrategy:
    def test_text_value(self, entity_page):
        outcome = SelectorStrategy.parse("h1::text").attempt(entity_page)

        assert outcome.succeeded
        assert outcome.value == "Acme Corp"

    def test_attribute_value(self, entity_page):
        outcome = SelectorStrategy.parse("meta[property='og:image']::attr(content)").attempt(entity_page)

        assert outcome.value == "https://cdn.example.com/acme/logo.png"

    def test_default_attribute_by_tag(self, entity_page):
        outcome = SelectorStrategy.parse("img.entity-logo").attempt(entity_page)

        assert outcome.value == "/static/acme-logo.png"

    def test_hidden_elements_are_not_found(self, entity_page):
        outcome = SelectorStrategy.parse(".hidden-name::text").attempt(entity_page)

        assert not outcome.succeeded
        assert outcome.error_class == ErrorClass.ELEMENT_NOT_FOUND

    def test_invalid_css_is_a_failed_attempt(self, entity_page):
        outcome = SelectorStrategy.parse("h1[[::text").attempt(entity_page)

        assert outcome.error_class == ErrorClass.ELEMENT_NOT_FOUND


class TestPatternStrategy:
    def test_matches_visible_text_only(self):
        page = HtmlPage(WEBSITE_HTML, url=ENTITY_URL)

        outcome = PatternStrategy(r"(?i)\bwebsite\b\W{0,3}(https?://[^\s<>\"']+)").attempt(page)

        assert outcome.value == "https://acme.example.org"

    def test_no_match(self, entity_page):
        outcome = PatternStrategy(r"founded in (\d{5})").attempt(entity_page)

        assert outcome.error_class == ErrorClass.ELEMENT_NOT_FOUND


class TestHeuristicStrategy:
    def test_name(self, entity_page):
        assert HeuristicStrategy("name").attempt(entity_page).value == "Acme Corp"

    def test_image_is_resolved_against_page_url(self, entity_page):
        outcome = HeuristicStrategy("image").attempt(entity_page)

        assert outcome.value == "https://www.example.com/static/acme-logo.png"

    def test_link_prefers_external_site(self, entity_page):
        outcome = HeuristicStrategy("link").attempt(entity_page)

        assert outcome.value == "https://acme.example.org"

    def test_empty_page(self):
        page = HtmlPage("<html><body></body></html>", url=ENTITY_URL)

        outcome = HeuristicStrategy("name").attempt(page)

        assert outcome.error_class == ErrorClass.ELEMENT_NOT_FOUND
