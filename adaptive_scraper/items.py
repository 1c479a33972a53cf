# Define here the models for your scraped items
#
# See documentation in:
# https://docs.scrapy.org/en/latest/topics/items.html

import scrapy


class EntityItem(scrapy.Item):
    """Entity item model."""

    name: str | None = scrapy.Field()
    description: str | None = scrapy.Field()
    image: str | None = scrapy.Field()
    link: str | None = scrapy.Field()
    url: str = scrapy.Field()
    quality_score: float = scrapy.Field()
