from itemadapter import ItemAdapter

from .validators import clean_text


class EntityPipeline:
    """Entity pipeline to clean extracted items."""

    def process_item(self, item, spider=None):
        """Process each item by normalizing whitespace in string fields and dropping empty ones."""
        adapter = ItemAdapter(item)
        self._strip_values(adapter)
        return item

    def _strip_values(self, adapter: ItemAdapter) -> None:
        """Strip whitespace from string fields in the item."""
        for field in list(adapter.field_names()):
            value = adapter.get(field)
            if isinstance(value, str):
                cleaned = clean_text(value)
                if cleaned:
                    adapter[field] = cleaned
                else:
                    del adapter[field]
            elif isinstance(value, list):
                adapter[field] = [clean_text(v) for v in value if isinstance(v, str) and v.strip()]
