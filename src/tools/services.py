"""Service catalog: grooming categories and their size / coat variants."""

import logging
from typing import Iterable, Optional

from src.schemas.scheduling_schema import ServiceItem

logger = logging.getLogger(__name__)

ANY_VARIANT = "all"

SERVICE_ALIASES: dict[str, str] = {
    "groom": "full_groom", "haircut": "full_groom", "full groom": "full_groom",
    "trim": "full_groom", "clip": "full_groom",
    "bath": "bath_brush", "wash": "bath_brush", "shampoo": "bath_brush",
    "brush": "bath_brush", "deshed": "bath_brush",
    "nails": "nail_trim", "nail": "nail_trim", "claws": "nail_trim",
    "teeth": "teeth_cleaning", "dental": "teeth_cleaning",
}


def _normalize(value: Optional[str]) -> str:
    return (value or ANY_VARIANT).lower().strip()


class ServiceCatalog:
    """In-memory view of the bookable service items of one company."""

    def __init__(self, items: Iterable[ServiceItem] = ()) -> None:
        self._items: dict[str, ServiceItem] = {}
        for item in items:
            self.add(item)

    def add(self, item: ServiceItem) -> None:
        self._items[item.service_item_id] = item

    def get(self, service_item_id: str) -> Optional[ServiceItem]:
        return self._items.get(service_item_id)

    def items(self, include_inactive: bool = False) -> list[ServiceItem]:
        return [i for i in self._items.values() if include_inactive or i.active]

    def categories(self) -> list[str]:
        """Category ids that have at least one active variant."""
        return sorted({i.service_category_id for i in self.items()})

    def variants(self, category_id: str) -> list[ServiceItem]:
        return sorted(
            (i for i in self.items() if i.service_category_id == category_id),
            key=lambda i: i.service_item_id,
        )

    def select_variant(
        self,
        category_id: str,
        size: Optional[str] = None,
        coat_type: Optional[str] = None,
    ) -> Optional[ServiceItem]:
        """
        Pick the variant that best matches a pet.

        An exact size and coat match wins, then an exact size with any coat,
        then any size with the exact coat, then the ``all``/``all`` variant.
        Returns None when the category has no usable variant.
        """
        size = _normalize(size)
        coat_type = _normalize(coat_type)
        by_key = {
            (_normalize(v.size), _normalize(v.coat_type)): v
            for v in reversed(self.variants(category_id))
        }
        for key in (
            (size, coat_type),
            (size, ANY_VARIANT),
            (ANY_VARIANT, coat_type),
            (ANY_VARIANT, ANY_VARIANT),
        ):
            variant = by_key.get(key)
            if variant is not None:
                return variant
        logger.info(
            "No variant of %s for size=%s coat_type=%s", category_id, size, coat_type
        )
        return None


def match_category(query: str, catalog: ServiceCatalog) -> Optional[str]:
    """Match free text to a category id in ``catalog``. Returns None if no match."""
    normalized = query.lower().strip()
    known = catalog.categories()
    for alias, category_id in SERVICE_ALIASES.items():
        if alias in normalized and category_id in known:
            return category_id
    for category_id in known:
        readable = category_id.replace("_", " ")
        if readable in normalized or normalized in readable:
            return category_id
    return None
