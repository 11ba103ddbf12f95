"""
Catalog - Items up for auction and their minimum-bid floors.

The engine only needs two lookups from the catalog: the list of item
identifiers (snapshotted when a session is created) and each item's
minimum bid. Floors come from a rating-based tier.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Protocol

from gavel.core.errors import NotFound, ValidationError
from gavel.utils.logger import get_logger

logger = get_logger("catalog")


# =============================================================================
# Tiers
# =============================================================================


@dataclass(frozen=True)
class TierInfo:
    name: str
    min_rating: int
    minimum_bid: int


class Tier(Enum):
    """Rating tiers, highest first."""
    GOLD = TierInfo("gold", 85, 50_000)
    SILVER = TierInfo("silver", 75, 30_000)
    BRONZE = TierInfo("bronze", 65, 10_000)
    EXTRA = TierInfo("extra", 0, 0)

    @property
    def minimum_bid(self) -> int:
        return self.value.minimum_bid

    @property
    def label(self) -> str:
        return self.value.name


def tier_for_rating(rating: int) -> Tier:
    """Pick the highest tier whose threshold the rating reaches."""
    for tier in Tier:
        if rating >= tier.value.min_rating:
            return tier
    return Tier.EXTRA


# =============================================================================
# Items
# =============================================================================


@dataclass(frozen=True)
class CatalogItem:
    """A catalog entry. Only item_id and minimum_bid matter to the engine."""
    item_id: str
    name: str
    rating: int
    position: str = ""
    minimum_bid_override: Optional[int] = None

    @property
    def tier(self) -> Tier:
        return tier_for_rating(self.rating)

    @property
    def minimum_bid(self) -> int:
        if self.minimum_bid_override is not None:
            return self.minimum_bid_override
        return self.tier.minimum_bid


class CatalogProvider(Protocol):
    """What the engine needs from a catalog."""

    def list_items(self) -> List[str]:
        ...

    def get_item(self, item_id: str) -> CatalogItem:
        ...


class InMemoryCatalog:
    """
    Catalog held in a dict, in insertion order.

    Suitable for tests, demos and small fixed catalogs.
    """

    def __init__(self, items: Optional[Iterable[CatalogItem]] = None):
        self._items: Dict[str, CatalogItem] = {}
        for item in items or []:
            self.add(item)

    def add(self, item: CatalogItem) -> None:
        if not item.item_id:
            raise ValidationError("item_id must not be empty")
        if item.minimum_bid < 0:
            raise ValidationError(f"minimum bid for {item.item_id} must be >= 0")
        self._items[item.item_id] = item

    def list_items(self) -> List[str]:
        return list(self._items)

    def get_item(self, item_id: str) -> CatalogItem:
        try:
            return self._items[item_id]
        except KeyError:
            raise NotFound(f"Item {item_id} not in catalog") from None

    @classmethod
    def from_records(cls, records: Iterable[dict]) -> "InMemoryCatalog":
        """
        Build a catalog from plain dicts.

        Each record needs "id", "name" and "rating"; "position" and
        "minimum_bid" are optional.
        """
        catalog = cls()
        for record in records:
            try:
                catalog.add(
                    CatalogItem(
                        item_id=str(record["id"]),
                        name=record["name"],
                        rating=int(record["rating"]),
                        position=record.get("position", ""),
                        minimum_bid_override=record.get("minimum_bid"),
                    )
                )
            except KeyError as e:
                raise ValidationError(f"Catalog record missing field {e}") from None
        logger.debug(f"Loaded {len(catalog)} catalog items")
        return catalog

    def __len__(self) -> int:
        return len(self._items)
