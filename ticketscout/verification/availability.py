"""
Availability Checker - reads embedded inventory data from an event page

The event page embeds its inventory as `var eventPricing = {...};`. Single
seat requests only need to know that priced inventory exists; multi-seat
requests walk the per-area structure. Parsing problems are never fatal: a
page that cannot be read simply has no availability this iteration.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)

EMPTY_INVENTORY_MARKER = 'eventPricing = {};'
SOLD_OUT_MARKER = 'This event is sold out'
FULL_PRICE_PATTERN = re.compile(r'"fullPrice"\s*:\s*(\d+(?:\.\d*)?)')
PRICING_ASSIGNMENT = re.compile(r'(?:var\s+)?eventPricing\s*=\s*(?=\{)')

DEFAULT_AFFORDABILITY_CEILING = 100.0

_decoder = json.JSONDecoder()


def _to_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        pass
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class AreaInventory:
    """Inventory of one seating area; unparseable numbers are kept as None"""
    area_id: str
    availability: Optional[int]
    price_levels: Dict[str, Optional[float]] = field(default_factory=dict)

    @property
    def first_price(self) -> Optional[float]:
        """Full price of the first listed price level"""
        for price in self.price_levels.values():
            return price
        return None

    def qualifies(self, requested_seats: int, area_filter: Iterable[str] = (),
                  ceiling: float = DEFAULT_AFFORDABILITY_CEILING) -> bool:
        area_filter = list(area_filter)
        if area_filter and self.area_id not in area_filter:
            return False
        if self.availability is None or self.availability < requested_seats:
            return False
        if not self.price_levels:
            return False
        price = self.first_price
        return price is not None and price <= ceiling

    @classmethod
    def from_pricing(cls, area_id: str, details: Any) -> "AreaInventory":
        if not isinstance(details, Mapping):
            return cls(area_id, None)

        availability = _to_int(details.get('availability', 0))

        price_levels: Dict[str, Optional[float]] = {}
        pricing = details.get('pricing')
        area_pricing = pricing.get('areaPricing') if isinstance(pricing, Mapping) else None
        if isinstance(area_pricing, Mapping) and area_pricing:
            # Only the first pricing block is authoritative for an area
            first_block = next(iter(area_pricing.values()))
            levels = first_block.get('priceLevels') if isinstance(first_block, Mapping) else None
            if isinstance(levels, Mapping):
                for level_id, level in levels.items():
                    full_price = level.get('fullPrice') if isinstance(level, Mapping) else None
                    price_levels[str(level_id)] = _to_float(full_price)

        return cls(str(area_id), availability, price_levels)


@dataclass(frozen=True)
class InventorySnapshot:
    """Per-area inventory parsed from one page fetch"""
    areas: Dict[str, AreaInventory] = field(default_factory=dict)
    page_text: str = field(default='', repr=False)

    @classmethod
    def from_pricing(cls, pricing: Mapping, page_text: str = '') -> "InventorySnapshot":
        areas = {str(area_id): AreaInventory.from_pricing(area_id, details)
                 for area_id, details in pricing.items()}
        return cls(areas, page_text)

    @classmethod
    def from_page(cls, page_text: str) -> "InventorySnapshot":
        """Snapshot of a page; empty if the page carries no readable inventory"""
        pricing = parse_event_pricing(page_text)
        if pricing is None:
            return cls({}, page_text)
        return cls.from_pricing(pricing, page_text)

    def qualifying_areas(self, requested_seats: int, area_filter: Iterable[str] = (),
                         ceiling: float = DEFAULT_AFFORDABILITY_CEILING) -> List[str]:
        area_filter = list(area_filter)
        return [area_id for area_id, area in self.areas.items()
                if area.qualifies(requested_seats, area_filter, ceiling)]

    def __len__(self) -> int:
        return len(self.areas)


def parse_event_pricing(page_text: str) -> Optional[Dict[str, Any]]:
    """Extract the `eventPricing` object from a page, or None if absent/malformed"""
    match = PRICING_ASSIGNMENT.search(page_text or '')
    if not match:
        return None
    try:
        pricing, _ = _decoder.raw_decode(page_text, match.end())
    except ValueError as e:
        logger.debug(f"eventPricing is not valid JSON: {e}")
        return None
    return pricing if isinstance(pricing, dict) else None


def check_availability(page_text: str, requested_seats: int = 1, area_filter: Iterable[str] = (),
                       ceiling: float = DEFAULT_AFFORDABILITY_CEILING) -> bool:
    """True if the page shows affordable inventory for `requested_seats` in an accepted area"""
    if not page_text or EMPTY_INVENTORY_MARKER in page_text:
        return False

    if not FULL_PRICE_PATTERN.search(page_text):
        return False

    if requested_seats == 1:
        return True

    pricing = parse_event_pricing(page_text)
    if pricing is None:
        logger.debug("No parseable eventPricing on page")
        return False

    if SOLD_OUT_MARKER in page_text:
        return False

    area_filter = list(area_filter)
    for area_id, details in pricing.items():
        if AreaInventory.from_pricing(area_id, details).qualifies(requested_seats, area_filter, ceiling):
            return True

    return False
