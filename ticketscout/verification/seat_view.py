"""
Seat/Area Analyzer - diagnoses what is sellable after a failed reservation

The event page also embeds a venue description as a JavaScript object
literal (`venueAreasObj.init({ 'productId': ... })`) with single-quoted
strings and bare keys. It is converted to JSON by a small scanner that
understands string literals, so apostrophes inside names survive.
"""

import json
import logging
import math
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from .availability import DEFAULT_AFFORDABILITY_CEILING, FULL_PRICE_PATTERN, _to_float, _to_int

logger = logging.getLogger(__name__)

VENUE_AREAS_PATTERN = re.compile(r"venueAreasObj\.init.*?(\{\s*'productId'.*?\}\}\]\s*\})\s*,", re.DOTALL)
_BARE_KEY = re.compile(r'[A-Za-z_$][\w$]*')
_JS_LITERALS = {'true', 'false', 'null'}


@dataclass(frozen=True)
class SeatArea:
    """A sellable area found on the page"""
    free_count: int
    area_id: str
    available_price_levels: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def js_object_to_json(literal: str) -> str:
    """Rewrite a JS object literal (single quotes, bare keys, trailing commas) as JSON"""
    out = []
    i = 0
    length = len(literal)
    while i < length:
        ch = literal[i]

        if ch in ('"', "'"):
            quote = ch
            i += 1
            chars = []
            while i < length and literal[i] != quote:
                if literal[i] == '\\' and i + 1 < length:
                    nxt = literal[i + 1]
                    if nxt in ("'", '"', '\\'):
                        chars.append(nxt)
                    elif nxt == 'n':
                        chars.append('\n')
                    elif nxt == 't':
                        chars.append('\t')
                    else:
                        chars.append(nxt)
                    i += 2
                    continue
                chars.append(literal[i])
                i += 1
            if i >= length:
                raise ValueError("unterminated string literal")
            out.append(json.dumps(''.join(chars)))
            i += 1
            continue

        if ch == ',':
            # Drop trailing commas before a closing bracket
            j = i + 1
            while j < length and literal[j].isspace():
                j += 1
            if j < length and literal[j] in '}]':
                i += 1
                continue

        # Letters directly after a digit belong to a number (1e5), not a key
        starts_word = (ch.isalpha() or ch in "_$") and (
            i == 0 or not (literal[i - 1].isalnum() or literal[i - 1] in "._$"))
        match = _BARE_KEY.match(literal, i) if starts_word else None
        if match:
            word = match.group(0)
            if word in _JS_LITERALS:
                out.append(word)
            else:
                out.append(json.dumps(word))
            i = match.end()
            continue

        out.append(ch)
        i += 1

    return ''.join(out)


def parse_venue_areas(page_text: str) -> Optional[Dict[str, Any]]:
    """Extract and parse the venue areas object, or None if absent/malformed"""
    match = VENUE_AREAS_PATTERN.search(page_text or '')
    if not match:
        return None
    try:
        data = json.loads(js_object_to_json(match.group(1)))
    except ValueError as e:
        logger.warning(f"Failed to parse venue areas data: {e}")
        return None
    return data if isinstance(data, dict) else None


def extract_ticket_prices(page_text: str, ceiling: float = DEFAULT_AFFORDABILITY_CEILING) -> Set[int]:
    """Whole-unit full prices at or under the ceiling found anywhere on the page"""
    prices = set()
    for match in FULL_PRICE_PATTERN.finditer(page_text or ''):
        price = _to_float(match.group(1))
        if price is not None and price <= ceiling:
            prices.add(int(math.floor(price + 0.5)))
    return prices


def _has_affordable_price(price_list: Any, ceiling: float) -> bool:
    if not isinstance(price_list, Mapping):
        return False
    for level_prices in price_list.values():
        values = level_prices.values() if isinstance(level_prices, Mapping) else [level_prices]
        for price in values:
            price = _to_float(price)
            if price is not None and price <= ceiling:
                return True
    return False


def _sellable_areas(areas: Iterable[Any], area_filter: List[str], ceiling: float) -> Dict[str, SeatArea]:
    result = {}
    for area in areas:
        if not isinstance(area, Mapping):
            continue

        free = _to_int(area.get('free'))
        if free is None or free <= 0:
            continue

        if not _has_affordable_price(area.get('priceList'), ceiling):
            continue

        area_id = str(area.get('guid', ''))
        if area_filter and area_id not in area_filter:
            continue

        levels = []
        availability = area.get('priceLevelsAvailability')
        if isinstance(availability, Mapping):
            for level_id, count in availability.items():
                count = _to_int(count)
                if count is not None and count >= 1:
                    levels.append(str(level_id))

        name = str(area.get('name') or area_id)
        result[name] = SeatArea(free_count=free, area_id=area_id, available_price_levels=levels)
    return result


def analyze_seats(page_text: str, area_filter: Iterable[str] = (),
                  ceiling: float = DEFAULT_AFFORDABILITY_CEILING,
                  profile_id: str = "global") -> Dict[str, SeatArea]:
    """Map area name -> SeatArea for every sellable, affordable, accepted area.

    An empty mapping is a normal negative result; this never raises.
    """
    try:
        prices = extract_ticket_prices(page_text, ceiling)
        logger.info(f"[{profile_id}] Found ticket prices: {sorted(prices)}")

        venue = parse_venue_areas(page_text)
        if venue is None:
            logger.warning(f"[{profile_id}] No venue areas data found in match page")
            return {}

        areas = venue.get('areas')
        if not isinstance(areas, list):
            return {}

        result = _sellable_areas(areas, list(area_filter), ceiling)
        if result:
            summary = {name: area.free_count for name, area in result.items()}
            logger.info(f"[{profile_id}] Available seats: {summary}")
        return result

    except Exception as e:
        logger.error(f"[{profile_id}] Seat view error: {e}")
        return {}
