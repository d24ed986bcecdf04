"""
Page verification - inventory availability and seat/area diagnosis
"""

from .availability import AreaInventory, InventorySnapshot, check_availability, parse_event_pricing
from .seat_view import SeatArea, analyze_seats, extract_ticket_prices, parse_venue_areas
from .text_check import wait_for_text

__all__ = ['AreaInventory', 'InventorySnapshot', 'check_availability', 'parse_event_pricing',
           'SeatArea', 'analyze_seats', 'extract_ticket_prices', 'parse_venue_areas', 'wait_for_text']
