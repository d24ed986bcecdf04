"""
Seat reservation against the seller's ticketing API
"""

from .purchase_executor import PurchaseExecutor, PurchaseOutcome, parse_ticket_details

__all__ = ['PurchaseExecutor', 'PurchaseOutcome', 'parse_ticket_details']
