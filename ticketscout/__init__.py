"""
TicketScout - per-profile ticket monitoring and purchase engine

Bridges live browser sessions into lightweight HTTP sessions, polls event
pages for inventory and reserves seats when they appear.
"""

__version__ = "0.4.0"
