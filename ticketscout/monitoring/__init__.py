"""
Profile monitoring loops, their engine and the status sink
"""

from .status import (PurchaseSuccessEvent, ProfileStatus, StateTransitionEvent, StatusSink,
                     TicketFallEvent)
from .ticket_monitor import ProfileMonitor, ProfileRunState
from .engine import MonitoringEngine

__all__ = ['ProfileStatus', 'StatusSink', 'StateTransitionEvent', 'TicketFallEvent',
           'PurchaseSuccessEvent', 'ProfileMonitor', 'ProfileRunState', 'MonitoringEngine']
