#!/usr/bin/env python3
"""
Purchase Executor - issues the reservation request and interprets the reply

200 puts the tickets in the basket and ends monitoring, 400 means the
inventory moved between check and reservation (diagnosed as a possible
ticket fall), 403/406 are hard seller-side blocks.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..config import EngineSettings, ProfileConfig
from ..monitoring.status import PurchaseSuccessEvent, StatusSink, TicketFallEvent
from ..session.http_session import HttpResponse, HttpSession
from ..utils.cancellation import StopSignal
from ..utils.logging_setup import PURCHASE_LOGGER
from ..utils.retry import execute_with_retry
from ..verification.availability import InventorySnapshot
from ..verification.seat_view import SeatArea, analyze_seats, extract_ticket_prices

RESERVATION_PATH = '/handlers/api.ashx/0.1/TicketingController.SetEventTickets'
ORDER_PAGE = 'Order.aspx'

# Response-status labels shown to the operator
REJECTION_LABELS = {
    403: '403TError',
    406: '406TError',
}


@dataclass(frozen=True)
class PurchaseOutcome:
    purchased: bool
    should_stop_loop: bool
    status: Optional[int] = None
    reason: str = ''
    ticket_details: Optional[Dict[str, Any]] = None
    seat_analysis: Dict[str, SeatArea] = field(default_factory=dict)


def parse_ticket_details(body: str) -> Dict[str, Any]:
    """Summarise a 200 reservation body (a JSON list of reserved seats)"""
    try:
        tickets = json.loads(body) if body else None
    except ValueError:
        return {'ticket_type': 'No json found', 'details': 'Failed to parse response', 'count': 0, 'tickets': []}

    if not isinstance(tickets, list) or not tickets:
        return {'ticket_type': 'Unknown', 'details': 'No ticket data found', 'count': 0, 'tickets': []}

    lines = []
    ticket_type = 'Unknown'
    for index, ticket in enumerate(tickets):
        if not isinstance(ticket, dict):
            continue
        if index == 0:
            lines.append(f"Event: {ticket.get('ShowName') or 'Unknown Event'}")
            ticket_type = ticket.get('PriceTypeName') or 'Unknown'
        total = ticket.get('TotalPrice') if isinstance(ticket.get('TotalPrice'), dict) else {}
        lines.append(f"{index + 1}: Area: {ticket.get('AreaName') or 'N/A'}, "
                     f"Row: {ticket.get('RowName') or 'N/A'}, "
                     f"Seat: {ticket.get('SeatName') or 'N/A'}, "
                     f"Price: {total.get('AsString') or 'N/A'}")

    return {
        'ticket_type': ticket_type,
        'details': '\n'.join(lines),
        'count': len(tickets),
        'tickets': tickets,
    }


class PurchaseExecutor:
    """Reserves seats for one profile's session and reports the result"""

    def __init__(self, sink: Optional[StatusSink] = None, settings: Optional[EngineSettings] = None):
        self.sink = sink
        self.settings = settings or EngineSettings()
        self.logger = logging.getLogger(__name__)
        self.purchase_log = logging.getLogger(PURCHASE_LOGGER)

    # ------------------------------------------------------------ request shape

    def build_reservation_url(self, profile: ProfileConfig) -> str:
        return f"https://{profile.host}{RESERVATION_PATH}"

    def build_order_url(self, profile: ProfileConfig) -> str:
        base = profile.homepage_url or f"https://{profile.host}"
        return f"{base.rstrip('/')}/{ORDER_PAGE}"

    def build_reservation_headers(self, profile: ProfileConfig) -> Dict[str, str]:
        headers = profile.fingerprint.client_hint_headers()
        headers.update({
            'accept': 'application/json, text/javascript, */*; q=0.01',
            'content-type': 'application/x-www-form-urlencoded; charset=UTF-8',
            'origin': f"https://{profile.host}",
            'priority': 'u=1, i',
            'referer': profile.target_url,
            'sec-fetch-dest': 'empty',
            'sec-fetch-mode': 'cors',
            'sec-fetch-site': 'same-origin',
            'user-agent': profile.fingerprint.user_agent,
            'x-requested-with': 'XMLHttpRequest',
        })
        return headers

    def target_areas(self, profile: ProfileConfig, snapshot: Optional[InventorySnapshot]) -> List[str]:
        """Configured areas, else the areas the snapshot shows as sellable"""
        if profile.area_filter:
            return list(profile.area_filter)
        if snapshot is None:
            return []
        return snapshot.qualifying_areas(profile.requested_seats, (), self.settings.affordability_ceiling)

    def build_reservation_data(self, profile: ProfileConfig, seats: int, areas: List[str]) -> Dict[str, str]:
        seat_set = [{'SeatCount': seats, 'PriceTypeGuid': profile.price_type_id}]
        return {
            'eventId': profile.event_id,
            'priceLevels': json.dumps(profile.price_levels),
            'seatsToSet': json.dumps(seat_set),
            'promoData': '',
            'areas': json.dumps(areas),
        }

    # ------------------------------------------------------------------ request

    async def _post_reservation(self, session: HttpSession, profile: ProfileConfig, data: Dict[str, str],
                                stop_signal: Optional[StopSignal]) -> HttpResponse:
        url = self.build_reservation_url(profile)
        headers = self.build_reservation_headers(profile)

        async def post():
            return await session.post(url, data=data, headers=headers)

        self.purchase_log.info(f"[{profile.profile_id}] Reservation request: seats={data['seatsToSet']} "
                               f"areas={data['areas']}")
        response = await execute_with_retry(
            post,
            self.settings.purchase_retry,
            operation_name="reservation request",
            profile_id=profile.profile_id,
            stop_signal=stop_signal,
        )
        self.purchase_log.info(f"[{profile.profile_id}] Reservation response: {response.status}")
        return response

    async def attempt_purchase(self, session: HttpSession, profile: ProfileConfig,
                               snapshot: Optional[InventorySnapshot] = None,
                               stop_signal: Optional[StopSignal] = None) -> PurchaseOutcome:
        """Issue one reservation (plus the single-seat fallback) and classify the reply.

        Network failures are retried with the short purchase policy; if they
        persist, RetriesExhaustedError propagates to the caller.
        """
        profile_id = profile.profile_id
        areas = self.target_areas(profile, snapshot)
        self.logger.info(f"[{profile_id}] Attempting reservation - seats: {profile.requested_seats}, areas: {areas}")

        data = self.build_reservation_data(profile, profile.requested_seats, areas)
        response = await self._post_reservation(session, profile, data, stop_signal)

        if response.status == 400 and profile.requested_seats > 1 and self.settings.single_seat_fallback:
            self.logger.info(f"[{profile_id}] Received 400, retrying with 1 seat")
            data = self.build_reservation_data(profile, 1, areas)
            response = await self._post_reservation(session, profile, data, stop_signal)

        if response.status == 200:
            return self._handle_reserved(response, profile)
        if response.status == 400:
            return self._handle_ticket_fall(response, profile, snapshot)

        label = REJECTION_LABELS.get(response.status, 'UnknownTError')
        self.logger.error(f"[{profile_id}] Reservation rejected with HTTP {response.status} ({label})")
        self.purchase_log.warning(f"[{profile_id}] Reservation rejected: {response.status} {label}")
        return PurchaseOutcome(purchased=False, should_stop_loop=True, status=response.status, reason=label)

    # ---------------------------------------------------------------- responses

    def _publish(self, event):
        if self.sink is not None:
            self.sink.publish(event)

    def _handle_reserved(self, response: HttpResponse, profile: ProfileConfig) -> PurchaseOutcome:
        details = parse_ticket_details(response.text)
        order_url = self.build_order_url(profile)
        details['order_url'] = order_url
        details['message'] = (f"{details['ticket_type']} tickets in basket for {profile.name or profile.profile_id} "
                              f"- ready for checkout at {order_url}")

        self.logger.info(f"[{profile.profile_id}] Reservation succeeded: {details['count']} tickets")
        self.purchase_log.info(f"[{profile.profile_id}] {details['message']}\n{details['details']}")
        self._publish(PurchaseSuccessEvent(profile.profile_id, details))

        return PurchaseOutcome(purchased=True, should_stop_loop=True, status=200,
                               reason='Tickets', ticket_details=details)

    def _handle_ticket_fall(self, response: HttpResponse, profile: ProfileConfig,
                            snapshot: Optional[InventorySnapshot]) -> PurchaseOutcome:
        profile_id = profile.profile_id
        page_text = snapshot.page_text if snapshot is not None else ''
        ceiling = self.settings.affordability_ceiling

        seats = analyze_seats(page_text, profile.area_filter, ceiling, profile_id=profile_id)
        now = datetime.now()
        payload = {
            'time': now.strftime('%I:%M %p'),
            'fall_detected': bool(seats),
            'areas': {name: area.to_dict() for name, area in seats.items()},
            'ticket_prices': sorted(extract_ticket_prices(page_text, ceiling)),
            'response_status': response.status,
            'response_body': response.text[:2000],
        }

        if seats:
            self.logger.info(f"[{profile_id}] Ticket fall detected at {payload['time']}")
        else:
            self.logger.info(f"[{profile_id}] Tickets no longer available (400), continuing monitoring")
        self.purchase_log.info(f"[{profile_id}] TicketFall_{payload['time']}: {json.dumps(payload['areas'])}")
        self._publish(TicketFallEvent(profile_id, payload, timestamp=now))

        return PurchaseOutcome(purchased=False, should_stop_loop=False, status=400,
                               reason=f"TicketFall_{payload['time']}", seat_analysis=seats)
