"""
Tests for the per-profile monitoring loop and the engine around it
"""

import asyncio
import json
from dataclasses import replace

import pytest

from conftest import (SOLD_OUT_PAGE, TARGET_URL, FakeBridge, FakeDebugHandle, FakeHttpSession, area, ok,
                      pricing_page, status)
from ticketscout.errors import TicketScoutError
from ticketscout.monitoring.engine import MonitoringEngine
from ticketscout.monitoring.status import (ERROR_NETWORK, ERROR_SELLER, ERROR_SESSION, ProfileStatus,
                                           PurchaseSuccessEvent, StateTransitionEvent, TicketFallEvent)
from ticketscout.monitoring.ticket_monitor import ProfileMonitor
from ticketscout.purchasing.purchase_executor import PurchaseExecutor
from ticketscout.session.http_session import HttpResponse
from ticketscout.session.registry import EngineRegistry
from ticketscout.utils.cancellation import StopSignal


AVAILABLE_PAGE = pricing_page({"A1": area(4, 45.0)})
RESERVED_BODY = json.dumps([{"ShowName": "Home v Away", "PriceTypeName": "Adult", "AreaName": "North",
                             "RowName": "A", "SeatName": "1", "TotalPrice": {"AsString": "£45.00"}}])


def transitions(sink):
    return [e.state for e in sink.drain() if isinstance(e, StateTransitionEvent)]


@pytest.fixture
def make_monitor(profile, sink, fast_settings):
    def build(responses, posts=None, settings=None, bridge=None, **kwargs):
        session = FakeHttpSession(responses, posts or [status(500)])
        settings = settings or fast_settings
        monitor = ProfileMonitor(
            kwargs.pop('profile', profile),
            FakeDebugHandle([]),
            bridge or FakeBridge(session),
            PurchaseExecutor(sink, settings),
            sink,
            settings=settings,
            **kwargs,
        )
        return monitor, session
    return build


class TestStateMachine:

    async def test_purchase_success(self, make_monitor, sink):
        monitor, session = make_monitor([ok(SOLD_OUT_PAGE), ok(AVAILABLE_PAGE)], posts=[ok(RESERVED_BODY)])

        final = await monitor.run()

        assert final == ProfileStatus.SUCCESS
        events = sink.drain()
        states = [e.state for e in events if isinstance(e, StateTransitionEvent)]
        assert states == [ProfileStatus.MONITORING, ProfileStatus.PURCHASING, ProfileStatus.SUCCESS]
        assert any(isinstance(e, PurchaseSuccessEvent) for e in events)
        assert monitor.state.iteration == 2
        assert session.closed

    async def test_keyword_missing_stops(self, make_monitor, sink):
        monitor, session = make_monitor([ok("<html>Please log in</html>")])

        assert await monitor.run() == ProfileStatus.KEYWORD_MISSING
        last = [e for e in sink.drain() if isinstance(e, StateTransitionEvent)][-1]
        assert last.error_kind == ERROR_SESSION
        assert len(session.requests) == 1

    @pytest.mark.parametrize("code,label", [(400, '400NotFound'), (403, '403Forbidden'),
                                            (404, '404NotFound'), (406, '406RateLimit')])
    async def test_blocked_statuses_stop(self, make_monitor, sink, code, label):
        monitor, _ = make_monitor([status(code)])

        assert await monitor.run() == ProfileStatus.BLOCKED
        assert monitor.state.last_error == label

    async def test_rate_limit_continues(self, make_monitor, sink):
        monitor, _ = make_monitor([status(429), status(429), ok(AVAILABLE_PAGE)], posts=[ok(RESERVED_BODY)])

        assert await monitor.run() == ProfileStatus.SUCCESS
        states = transitions(sink)
        assert states.count(ProfileStatus.RATE_LIMITED) == 2
        assert states[-1] == ProfileStatus.SUCCESS

    async def test_unexpected_status_stops(self, make_monitor):
        monitor, _ = make_monitor([status(502)])
        assert await monitor.run() == ProfileStatus.ERROR

    async def test_ticket_fall_returns_to_monitoring(self, make_monitor, sink):
        monitor, _ = make_monitor([ok(AVAILABLE_PAGE)], posts=[status(400), ok(RESERVED_BODY)])

        assert await monitor.run() == ProfileStatus.SUCCESS
        events = sink.drain()
        assert sum(isinstance(e, TicketFallEvent) for e in events) == 1
        states = [e.state for e in events if isinstance(e, StateTransitionEvent)]
        assert states == [ProfileStatus.MONITORING, ProfileStatus.PURCHASING, ProfileStatus.MONITORING,
                          ProfileStatus.PURCHASING, ProfileStatus.SUCCESS]

    async def test_seller_rejection_is_error(self, make_monitor, sink):
        monitor, _ = make_monitor([ok(AVAILABLE_PAGE)], posts=[status(403)])

        assert await monitor.run() == ProfileStatus.ERROR
        last = [e for e in sink.drain() if isinstance(e, StateTransitionEvent)][-1]
        assert last.error_kind == ERROR_SELLER
        assert "403TError" in last.message

    async def test_network_failure_retried_once_then_error(self, make_monitor, sink):
        monitor, session = make_monitor([ConnectionError("connection reset")])

        assert await monitor.run() == ProfileStatus.ERROR
        last = [e for e in sink.drain() if isinstance(e, StateTransitionEvent)][-1]
        assert last.message == 'ProxyError'
        assert last.error_kind == ERROR_NETWORK
        # two iterations, each with two fetch attempts
        assert len(session.requests) == 4

    async def test_single_failure_is_tolerated(self, make_monitor):
        monitor, _ = make_monitor([ConnectionError("reset"), ConnectionError("reset"), ok(AVAILABLE_PAGE)],
                                  posts=[ok(RESERVED_BODY)])
        assert await monitor.run() == ProfileStatus.SUCCESS

    async def test_session_creation_failure(self, make_monitor, profile):
        bridge = FakeBridge(FakeHttpSession([ok(AVAILABLE_PAGE)]), fail_create=True)
        monitor, _ = make_monitor([ok(AVAILABLE_PAGE)], bridge=bridge)

        assert await monitor.run() == ProfileStatus.ERROR
        assert "browser gone" in monitor.state.last_error


class TestQueueRedirect:

    async def test_follows_queue_redirect(self, make_monitor):
        queue_page = "<script>window.location = decodeURIComponent('%2F%3Fc%3Dexampleclub%26e%3Dmatch');</script>"
        landed = HttpResponse(status=200, text=AVAILABLE_PAGE, url=TARGET_URL)
        monitor, session = make_monitor([ok(queue_page), landed], posts=[ok(RESERVED_BODY)])

        assert await monitor.run() == ProfileStatus.SUCCESS
        assert session.requests[1]['url'] == "https://exampleclub.queue-it.net/?c=exampleclub&e=match"
        assert session.requests[1]['headers']['referer'] == session.requests[1]['url']

    async def test_second_hop_inside_queue(self, make_monitor):
        queue_page = "decodeURIComponent('%2Fwait')"
        in_queue = HttpResponse(status=200, text="waiting", url="https://exampleclub.queue-it.net/room?x=1")
        monitor, session = make_monitor([ok(queue_page), in_queue, ok(AVAILABLE_PAGE)], posts=[ok(RESERVED_BODY)])

        assert await monitor.run() == ProfileStatus.SUCCESS
        assert [r['url'] for r in session.requests[:3]] == [
            TARGET_URL,
            "https://exampleclub.queue-it.net/wait",
            "https://exampleclub.queue-it.net/room?x=1",
        ]


class TestHousekeeping:

    async def test_should_continue_checked_periodically(self, make_monitor, fast_settings):
        calls = []

        def should_continue(profile_id):
            calls.append(profile_id)
            return len(calls) < 2

        settings = fast_settings.with_overrides(config_refresh_every=3)
        monitor, _ = make_monitor([ok(SOLD_OUT_PAGE)], settings=settings, should_continue=should_continue)

        assert await monitor.run() == ProfileStatus.STOPPED
        assert calls == ["p1", "p1"]
        assert monitor.state.iteration == 6

    async def test_config_refresh_applies_new_profile(self, make_monitor, fast_settings, profile):
        updated = replace(profile, requested_seats=2, poll_speed_tier='fast')

        async def provider(profile_id):
            return updated

        settings = fast_settings.with_overrides(config_refresh_every=1)
        monitor, _ = make_monitor([ok(AVAILABLE_PAGE)], posts=[ok(RESERVED_BODY)], settings=settings,
                                  config_provider=provider)

        assert await monitor.run() == ProfileStatus.SUCCESS
        assert monitor.profile.requested_seats == 2
        assert monitor.state.poll_speed_tier == 'fast'

    async def test_session_refresh(self, make_monitor, fast_settings, sink):
        session = FakeHttpSession([ok(SOLD_OUT_PAGE), ok(SOLD_OUT_PAGE), ok(AVAILABLE_PAGE)], [ok(RESERVED_BODY)])
        bridge = FakeBridge(session)
        settings = fast_settings.with_overrides(session_refresh_every=2)
        monitor, _ = make_monitor([], settings=settings, bridge=bridge)

        assert await monitor.run() == ProfileStatus.SUCCESS
        assert bridge.refreshed == 1
        assert ProfileStatus.SESSION_REFRESHING in transitions(sink)

    async def test_session_refresh_falls_back_to_recreate(self, make_monitor, fast_settings):
        session = FakeHttpSession([ok(SOLD_OUT_PAGE)])
        bridge = FakeBridge(session, fail_refresh=True)
        settings = fast_settings.with_overrides(session_refresh_every=1)
        monitor, _ = make_monitor([], settings=settings, bridge=bridge, stop_signal=StopSignal())

        task = asyncio.ensure_future(monitor.run())
        await asyncio.sleep(0.05)
        monitor.stop_signal.set("test done")
        assert await asyncio.wait_for(task, timeout=1.0) == ProfileStatus.STOPPED
        assert bridge.created >= 2

    async def test_session_refresh_and_recreate_fail(self, make_monitor, fast_settings, sink):
        class FlakyBridge(FakeBridge):
            async def create_session_from_browser(self, handle, profile, proxy=None):
                self.fail_create = self.created >= 1
                return await super().create_session_from_browser(handle, profile, proxy)

        bridge = FlakyBridge(FakeHttpSession([ok(SOLD_OUT_PAGE)]), fail_refresh=True)
        settings = fast_settings.with_overrides(session_refresh_every=1)
        monitor, _ = make_monitor([], settings=settings, bridge=bridge)

        assert await monitor.run() == ProfileStatus.ERROR
        assert transitions(sink)[-2:] == [ProfileStatus.SESSION_REFRESHING, ProfileStatus.ERROR]


class TestCancellation:

    async def test_first_fetch_does_not_wait_and_stop_interrupts_sleep(self, make_monitor, fast_settings):
        settings = fast_settings.with_overrides(sleep_base_offset=60.0)
        monitor, session = make_monitor([ok(SOLD_OUT_PAGE)], settings=settings)

        task = asyncio.ensure_future(monitor.run())
        await asyncio.sleep(0.01)
        assert len(session.requests) == 1
        monitor.stop_signal.set("user stop")

        assert await asyncio.wait_for(task, timeout=1.0) == ProfileStatus.STOPPED
        assert monitor.state.iteration == 1

    async def test_stop_interrupts_in_flight_request(self, make_monitor):
        class HangingSession(FakeHttpSession):
            async def get(self, url, headers=None, **kwargs):
                self.requests.append({'url': url})
                await asyncio.sleep(60)

        session = HangingSession([])
        monitor, _ = make_monitor([], bridge=FakeBridge(session))

        task = asyncio.ensure_future(monitor.run())
        await asyncio.sleep(0.02)
        assert len(session.requests) == 1
        monitor.stop_signal.set("user stop")

        assert await asyncio.wait_for(task, timeout=1.0) == ProfileStatus.STOPPED
        assert session.closed


class TestEngine:

    @pytest.fixture
    def engine(self, fast_settings, sink):
        session = FakeHttpSession([ok(SOLD_OUT_PAGE)])
        return MonitoringEngine(fast_settings, sink, FakeBridge(session), PurchaseExecutor(sink, fast_settings),
                                EngineRegistry())

    async def test_start_and_stop_profile(self, engine, profile, sink):
        engine.start_profile(profile, FakeDebugHandle([]))
        await asyncio.sleep(0.02)
        assert engine.is_running("p1")
        assert engine.get_status("p1")["p1"]["status"] == ProfileStatus.MONITORING.value

        assert await engine.stop_profile("p1") is True
        assert not engine.is_running("p1")
        assert engine.final_status("p1") == ProfileStatus.STOPPED
        assert transitions(sink)[-1] == ProfileStatus.STOPPED

    async def test_duplicate_start_rejected(self, engine, profile):
        engine.start_profile(profile, FakeDebugHandle([]))
        with pytest.raises(TicketScoutError):
            engine.start_profile(profile, FakeDebugHandle([]))
        await engine.stop_all()

    async def test_stop_unknown_profile(self, engine):
        assert await engine.stop_profile("nope") is False

    async def test_stop_all_and_wait(self, engine, profile):
        engine.start_profile(profile, FakeDebugHandle([]))
        engine.start_profile(replace(profile, profile_id="p2"), FakeDebugHandle([]))
        await asyncio.sleep(0.02)

        await engine.stop_all()
        results = await engine.wait()
        assert results == {"p1": ProfileStatus.STOPPED, "p2": ProfileStatus.STOPPED}

    async def test_unresponsive_monitor_is_cancelled(self, fast_settings, sink, profile):
        class StuckBridge(FakeBridge):
            async def create_session_from_browser(self, handle, profile, proxy=None):
                try:
                    await asyncio.sleep(60)
                except asyncio.CancelledError:
                    # slow cleanup that outlives the grace period
                    await asyncio.sleep(0.2)
                    raise
                return self.session

        settings = fast_settings.with_overrides(stop_grace_period=0.05)
        engine = MonitoringEngine(settings, sink, StuckBridge(FakeHttpSession([])), PurchaseExecutor(sink, settings))
        engine.start_profile(profile, FakeDebugHandle([]))
        await asyncio.sleep(0.01)

        assert await asyncio.wait_for(engine.stop_profile("p1"), timeout=1.0) is True
        assert not engine.is_running("p1")
        assert engine.final_status("p1") == ProfileStatus.STOPPED
        await asyncio.sleep(0.25)
