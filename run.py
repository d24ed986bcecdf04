#!/usr/bin/env python3
"""
Main entry point for the ticket monitor

Connects to each profile's already-running browser over its remote-debugging
endpoint, then monitors every enabled profile until it succeeds, is blocked,
or the user presses Ctrl-C.
"""

import argparse
import asyncio
import logging
import sys

from ticketscout.config import DEFAULT_ENGINE_CONFIG, DEFAULT_PROFILES_CONFIG, EngineSettings, load_profiles
from ticketscout.errors import ConfigurationError
from ticketscout.monitoring import (MonitoringEngine, PurchaseSuccessEvent, StateTransitionEvent, StatusSink,
                                    TicketFallEvent)
from ticketscout.purchasing import PurchaseExecutor
from ticketscout.session import EngineRegistry, PlaywrightDebugHandle, SessionBridge
from ticketscout.utils.logging_setup import setup_logging
from ticketscout.verification import wait_for_text

logger = logging.getLogger('ticketscout.run')


def print_banner():
    """Print startup banner"""
    print("""
    ================================================
    TICKETSCOUT - EVENT MONITOR & SEAT RESERVATION
    ================================================
    """)


def log_status_event(event):
    """Status consumer: writes every event to the log"""
    if isinstance(event, StateTransitionEvent):
        suffix = f" [{event.error_kind}]" if event.error_kind else ""
        logger.info(f"[{event.profile_id}] -> {event.state.value}: {event.message}{suffix}")
    elif isinstance(event, TicketFallEvent):
        areas = ', '.join(event.payload.get('areas', {})) or 'none'
        logger.info(f"[{event.profile_id}] Ticket fall at {event.payload.get('time')}: areas {areas}")
    elif isinstance(event, PurchaseSuccessEvent):
        logger.info(f"[{event.profile_id}] PURCHASE: {event.details.get('message')}")


async def connect_handles(profiles, settings, wait_keyword=None):
    """Connect to each profile's browser; profiles that cannot be reached are skipped"""
    handles = {}
    for profile in profiles:
        if not profile.debugger_url:
            logger.error(f"[{profile.profile_id}] No debugger_url configured, skipping")
            continue
        handle = PlaywrightDebugHandle(profile.debugger_url, timeout=settings.request_timeout)
        try:
            await handle.connect()
        except ConnectionError as e:
            logger.error(f"[{profile.profile_id}] Could not connect to browser: {e}")
            continue

        if wait_keyword:
            found = await wait_for_text(handle, wait_keyword, profile_id=profile.profile_id)
            if not found:
                logger.warning(f"[{profile.profile_id}] '{wait_keyword}' never appeared, skipping")
                await handle.close()
                continue
        handles[profile.profile_id] = handle
    return handles


async def run_engine(args) -> int:
    settings = EngineSettings.load(args.config)
    if args.log_level:
        settings = settings.with_overrides(log_level=args.log_level)
    setup_logging(settings.log_dir, settings.log_level)

    profiles = load_profiles(args.profiles)
    if args.profile:
        profiles = [p for p in profiles if p.profile_id in args.profile]
    if not profiles:
        print("ERROR: No enabled profiles to monitor")
        return 1

    handles = await connect_handles(profiles, settings, args.wait_for_keyword)
    if not handles:
        print("ERROR: No browser could be reached")
        return 1

    sink = StatusSink(settings.status_queue_size)
    sink.subscribe(log_status_event)
    sink.start()

    registry = EngineRegistry()
    engine = MonitoringEngine(settings, sink, SessionBridge(settings), PurchaseExecutor(sink, settings), registry)

    for profile in profiles:
        if profile.profile_id in handles:
            engine.start_profile(profile, handles[profile.profile_id])

    print(f"Monitoring {len(handles)} profiles - press Ctrl-C to stop")
    try:
        results = await engine.wait()
    except asyncio.CancelledError:
        await engine.stop_all("interrupted by user")
        raise
    finally:
        for handle in handles.values():
            await handle.close()
        await sink.close()

    for profile_id, status in results.items():
        print(f"  {profile_id}: {status.value if status else 'unknown'}")
    return 0


def main():
    parser = argparse.ArgumentParser(description='Event ticket monitor')
    parser.add_argument('--config', default=DEFAULT_ENGINE_CONFIG,
                        help=f'Engine settings file (default: {DEFAULT_ENGINE_CONFIG})')
    parser.add_argument('--profiles', default=DEFAULT_PROFILES_CONFIG,
                        help=f'Profiles file (default: {DEFAULT_PROFILES_CONFIG})')
    parser.add_argument('--profile', action='append',
                        help='Only monitor this profile id (repeatable)')
    parser.add_argument('--wait-for-keyword', metavar='TEXT',
                        help='Wait until TEXT appears in each browser tab before starting')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Override the configured log level')

    args = parser.parse_args()

    print_banner()

    try:
        sys.exit(asyncio.run(run_engine(args)))
    except ConfigurationError as e:
        print(f"ERROR: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n[STOPPED] Monitor stopped by user")


if __name__ == "__main__":
    main()
