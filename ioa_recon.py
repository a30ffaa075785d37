#!/usr/bin/env python3
"""
IOA Reconnaissance

Sends a station general interrogation to an IEC 104 outstation, lists every
reported point and writes them as a target map for ioa_multi.py.

Usage:
    python3 ioa_recon.py [target_ip] [port] [output_path] [--debug]

Exit codes:
    0 - interrogation completed (also when nothing was discovered)
    1 - connection failed, interrogation not sent, inventory full or map not written
"""

import argparse
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

# Add workspace to path
sys.path.insert(0, str(Path(__file__).parent))

from ioamap.config import (
    DEFAULT_IP, DEFAULT_PORT, DEFAULT_CA, DEFAULT_OA, DEFAULT_DISCOVERY_OUTPUT,
    GI_TIMEOUT_S, SessionSettings,
)
from ioamap.errors import TargetMapError
from ioamap.inventory import Inventory
from ioamap.logging_setup import setup_logging
from ioamap.recon import InterrogationTracker, run_interrogation
from ioamap.report import print_banner, print_inventory_table, print_inventory_summary
from ioamap.runtime import open_session
from ioamap.target_map import save_target_map


logger = logging.getLogger("ioa_recon")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Discover the IOAs of an IEC 104 outstation by general interrogation")
    parser.add_argument("target_ip", nargs="?", default=DEFAULT_IP)
    parser.add_argument("port", nargs="?", type=int, default=DEFAULT_PORT)
    parser.add_argument("output", nargs="?", default=DEFAULT_DISCOVERY_OUTPUT,
                        help="target map to write")
    parser.add_argument("--debug", action="store_true", help="hex dump every frame")
    parser.add_argument("--ca", type=int, default=DEFAULT_CA, help="common address")
    parser.add_argument("--oa", type=int, default=DEFAULT_OA, help="originator address")
    parser.add_argument("--timeout", type=float, default=GI_TIMEOUT_S,
                        help="seconds to wait for ACT_TERM")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.debug)

    try:
        settings = SessionSettings(
            host=args.target_ip, port=args.port,
            common_address=args.ca, originator_address=args.oa,
            gi_timeout_s=args.timeout, debug=args.debug,
        )
    except ValidationError as e:
        logger.error(f"Invalid settings: {e}")
        return 1

    print_banner("IOA Reconnaissance (IEC 60870-5-104)", [
        f"Target : {settings.target}",
        f"Output : {args.output}",
        f"CA={settings.common_address}  OA={settings.originator_address}",
    ])
    if settings.debug:
        logger.info("[*] Debug mode: raw hex dump enabled")

    inventory = Inventory()
    tracker = InterrogationTracker(inventory)

    session = open_session(settings, tracker.on_notification, tracker.on_connection_event)
    if session is None:
        return 1

    try:
        result = run_interrogation(session, tracker, settings.common_address,
                                   settings.gi_timeout_s)
    finally:
        logger.info("[*] Disconnecting ...")
        session.destroy()

    if not result.gi_sent:
        return 1

    print(f"\n[+] Discovered {len(inventory)} IOAs:\n")
    print_inventory_table(inventory)

    if tracker.allocation_failed:
        logger.error("[!] Inventory could not grow, discovery incomplete")
        return 1

    if len(inventory) == 0:
        print("    (no IOAs found, server may not support GI)")
        print("[✓] Reconnaissance complete")
        return 0

    print()
    print_inventory_summary(inventory)

    print(f"\n[*] Writing config to {args.output} ...")
    try:
        written = save_target_map(inventory.to_target_entries(), args.output,
                                  settings.target)
    except TargetMapError as e:
        logger.error(f"[!] Failed to write config file: {e}")
        return 1
    print(f"[+] Saved {written} IOAs to {args.output}")
    print("[✓] Reconnaissance complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
