"""
Console output of the IOA map tools: banners, discovery table, summaries.

Everything here prints to stdout (or the given stream); diagnostics go
through logging instead.
"""

import sys
from typing import Iterable, Optional, TextIO

from ioamap.dispatcher import AttackRun, RunOutcome
from ioamap.inventory import (
    Category, DiscoveredPoint, Inventory, ValueKind, category_label, type_id_name,
)
from ioamap.target_map import TargetEntry, format_target_line


def _out(stream: Optional[TextIO]) -> TextIO:
    return stream if stream is not None else sys.stdout


def hex_dump(data: bytes) -> str:
    return " ".join(f"{b:02x}" for b in data)


def format_raw_frame(data: bytes, sent: bool) -> str:
    """One-line dump of a frame, '>>>' for sent and '<<<' for received"""
    return f"  {'>>>' if sent else '<<<'} {hex_dump(data)}"


def print_banner(title: str, lines: Iterable[str] = (), stream: Optional[TextIO] = None):
    out = _out(stream)
    print("=" * 70, file=out)
    print(title, file=out)
    print("=" * 70, file=out)
    for line in lines:
        print(f"[*] {line}", file=out)
    print(file=out)


def print_target_map(targets: Iterable[TargetEntry], stream: Optional[TextIO] = None):
    out = _out(stream)
    targets = list(targets)
    print(f"[+] Loaded {len(targets)} target IOAs:", file=out)
    for target in targets:
        print(f"    {format_target_line(target)}", file=out)
    print(file=out)


def _state_cell(point: DiscoveredPoint) -> str:
    if point.value_kind != ValueKind.DIGITAL:
        return "-"
    return "ON" if point.digital_state else "OFF"


def _value_cell(point: DiscoveredPoint) -> str:
    if point.value_kind == ValueKind.ANALOG:
        return f"{point.analog_value:7.1f}"
    if point.value_kind == ValueKind.RAW:
        return f"0x{point.raw_bits:04X}"
    return "-"


def print_inventory_table(inventory: Inventory, stream: Optional[TextIO] = None):
    out = _out(stream)
    print("╔═══════╦══════════════════════════════╦═══════╦═════════╗", file=out)
    print("║  IOA  ║         Type ID              ║ State ║  Value  ║", file=out)
    print("╠═══════╬══════════════════════════════╬═══════╬═════════╣", file=out)
    for point in inventory:
        print(f"║ {point.ioa:<5} ║ {type_id_name(point.raw_type_id):<28.28} "
              f"║ {_state_cell(point):<5} ║ {_value_cell(point):<7} ║", file=out)
    print("╚═══════╩══════════════════════════════╩═══════╩═════════╝", file=out)


def print_inventory_summary(inventory: Inventory, stream: Optional[TextIO] = None):
    """Count per category; Other only when present"""
    out = _out(stream)
    counts = inventory.summarize()
    print("[*] Summary by type:", file=out)
    for category, count in counts.items():
        if category == Category.OTHER and count == 0:
            continue
        print(f"    {category_label(category):<20} : {count}", file=out)


def print_attack_summary(run: AttackRun, outcome: RunOutcome,
                         stream: Optional[TextIO] = None):
    out = _out(stream)
    print(file=out)
    print("=" * 70, file=out)
    print("Attack summary", file=out)
    print("=" * 70, file=out)
    print(f"  Targets     : {len(run.targets)}", file=out)
    print(f"  Sent        : {run.sent}", file=out)
    print(f"  Send failed : {run.send_failed}", file=out)
    print(f"  ACT_CON OK  : {run.confirmed}", file=out)
    print(f"  Rejected    : {run.rejected}", file=out)
    for ioa, verdict in run.tracker.verdicts:
        if verdict.is_rejection:
            print(f"    IOA {ioa}: {verdict.value}", file=out)
    print(f"  Outcome     : {outcome.name}", file=out)
