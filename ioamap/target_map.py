"""
IOA Target Map
==============

Line-oriented text file listing the points to command:

    # comment
    <IOA>  <Name>  <ON|OFF>

The reconnaissance tool writes this format and the multi-target tool reads
it, so the three columns must round-trip exactly.

Parsing rules:
    - Blank lines and lines starting with '#' (after indentation) are skipped
    - Exactly three whitespace separated tokens, IOA as unsigned decimal
    - IOA above 16777215 (24 bit) is skipped
    - State is matched case-insensitively; unknown states fall back to OFF
    - Names longer than 63 characters are truncated
    - A file without a single valid entry is an error
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Union

from ioamap.errors import TargetMapError


logger = logging.getLogger(__name__)

IOA_MAX = 16777215   # 3 octet IOA
NAME_MAX = 63


class DesiredState(Enum):
    """Commanded state of a single command"""
    OFF = 0   # open
    ON = 1    # close

    @property
    def is_on(self) -> bool:
        return self is DesiredState.ON

    @classmethod
    def parse(cls, token: str) -> Optional['DesiredState']:
        """Case-insensitive ON/OFF, None for anything else"""
        try:
            return cls[token.upper()]
        except KeyError:
            return None

    @classmethod
    def from_bool(cls, state: bool) -> 'DesiredState':
        return cls.ON if state else cls.OFF


@dataclass(frozen=True)
class TargetEntry:
    """One point to command"""
    ioa: int
    name: str
    desired_state: DesiredState = DesiredState.OFF

    def __post_init__(self):
        if not 0 <= self.ioa <= IOA_MAX:
            raise ValueError(f"IOA {self.ioa} outside 0..{IOA_MAX}")
        if not self.name or len(self.name) > NAME_MAX or len(self.name.split()) != 1:
            raise ValueError(f"Invalid target name {self.name!r}")


def _is_skip_line(line: str) -> bool:
    stripped = line.lstrip()
    return not stripped or stripped.startswith('#')


def _parse_line(line: str, line_num: int) -> Optional[TargetEntry]:
    tokens = line.split()
    if len(tokens) != 3:
        logger.warning(f"Line {line_num}: malformed entry "
                       f"(expected: IOA Name State): {line.strip()!r}")
        return None

    ioa_token, name, state_token = tokens
    if not (ioa_token.isascii() and ioa_token.isdigit()):
        logger.warning(f"Line {line_num}: IOA {ioa_token!r} is not an unsigned "
                       f"decimal number, skipped")
        return None

    # Length first: int() refuses very long digit strings
    digits = ioa_token.lstrip('0') or '0'
    if len(digits) > len(str(IOA_MAX)) or int(digits) > IOA_MAX:
        shown = digits if len(digits) <= 16 else f"{digits[:16]}..."
        logger.warning(f"Line {line_num}: IOA {shown} exceeds 24-bit max ({IOA_MAX}), skipped")
        return None
    ioa = int(digits)

    state = DesiredState.parse(state_token)
    if state is None:
        logger.warning(f"Line {line_num}: unknown state {state_token!r}, defaulting to OFF")
        state = DesiredState.OFF

    if len(name) > NAME_MAX:
        logger.info(f"Line {line_num}: name truncated to {NAME_MAX} characters")
        name = name[:NAME_MAX]

    return TargetEntry(ioa, name, state)


def load_target_map(path: Union[str, Path]) -> List[TargetEntry]:
    """
    Parse a target map, keeping file order.

    Raises:
        TargetMapError: file missing or unreadable, or no valid entry in it
    """
    path = Path(path)
    entries: List[TargetEntry] = []

    try:
        with path.open("r", encoding="utf-8", errors="replace") as f:
            for line_num, line in enumerate(f, start=1):
                if _is_skip_line(line):
                    continue
                entry = _parse_line(line, line_num)
                if entry is not None:
                    entries.append(entry)
    except FileNotFoundError:
        logger.error(f"Config file not found: {path}")
        raise TargetMapError(path, "Config file not found")
    except OSError as e:
        logger.error(f"Cannot read config file {path}: {e}")
        raise TargetMapError(path, f"Cannot read config file ({e.strerror})") from e

    if not entries:
        logger.error(f"Config file contains no valid IOA entries: {path}")
        raise TargetMapError(path, "Config file contains no valid IOA entries")

    logger.debug(f"Loaded {len(entries)} targets from {path}")
    return entries


def format_target_line(entry: TargetEntry) -> str:
    """One data line in the exact layout load_target_map accepts"""
    return f"{entry.ioa:<6} {entry.name}  {entry.desired_state.name}"


def save_target_map(entries: Iterable[TargetEntry], path: Union[str, Path],
                    source: str, timestamp: Optional[datetime] = None) -> int:
    """
    Write entries with a commented header, in iteration order.

    Args:
        entries: Targets to write
        path: Output file; parent directories are created
        source: Where the entries came from, e.g. "10.10.10.10:2404"
        timestamp: Header time (default: now)

    Returns:
        Number of entries written

    Raises:
        TargetMapError: the file could not be written
    """
    path = Path(path)
    entries = list(entries)
    when = (timestamp or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")

    lines = [
        f"# Auto-discovered IOAs from {source} on {when}",
        "# Format: IOA  Name  TargetState",
        f"# Total: {len(entries)} IOAs discovered",
        "",
    ]
    lines.extend(format_target_line(entry) for entry in entries)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")
    except OSError as e:
        logger.error(f"Cannot write to {path}: {e}")
        raise TargetMapError(path, f"Cannot write target map ({e.strerror})") from e

    return len(entries)
