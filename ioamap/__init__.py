"""
IOA discovery and multi-target command tooling for IEC 60870-5-104.

    target_map  - target map file load/save
    inventory   - classification and deduplication of discovered points
    recon       - general interrogation driver feeding the inventory
    dispatcher  - command dispatch and confirmation tracking
    report      - console tables and summaries
    runtime     - session bring-up shared by the CLI tools
"""

from ioamap.errors import IOAMapError, TargetMapError
from ioamap.target_map import (
    DesiredState, TargetEntry, load_target_map, save_target_map,
)
from ioamap.inventory import (
    AddResult, Category, DiscoveredPoint, Inventory, ValueKind, classify,
)
from ioamap.dispatcher import (
    AttackRun, CommandVerdict, Dispatcher, ResponseTracker, RunOutcome, classify_run,
)
from ioamap.recon import InterrogationTracker, ReconResult, run_interrogation

__all__ = [
    'IOAMapError',
    'TargetMapError',
    'DesiredState',
    'TargetEntry',
    'load_target_map',
    'save_target_map',
    'AddResult',
    'Category',
    'DiscoveredPoint',
    'Inventory',
    'ValueKind',
    'classify',
    'AttackRun',
    'CommandVerdict',
    'Dispatcher',
    'ResponseTracker',
    'RunOutcome',
    'classify_run',
    'InterrogationTracker',
    'ReconResult',
    'run_interrogation',
]
