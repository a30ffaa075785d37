"""
Discovered IOA Inventory
========================

Collects the points an outstation reports during interrogation, classified
by type identification and deduplicated by IOA (first report wins).

Classification is data driven: TYPE_CATEGORIES maps type codes to a
Category, CATEGORY_INFO gives each Category its value kind, the name prefix
used in generated target maps and a display label. Supporting a new point
type means adding a table row.

The inventory is written from the session thread and read from the main
thread, so add() and every read take the same lock.
"""

import logging
import struct
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, NamedTuple, Optional

from protocols.iec104.messages import TypeID, DoublePointValue
from ioamap.config import INVENTORY_INITIAL_CAPACITY
from ioamap.target_map import DesiredState, TargetEntry


logger = logging.getLogger(__name__)


class Category(Enum):
    SINGLE_POINT = "single_point"
    DOUBLE_POINT = "double_point"
    BITSTRING = "bitstring"
    MEASURED_NORMALIZED = "measured_normalized"
    MEASURED_SCALED = "measured_scaled"
    MEASURED_SHORT = "measured_short"
    OTHER = "other"


class ValueKind(Enum):
    DIGITAL = "digital"
    ANALOG = "analog"
    RAW = "raw"
    NONE = "none"


class CategoryInfo(NamedTuple):
    value_kind: ValueKind
    prefix: str
    label: str


CATEGORY_INFO: Dict[Category, CategoryInfo] = {
    Category.SINGLE_POINT: CategoryInfo(ValueKind.DIGITAL, "SP", "Single-Point"),
    Category.DOUBLE_POINT: CategoryInfo(ValueKind.DIGITAL, "DP", "Double-Point"),
    Category.BITSTRING: CategoryInfo(ValueKind.RAW, "BS", "Bitstring"),
    Category.MEASURED_NORMALIZED: CategoryInfo(ValueKind.ANALOG, "MN", "Measured (Norm)"),
    Category.MEASURED_SCALED: CategoryInfo(ValueKind.ANALOG, "MS", "Measured (Scaled)"),
    Category.MEASURED_SHORT: CategoryInfo(ValueKind.ANALOG, "MF", "Measured (Float)"),
    Category.OTHER: CategoryInfo(ValueKind.NONE, "UK", "Other"),
}

# Plain and CP56Time2a time-tagged variants share a category
TYPE_CATEGORIES: Dict[int, Category] = {
    TypeID.M_SP_NA_1: Category.SINGLE_POINT,
    TypeID.M_SP_TB_1: Category.SINGLE_POINT,
    TypeID.M_DP_NA_1: Category.DOUBLE_POINT,
    TypeID.M_DP_TB_1: Category.DOUBLE_POINT,
    TypeID.M_BO_NA_1: Category.BITSTRING,
    TypeID.M_BO_TB_1: Category.BITSTRING,
    TypeID.M_ME_NA_1: Category.MEASURED_NORMALIZED,
    TypeID.M_ME_TD_1: Category.MEASURED_NORMALIZED,
    TypeID.M_ME_NB_1: Category.MEASURED_SCALED,
    TypeID.M_ME_TE_1: Category.MEASURED_SCALED,
    TypeID.M_ME_NC_1: Category.MEASURED_SHORT,
    TypeID.M_ME_TF_1: Category.MEASURED_SHORT,
}


_TYPE_LABELS: Dict[int, str] = {
    TypeID.M_SP_NA_1: "Single-Point",
    TypeID.M_DP_NA_1: "Double-Point",
    TypeID.M_BO_NA_1: "Bitstring32",
    TypeID.M_ME_NA_1: "Normalized",
    TypeID.M_ME_NB_1: "Scaled",
    TypeID.M_ME_NC_1: "Short Float",
    TypeID.M_SP_TB_1: "SP + Time",
    TypeID.M_DP_TB_1: "DP + Time",
    TypeID.M_BO_TB_1: "BS + Time",
    TypeID.M_ME_TD_1: "Norm + Time",
    TypeID.M_ME_TE_1: "Scaled + Time",
    TypeID.M_ME_TF_1: "Short + Time",
    TypeID.C_IC_NA_1: "Interrogation",
}


def classify(raw_type_id: int) -> Category:
    """Category for a type identification; unmapped codes are OTHER"""
    return TYPE_CATEGORIES.get(raw_type_id, Category.OTHER)


def category_label(category: Category) -> str:
    return CATEGORY_INFO[category].label


def type_id_name(raw_type_id: int) -> str:
    """Display name such as 'M_SP_NA_1 (Single-Point)'"""
    label = _TYPE_LABELS.get(raw_type_id)
    if label is None:
        return f"Unknown ({raw_type_id})"
    return f"{TypeID(raw_type_id).name} ({label})"


def _to_float32(value: Any) -> float:
    return struct.unpack('<f', struct.pack('<f', float(value)))[0]


@dataclass(frozen=True)
class DiscoveredPoint:
    """
    One reported point.

    Only the field matching value_kind is set: digital_state for DIGITAL,
    analog_value for ANALOG, raw_bits for RAW, none of them for NONE.
    """
    ioa: int
    raw_type_id: int
    category: Category
    value_kind: ValueKind
    digital_state: Optional[bool] = None
    analog_value: Optional[float] = None
    raw_bits: Optional[int] = None

    @classmethod
    def from_value(cls, ioa: int, raw_type_id: int, value: Any) -> 'DiscoveredPoint':
        """
        Classify a decoded value.

        Double points are ON only for the discrete ON state; intermediate
        and indeterminate collapse to OFF.
        """
        category = classify(raw_type_id)
        kind = CATEGORY_INFO[category].value_kind

        if category == Category.DOUBLE_POINT:
            return cls(ioa, raw_type_id, category, kind,
                       digital_state=(value == DoublePointValue.ON))
        if kind == ValueKind.DIGITAL:
            return cls(ioa, raw_type_id, category, kind, digital_state=bool(value))
        if kind == ValueKind.RAW:
            return cls(ioa, raw_type_id, category, kind, raw_bits=int(value) & 0xFFFFFFFF)
        if kind == ValueKind.ANALOG:
            return cls(ioa, raw_type_id, category, kind, analog_value=_to_float32(value))
        return cls(ioa, raw_type_id, category, kind)

    @property
    def is_digital(self) -> bool:
        return self.value_kind == ValueKind.DIGITAL

    def to_target_entry(self) -> TargetEntry:
        """Generated name; only an observed ON digital point is armed"""
        prefix = CATEGORY_INFO[self.category].prefix
        state = DesiredState.from_bool(bool(self.is_digital and self.digital_state))
        return TargetEntry(self.ioa, f"{prefix}_IOA_{self.ioa}", state)


class AddResult(Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    ALLOCATION_FAILED = "allocation_failed"


class Inventory:
    """
    Ordered, IOA-unique collection of DiscoveredPoint.

    Capacity starts at initial_capacity and doubles when full. When
    max_capacity is set, growth past it fails and add() reports
    ALLOCATION_FAILED.
    """

    def __init__(self, initial_capacity: int = INVENTORY_INITIAL_CAPACITY,
                 max_capacity: Optional[int] = None):
        if initial_capacity < 1:
            raise ValueError("initial_capacity must be at least 1")
        self._entries: List[DiscoveredPoint] = []
        self._by_ioa: Dict[int, DiscoveredPoint] = {}
        self._capacity = initial_capacity
        self._max_capacity = max_capacity
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def add(self, point: DiscoveredPoint) -> AddResult:
        with self._lock:
            if point.ioa in self._by_ioa:
                logger.debug(f"Duplicate IOA {point.ioa} ({point.category.name}) ignored")
                return AddResult.DUPLICATE

            if len(self._entries) >= self._capacity and not self._grow():
                return AddResult.ALLOCATION_FAILED

            try:
                self._entries.append(point)
            except MemoryError:
                logger.error(f"Out of memory storing IOA {point.ioa}")
                return AddResult.ALLOCATION_FAILED
            self._by_ioa[point.ioa] = point
            return AddResult.INSERTED

    def _grow(self) -> bool:
        new_capacity = self._capacity * 2
        if self._max_capacity is not None and new_capacity > self._max_capacity:
            logger.error(f"Inventory cannot grow past {self._max_capacity} entries")
            return False
        self._capacity = new_capacity
        return True

    def get(self, ioa: int) -> Optional[DiscoveredPoint]:
        with self._lock:
            return self._by_ioa.get(ioa)

    def entries(self) -> List[DiscoveredPoint]:
        """Snapshot in insertion order"""
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[DiscoveredPoint]:
        return iter(self.entries())

    def summarize(self) -> Dict[Category, int]:
        """Point count for every category"""
        counts = {category: 0 for category in Category}
        for point in self.entries():
            counts[point.category] += 1
        return counts

    def to_target_entries(self) -> List[TargetEntry]:
        return [point.to_target_entry() for point in self.entries()]
