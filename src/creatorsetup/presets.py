# src/creatorsetup/presets.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

Json = Dict[str, Any]


@dataclass(frozen=True, slots=True)
class TreePreset:
    """Capacity parameters for a compressed-state tree. Fixed forever once the tree exists."""

    id: str
    capacity: int
    max_depth: int
    canopy_depth: int
    concurrency_buffer: int
    estimated_cost: float
    cost_per_unit: float

    def to_json(self) -> Json:
        return {
            "id": self.id,
            "capacity": self.capacity,
            "max_depth": self.max_depth,
            "canopy_depth": self.canopy_depth,
            "concurrency_buffer": self.concurrency_buffer,
            "estimated_cost": self.estimated_cost,
            "cost_per_unit": self.cost_per_unit,
        }


TREE_PRESETS: Tuple[TreePreset, ...] = (
    TreePreset("16384", 16_384, 14, 8, 64, 0.3358, 0.0000255),
    TreePreset("65536", 65_536, 16, 10, 64, 0.7069, 0.00001579),
    TreePreset("262144", 262_144, 18, 12, 64, 2.1042, 0.00001303),
    TreePreset("1048576", 1_048_576, 20, 13, 1024, 8.5012, 0.00001311),
    TreePreset("16777216", 16_777_216, 24, 15, 2048, 26.1201, 0.00000656),
    TreePreset("67108864", 67_108_864, 26, 17, 2048, 70.8213, 0.00000606),
    TreePreset("1073741824", 1_073_741_824, 30, 17, 2048, 72.6468, 0.00000507),
)

DEFAULT_PRESET_ID = "65536"


def get_preset(preset_id: Optional[str]) -> Optional[TreePreset]:
    pid = str(preset_id or "").strip()
    for p in TREE_PRESETS:
        if p.id == pid:
            return p
    return None


def default_preset() -> TreePreset:
    p = get_preset(DEFAULT_PRESET_ID)
    assert p is not None
    return p


def match_preset_by_capacity(capacity: Optional[int]) -> Optional[TreePreset]:
    if not capacity:
        return None
    for p in TREE_PRESETS:
        if p.capacity == int(capacity):
            return p
    return None


def format_cost(value: float) -> str:
    return f"{value:.4f}"
