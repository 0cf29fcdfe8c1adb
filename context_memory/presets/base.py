"""Preset registry for context-memory config templates.

Each preset carries the same configuration twice: as a dict for
``load_config(preset=...)`` and as a commented YAML template that
``context-memory init`` writes to disk.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Preset:
    name: str
    description: str
    config_dict: dict
    template: str

    def raw_config(self) -> dict:
        """Deep copy of the config dict, safe for callers to mutate."""
        return copy.deepcopy(self.config_dict)

    def write_template(self, path: str | Path, force: bool = False) -> Path:
        """Write the YAML template to *path*; refuse to clobber unless *force*."""
        target = Path(path)
        if target.exists() and not force:
            raise FileExistsError(f"Config file already exists: {target}")
        target.write_text(self.template)
        return target


_PRESETS: dict[str, Preset] = {}


def register_preset(preset: Preset) -> None:
    if preset.name in _PRESETS:
        raise ValueError(f"Preset already registered: {preset.name}")
    _PRESETS[preset.name] = preset


def get_preset(name: str) -> Preset | None:
    return _PRESETS.get(name)


def list_presets() -> list[Preset]:
    """Registered presets, sorted by name."""
    return sorted(_PRESETS.values(), key=lambda p: p.name)
