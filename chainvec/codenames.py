"""Protocol-version codenames by epoch."""

from __future__ import annotations

import pathlib
from typing import List, Optional, Sequence, Tuple

import yaml

from chainvec.core import load_yaml
from chainvec.errors import ConfigError

Schedule = Tuple[Tuple[int, str], ...]

# (first epoch, codename), ascending.
DEFAULT_SCHEDULE: Schedule = (
    (0, "genesis"),
    (41281, "breeze"),
    (51001, "smoke"),
    (94001, "ignition"),
    (130801, "refuel"),
    (138721, "actorsv2"),
    (140761, "tape"),
    (148889, "liftoff"),
    (170001, "postliftoff"),
)


def _check(schedule: Sequence[Tuple[int, str]]) -> Schedule:
    if not schedule:
        raise ConfigError("codename schedule is empty")
    entries = tuple((int(epoch), str(name)) for epoch, name in schedule)
    epochs = [e for e, _ in entries]
    if epochs != sorted(epochs) or len(set(epochs)) != len(epochs):
        raise ConfigError("codename schedule epochs must be strictly ascending")
    if epochs[0] != 0:
        raise ConfigError("codename schedule must start at epoch 0")
    return entries


def get_protocol_codename(height: int, schedule: Optional[Sequence[Tuple[int, str]]] = None) -> str:
    """Name of the last upgrade whose first epoch is at or below ``height``."""
    entries = DEFAULT_SCHEDULE if schedule is None else schedule
    name = entries[0][1]
    for first_epoch, codename in entries:
        if height < first_epoch:
            break
        name = codename
    return name


def load_schedule(path: pathlib.Path) -> Schedule:
    """Load a schedule from YAML.

    Either a list of ``{epoch, name}`` mappings or a mapping ``name: epoch``.
    """
    try:
        data = load_yaml(path)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot read codename schedule {path}: {e}") from e

    entries: List[Tuple[int, str]] = []
    try:
        if isinstance(data, dict):
            entries = [(int(epoch), str(name)) for name, epoch in data.items()]
        elif isinstance(data, list):
            entries = [(int(item["epoch"]), str(item["name"])) for item in data]
        else:
            raise ConfigError(f"codename schedule {path} must be a list or mapping")
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"invalid codename schedule {path}: {e}") from e
    return _check(sorted(entries))
