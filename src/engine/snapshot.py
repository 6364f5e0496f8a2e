"""Applied State Snapshot: what the engine believes exists right now."""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from desired_state import CATEGORIES
from errors import StateQueryError

logger = logging.getLogger(__name__)

# module.vm["web1"].null_resource.vm[0]
ADDRESS_PATTERN = re.compile(r'^module\.(\w+)\["([^"]+)"\]\.(.+)$')

MODULE_CATEGORIES = {spec.module: name for name, spec in CATEGORIES.items() if spec.module}


def primary_address(category: str, key: str) -> str:
    """State address of the resource that carries a record's triggers."""
    module = CATEGORIES[category].module
    return f'module.{module}["{key}"].null_resource.{module}[0]'


@dataclass(frozen=True)
class SnapshotEntry:
    """One applied resource, attributes as raw strings."""
    category: str
    key: str
    address: str
    raw_attributes: dict = field(default_factory=dict)


@dataclass
class AppliedStateSnapshot:
    """All applied resources the driver can attribute to a category."""
    entries: list = field(default_factory=list)

    @classmethod
    def empty(cls) -> 'AppliedStateSnapshot':
        return cls(entries=[])

    def is_empty(self) -> bool:
        return not self.entries

    def keys(self, category: str) -> list[str]:
        return sorted(e.key for e in self.entries if e.category == category)

    def entry(self, category: str, key: str) -> Optional[SnapshotEntry]:
        for e in self.entries:
            if e.category == category and e.key == key:
                return e
        return None

    def categories_present(self) -> list[str]:
        present = {e.category for e in self.entries}
        return [name for name in CATEGORIES if name in present]

    def count(self, category: str) -> int:
        return len(self.keys(category))


def parse_state_addresses(addresses: list[str]) -> list[tuple[str, str, str]]:
    """Map state addresses to (category, key, address), one per record.

    The null_resource address is preferred when a module holds several
    resources; addresses outside known modules are ignored.
    """
    found: dict[tuple[str, str], str] = {}
    for address in addresses:
        match = ADDRESS_PATTERN.match(address.strip())
        if not match:
            continue
        module, key, _ = match.groups()
        category = MODULE_CATEGORIES.get(module)
        if category is None:
            logger.debug(f"Ignoring state address outside managed modules: {address}")
            continue
        preferred = primary_address(category, key)
        current = found.get((category, key))
        if current is None or address == preferred:
            found[(category, key)] = address
    return [(category, key, found[(category, key)]) for category, key in sorted(found)]


def read_applied_snapshot(engine, with_attributes: bool = True) -> AppliedStateSnapshot:
    """Read the applied state back from the engine.

    Attributes are fetched only for preserved categories, since only those
    are reconstructed by the merger and identity-checked by the guard. A
    resource whose attributes cannot be shown keeps an empty attribute map.

    Raises:
        StateQueryError: the state list itself could not be read
    """
    addresses = engine.state_list()
    entries = []
    for category, key, address in parse_state_addresses(addresses):
        raw: dict = {}
        if with_attributes and CATEGORIES[category].preserved:
            try:
                raw = engine.state_show(address)
            except StateQueryError as e:
                logger.warning(f"Could not read attributes of {address}: {e}")
        entries.append(SnapshotEntry(category=category, key=key, address=address, raw_attributes=raw))
    counts = ', '.join(f"{c}={sum(1 for e in entries if e.category == c)}"
                       for c in CATEGORIES if any(e.category == c for e in entries))
    logger.info(f"Applied state: {counts or 'empty'}")
    return AppliedStateSnapshot(entries=entries)
