"""State Merger: collected input + applied state -> merged desired state.

Resources in preserved categories (VMs, containers) that exist in the
applied state are reconstructed from their recorded triggers, so a run that
does not mention them keeps them instead of planning their destruction.
Collected records replace reconstructed ones with the same key entirely.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from desired_state import (
    CATEGORIES,
    PRESERVED_CATEGORIES,
    DesiredStateDocument,
    ResourceRecord,
    build_record,
)
from engine.snapshot import AppliedStateSnapshot, SnapshotEntry

logger = logging.getLogger(__name__)

REAPPLY_TRIGGER = 'force_run'


@dataclass
class MergedDesiredState:
    """Merged document plus how it was assembled."""
    document: DesiredStateDocument
    collected_categories: list = field(default_factory=list)
    preserved: list = field(default_factory=list)  # (category, key)
    skipped: list = field(default_factory=list)    # (category, key, reason)

    def has_collected_content(self) -> bool:
        return bool(self.collected_categories)


def reconstruct_record(entry: SnapshotEntry) -> ResourceRecord:
    """Rebuild a record from the raw strings recorded in state.

    Raises:
        ValueError: a required field is missing or fails coercion
    """
    return build_record(entry.category, entry.key, entry.raw_attributes, keep_extra=False)


def new_reapply_token() -> str:
    return str(int(time.time()))


def resolve_reapply_token(collected: DesiredStateDocument, applied: AppliedStateSnapshot,
                          force_recreate: bool = False) -> str:
    """Pick the re-apply token for this run.

    Reusing the token already recorded in state keeps unchanged VMs from
    being replaced; a fresh one forces every VM to be recreated.
    """
    if force_recreate:
        token = new_reapply_token()
        logger.info(f"Force VM recreate requested, new re-apply token: {token}")
        return token
    if collected.reapply_token:
        return collected.reapply_token
    for category in PRESERVED_CATEGORIES:
        for key in applied.keys(category):
            entry = applied.entry(category, key)
            if token := entry.raw_attributes.get(REAPPLY_TRIGGER):
                logger.info(f"Preserving re-apply token from state: {token}")
                return token
    token = new_reapply_token()
    logger.info(f"No re-apply token in state, generated: {token}")
    return token


def merge(collected: DesiredStateDocument, applied: Optional[AppliedStateSnapshot],
          force_recreate: bool = False) -> MergedDesiredState:
    """Merge collected input with the applied state snapshot.

    A missing snapshot is treated as a first run.
    """
    applied = applied or AppliedStateSnapshot.empty()
    collected_categories = collected.content_categories()
    categories = {name: dict(collected.records(name)) for name in CATEGORIES}
    preserved = []
    skipped = []

    for category in PRESERVED_CATEGORIES:
        reconstructed = {}
        for key in applied.keys(category):
            entry = applied.entry(category, key)
            try:
                reconstructed[key] = reconstruct_record(entry)
            except ValueError as e:
                logger.warning(f"Skipping {category} '{key}' from state: {e}")
                skipped.append((category, key, str(e)))
                continue
        for key, record in reconstructed.items():
            if key in categories[category]:
                logger.debug(f"{category} '{key}': collected definition replaces applied one")
                continue
            categories[category][key] = record
            preserved.append((category, key))

    if preserved:
        names = ', '.join(f"{c}/{k}" for c, k in preserved)
        logger.info(f"Preserved {len(preserved)} resource(s) from applied state: {names}")

    document = DesiredStateDocument(
        categories=categories,
        connection=collected.connection,
        reapply_token=resolve_reapply_token(collected, applied, force_recreate),
        external_cluster=collected.external_cluster,
    )
    return MergedDesiredState(
        document=document,
        collected_categories=collected_categories,
        preserved=preserved,
        skipped=skipped,
    )
