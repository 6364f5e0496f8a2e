"""Safety Guard: refuse transitions that would destroy applied resources.

Evaluation is pure. The destructive diff of a category is every applied key
missing from the merged state, plus every key whose identity field (vmid)
changed, since the engine replaces such resources. A category with nothing
collected this run is not managed this run, as long as some other category
has content. It contributes nothing unless it is a preserved category whose
applied resources could not all be carried over. A run with no content at
all is always blocked.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from desired_state import CATEGORIES, coerce_value
from engine.snapshot import AppliedStateSnapshot
from reconcile.merge import MergedDesiredState

logger = logging.getLogger(__name__)

OVERRIDE_HINT = "set THINKDEPLOY_ALLOW_DESTROY=true or pass --allow-destroy"


@dataclass(frozen=True)
class SafetyVerdict:
    """Outcome of a guard evaluation."""
    allowed: bool
    destructive_keys: tuple = ()    # sorted (category, key)
    reason: str = ''
    unmanaged_categories: tuple = ()  # skipped categories holding applied resources


def _applied_identity(applied: AppliedStateSnapshot, category: str, key: str) -> Optional[int]:
    spec = CATEGORIES[category]
    entry = applied.entry(category, key)
    raw = entry.raw_attributes.get(spec.identity) if entry else None
    if raw in (None, ''):
        return None
    try:
        return coerce_value('int', raw)
    except ValueError:
        return None


def destructive_diff(merged: MergedDesiredState, applied: AppliedStateSnapshot) -> tuple[list, dict, list]:
    """Compute (destructive keys, change notes, unmanaged categories)."""
    destructive = []
    notes = {}
    unmanaged = []
    unreadable = {(category, key): f"not recoverable from applied state: {reason}"
                  for category, key, reason in merged.skipped}
    doc = merged.document
    for category, spec in CATEGORIES.items():
        applied_keys = applied.keys(category)
        if not applied_keys:
            continue
        records = doc.records(category)
        managed = category in merged.collected_categories
        if not managed:
            unmanaged.append(category)
            # The merger should have carried every one of these over
            if not spec.preserved:
                continue
        for key in applied_keys:
            record = records.get(key)
            if record is None:
                destructive.append((category, key))
                notes[(category, key)] = unreadable.get((category, key), 'absent from desired state')
                continue
            if not managed or spec.identity is None:
                continue
            if spec.identity is None:
                continue
            before = _applied_identity(applied, category, key)
            after = record.identity()
            if before is not None and after is not None and before != after:
                destructive.append((category, key))
                notes[(category, key)] = f"{spec.identity} {before} -> {after} (replacement)"
    return sorted(destructive), notes, unmanaged


def _format_keys(keys: list, notes: dict) -> list[str]:
    return [f"  - {category}/{key} ({notes[(category, key)]})" for category, key in keys]


def evaluate(merged: MergedDesiredState, applied: AppliedStateSnapshot,
             override_destroy: bool = False) -> SafetyVerdict:
    """Decide whether the merged state may be applied."""
    if not merged.has_collected_content():
        keys = sorted((e.category, e.key) for e in applied.entries)
        lines = ["Nothing was collected this run; refusing to apply an empty desired state"]
        if keys:
            lines.append(f"Applying it would remove {len(keys)} applied resource(s):")
            lines.extend(f"  - {category}/{key}" for category, key in keys)
        lines.append("Remedy: add at least one resource to the desired state (the override does not apply)")
        return SafetyVerdict(allowed=False, destructive_keys=tuple(keys), reason='\n'.join(lines))

    destructive, notes, unmanaged = destructive_diff(merged, applied)

    if not destructive:
        return SafetyVerdict(
            allowed=True,
            reason="No destructive changes",
            unmanaged_categories=tuple(unmanaged),
        )

    listing = _format_keys(destructive, notes)
    if override_destroy:
        reason = '\n'.join([
            f"Destroy override set; allowing {len(destructive)} destructive change(s):",
            *listing,
        ])
        return SafetyVerdict(
            allowed=True,
            destructive_keys=tuple(destructive),
            reason=reason,
            unmanaged_categories=tuple(unmanaged),
        )

    reason = '\n'.join([
        f"Refusing to destroy {len(destructive)} applied resource(s):",
        *listing,
        "Remedies:",
        "  1. Add the resource(s) back to the desired state",
        f"  2. To destroy them deliberately, {OVERRIDE_HINT}",
        "  VMs and containers left out of the desired state are kept from applied state,",
        "  so the override alone does not remove them: set enabled: false on one instead",
    ])
    return SafetyVerdict(
        allowed=False,
        destructive_keys=tuple(destructive),
        reason=reason,
        unmanaged_categories=tuple(unmanaged),
    )


def log_verdict(verdict: SafetyVerdict, merged: MergedDesiredState, applied: AppliedStateSnapshot) -> None:
    """Log a verdict, naming categories skipped as unmanaged."""
    for category in verdict.unmanaged_categories:
        count = applied.count(category)
        kept = sum(1 for key in applied.keys(category) if key in merged.document.records(category))
        if kept == count:
            logger.info(f"{category}: not collected this run, {count} applied resource(s) preserved")
        elif CATEGORIES[category].preserved:
            logger.warning(
                f"*** {category}: not collected this run; only {kept} of {count} applied "
                f"resource(s) could be preserved ***"
            )
        else:
            logger.warning(
                f"*** {category}: not collected this run; {count} applied resource(s) are not "
                f"in the desired state and the engine may remove them ***"
            )
    if verdict.allowed:
        if verdict.destructive_keys:
            logger.warning(verdict.reason)
        else:
            logger.info(f"Safety guard: {verdict.reason}")
    else:
        logger.error(f"Safety guard blocked the run:\n{verdict.reason}")
