"""Reconciliation of collected input with applied state."""

from reconcile.merge import MergedDesiredState, merge
from reconcile.guard import SafetyVerdict, evaluate

__all__ = ['MergedDesiredState', 'merge', 'SafetyVerdict', 'evaluate']
