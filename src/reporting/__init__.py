"""Deployment reports."""

from reporting.report import DeploymentReport, StageRecord

__all__ = ['DeploymentReport', 'StageRecord']
