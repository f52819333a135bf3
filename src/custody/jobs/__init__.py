"""Scheduled deposit pipeline jobs."""

from custody.jobs.runner import DepositJobRunner

__all__ = ["DepositJobRunner"]
