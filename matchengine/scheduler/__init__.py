"""Scheduler module for periodic batch sweeps."""

from .service import CLEANUP_JOB_ID, SWEEP_JOB_ID, SweepScheduler

__all__ = ["SweepScheduler", "SWEEP_JOB_ID", "CLEANUP_JOB_ID"]
