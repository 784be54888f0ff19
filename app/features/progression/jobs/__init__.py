"""
Job runners for the connection progression feature.
"""

from .round_expiry_job import run_round_expiry_job, start_round_expiry_scheduler

__all__ = ["run_round_expiry_job", "start_round_expiry_scheduler"]
