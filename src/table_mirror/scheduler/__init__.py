"""
Periodic mirroring with APScheduler.
"""

from .jobs import mirror_job
from .scheduler import MirrorScheduler

__all__ = [
    "MirrorScheduler",
    "mirror_job",
]
