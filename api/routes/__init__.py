"""
API Routes for the Loan Lead Pipeline.
"""

from . import events, recovery, leads, activity

__all__ = ["events", "recovery", "leads", "activity"]
