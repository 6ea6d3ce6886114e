"""
Activity package: what members did at the doors.

Tracks each member's last entry and last refused attempt, and enforces the
wait imposed after a failed tag authentication.
"""

from .tracker import ActivityTracker, RECORDED_DENIALS

__all__ = ["ActivityTracker", "RECORDED_DENIALS"]
