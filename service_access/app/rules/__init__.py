"""
Eligibility rules package.

Holds the verdict model and the evaluator that turns a tag snapshot and its
member snapshot into a grant/deny verdict. The evaluator is a pure function
of its inputs and the supplied instant; it never reads clocks, caches or
stores, which keeps every decision reproducible from the audit trail.
"""

from .models import Decision, Reason, Verdict
from .evaluator import EligibilityEvaluator

__all__ = ["Decision", "Reason", "Verdict", "EligibilityEvaluator"]
