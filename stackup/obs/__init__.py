"""
Observability for bring-up runs: failure classification and status derivation.
"""

from .classify import FailureClassifier, FailureRule, Severity, classify
from .status import RunStatus, StatusDeriver, StatusInfo

__all__ = [
    "FailureClassifier",
    "FailureRule",
    "Severity",
    "classify",
    "RunStatus",
    "StatusDeriver",
    "StatusInfo",
]
