"""Consent evaluation, gating and management for child records."""

from __future__ import annotations

from kitagov.consent.evaluator import ConsentEvaluator, ConsentStatus, ConsentType
from kitagov.consent.gate import ConsentGate, SensitiveOperation
from kitagov.consent.manager import ConsentManager

__all__ = [
    "ConsentEvaluator",
    "ConsentGate",
    "ConsentManager",
    "ConsentStatus",
    "ConsentType",
    "SensitiveOperation",
]
