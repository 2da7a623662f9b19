"""GDPR data-subject rights: erasure request review and personal data export."""

from __future__ import annotations

from kitagov.gdpr.export import DataExportAggregator, ExportBundle
from kitagov.gdpr.requests import GDPRRequest, GDPRRequestWorkflow, RequestPage

__all__ = [
    "DataExportAggregator",
    "ExportBundle",
    "GDPRRequest",
    "GDPRRequestWorkflow",
    "RequestPage",
]
