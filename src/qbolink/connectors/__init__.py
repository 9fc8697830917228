"""Accounting API transports."""

from qbolink.connectors.quickbooks import (
    DateRange,
    QuickBooksReportClient,
    extract_query_results,
    standard_report_requests,
)

__all__ = [
    "DateRange",
    "QuickBooksReportClient",
    "extract_query_results",
    "standard_report_requests",
]
