# ============================================================================
# Detention Adjudicator
# Reporting Module - Consolidated Batch Report
# ============================================================================

from app.reporting.report_writer import BatchReport, ReportEntry, ReportStatus

__all__ = ["BatchReport", "ReportEntry", "ReportStatus"]
