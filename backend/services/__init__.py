# services/__init__.py
# ============================================================================
# REALTYLEADSAI FULFILLMENT - SERVICES MODULE
# ============================================================================
# Lead formatting, CSV export, PDF report and email rendering
# ============================================================================

from services.lead_exports import (
    build_lead_csv,
    build_sheet_values,
    days_on_market,
    format_price,
)

from services.lead_report import (
    render_report_html,
    render_report_pdf,
    generate_lead_report,
)

from services.email_templates import (
    RenderedEmail,
    render_order_confirmation,
    render_leads_ready,
)

__all__ = [
    # Exports
    "build_lead_csv",
    "build_sheet_values",
    "days_on_market",
    "format_price",
    # Report
    "render_report_html",
    "render_report_pdf",
    "generate_lead_report",
    # Email
    "RenderedEmail",
    "render_order_confirmation",
    "render_leads_ready",
]
