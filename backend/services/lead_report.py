# services/lead_report.py
# ============================================================================
# REALTYLEADSAI FULFILLMENT - LEAD REPORT (PDF)
# ============================================================================
# Cover page plus paginated lead tables, rendered from HTML with xhtml2pdf
# ============================================================================

import asyncio
import logging
from datetime import datetime, timezone
from html import escape
from io import BytesIO
from typing import Optional

from xhtml2pdf import pisa

from pipeline.errors import ArtifactError
from schemas.orders import Lead, Order
from services.lead_exports import days_on_market, format_generated_date, format_price

logger = logging.getLogger("RealtyLeads.Report")

# reportlab base fonts cannot draw these
REPLACEMENTS = {
    "\u2013": "-",  # en dash
    "\u2014": "-",  # em dash
    "\u2212": "-",  # minus sign
    "\u00A0": " ",  # nbsp
    "\u2018": "'",
    "\u2019": "'",
    "\u201C": '"',
    "\u201D": '"',
    "\u2022": "*",  # bullet
}

REPORT_STYLE = """
@page { size: letter landscape; margin: 1.5cm; }
body { font-family: Helvetica; font-size: 9pt; color: #1f2937; }
h1 { font-size: 26pt; color: #0f172a; margin-bottom: 4pt; }
h2 { font-size: 13pt; color: #334155; }
.cover td { padding: 4pt 8pt; font-size: 11pt; }
table.leads { width: 100%; border-collapse: collapse; }
table.leads th { background-color: #0f172a; color: #ffffff; padding: 4pt; text-align: left; }
table.leads td { border-bottom: 0.5pt solid #cbd5e1; padding: 3pt; }
.footer { font-size: 8pt; color: #64748b; }
"""

TABLE_COLUMNS = ["#", "Seller", "Contact", "Address", "City", "Zip", "Price", "DOM", "Type", "Source"]


def _sanitize(html: str) -> str:
    for k, v in REPLACEMENTS.items():
        if k in html:
            html = html.replace(k, v)
    return html


def _cell(value) -> str:
    return f"<td>{escape(str(value)) if value else ''}</td>"


def _cover_page(order: Order, leads: list[Lead], generated: datetime) -> str:
    cities = ", ".join(order.target_cities)
    rows = [
        ("Prepared for", order.customer_name or order.customer_email or "Customer"),
        ("Generated", format_generated_date(generated)),
        ("Target area", f"{cities} ({order.search_radius} mile radius)"),
        ("Plan", order.tier.value.title()),
        ("Total leads", str(len(leads))),
        ("Order", order.id),
    ]
    body = "".join(f"<tr><td><b>{escape(k)}</b></td><td>{escape(v)}</td></tr>" for k, v in rows)
    return (
        "<h1>RealtyLeadsAI</h1>"
        "<h2>Fresh FSBO Leads Report</h2>"
        f"<table class='cover'>{body}</table>"
    )


def _lead_table(chunk: list[Lead], offset: int, now: datetime) -> str:
    head = "".join(f"<th>{escape(c)}</th>" for c in TABLE_COLUMNS)
    rows = []
    for i, lead in enumerate(chunk, start=offset + 1):
        rows.append(
            "<tr>"
            + _cell(i)
            + _cell(lead.seller_name or "Homeowner")
            + _cell(lead.contact)
            + _cell(lead.address)
            + _cell(lead.city)
            + _cell(lead.zip)
            + _cell(format_price(lead.price))
            + _cell(days_on_market(lead, now))
            + _cell(lead.source_type or "FSBO")
            + _cell(lead.source)
            + "</tr>"
        )
    return f"<table class='leads'><tr>{head}</tr>{''.join(rows)}</table>"


def render_report_html(
    order: Order,
    leads: list[Lead],
    rows_per_page: int = 25,
    now: Optional[datetime] = None,
) -> str:
    """Build the report HTML: one cover page, then `rows_per_page` leads per page."""
    if rows_per_page < 1:
        raise ValueError("rows_per_page must be positive")

    now = now or datetime.now(timezone.utc)
    pages = [_cover_page(order, leads, now)]

    total_pages = max(1, -(-len(leads) // rows_per_page))
    for page_no, start in enumerate(range(0, len(leads), rows_per_page), start=1):
        chunk = leads[start:start + rows_per_page]
        pages.append(
            _lead_table(chunk, start, now)
            + f"<p class='footer'>Page {page_no} of {total_pages}</p>"
        )

    body = "<pdf:nextpage />".join(pages)
    return (
        "<html><head><meta charset='utf-8'/>"
        f"<style>{REPORT_STYLE}</style></head>"
        f"<body>{body}</body></html>"
    )


def render_report_pdf(html: str) -> bytes:
    """Render HTML to PDF bytes. Raises ArtifactError on failure."""
    out = BytesIO()
    result = pisa.CreatePDF(src=_sanitize(html), dest=out, encoding="utf-8")
    if result.err:
        raise ArtifactError(f"xhtml2pdf reported {result.err} error(s)")
    return out.getvalue()


async def generate_lead_report(
    order: Order,
    leads: list[Lead],
    rows_per_page: int = 25,
) -> bytes:
    """Render the PDF report off the event loop."""
    html = render_report_html(order, leads, rows_per_page)
    pdf = await asyncio.get_running_loop().run_in_executor(None, render_report_pdf, html)
    logger.debug(f"Rendered report for order {order.id[:8]}: {len(pdf)} bytes")
    return pdf
