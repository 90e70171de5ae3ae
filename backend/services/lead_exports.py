# services/lead_exports.py
# ============================================================================
# REALTYLEADSAI FULFILLMENT - LEAD EXPORTS
# ============================================================================
# Delimited-text and spreadsheet row renderings of an order's leads
# ============================================================================

import math
import re
from datetime import datetime, time, timezone
from typing import Iterable, Optional

from schemas.orders import Lead, Order

BRANDING_ROW = "RealtyLeadsAI - Fresh FSBO Leads"

CSV_HEADER = [
    "Name", "Phone", "Email", "Address", "City", "State", "Zip", "Price",
    "Days on Market", "Property Type", "Source", "Listing URL", "Notes",
]

SHEET_HEADER = [
    "Name", "Phone/Email", "Address", "City", "State", "Zip", "Price",
    "Source", "Type", "Listing URL", "Date Listed",
]

_SURROUNDING_QUOTES = re.compile(r"^[\"']+|[\"']+$")
_NON_DIGITS = re.compile(r"[^0-9]")


def clean_value(value) -> str:
    """Trim a cell and drop stray quotes left over from scraped JSON."""
    if value is None:
        return ""
    return _SURROUNDING_QUOTES.sub("", str(value).strip())


def format_price(raw: Optional[str]) -> str:
    digits = _NON_DIGITS.sub("", raw or "")
    return f"${digits}" if digits else ""


def days_on_market(lead: Lead, now: datetime) -> str:
    if not lead.date_listed:
        return ""
    listed = datetime.combine(lead.date_listed, time.min, tzinfo=timezone.utc)
    elapsed_days = (now - listed).total_seconds() / 86400
    return str(max(0, math.ceil(elapsed_days)))


def format_generated_date(value: datetime) -> str:
    """`March 5, 2025` style, without a zero-padded day"""
    return f"{value:%B} {value.day}, {value.year}"


def lead_csv_row(lead: Lead, now: datetime, default_state: str = "MI") -> list[str]:
    return [
        clean_value(lead.seller_name or "Homeowner"),
        clean_value(lead.phone),
        clean_value(lead.email),
        clean_value(lead.address),
        clean_value(lead.city),
        clean_value(lead.state or default_state),
        clean_value(lead.zip),
        clean_value(format_price(lead.price)),
        days_on_market(lead, now),
        clean_value(lead.source_type or "FSBO"),
        clean_value(lead.source),
        clean_value(lead.url),
        "",
    ]


def csv_line(cells: Iterable[str]) -> str:
    """Join cells, wrapping only those that contain a comma in double quotes."""
    return ",".join(f'"{cell}"' if "," in cell else cell for cell in cells)


def build_lead_csv(
    leads: Iterable[Lead],
    order: Order,
    default_state: str = "MI",
    now: Optional[datetime] = None,
) -> str:
    """
    Render the delivery CSV.

    Layout: branding row, metadata row, blank separator, column header,
    then one row per lead. UTF-8 BOM and CRLF line endings so the file
    opens cleanly in Excel. Only cells containing a comma are quoted.

    Args:
        leads: Leads for the order, in delivery order
        order: Owning order (city and creation date go in the metadata row)
        default_state: State written when a lead has none
        now: Reference time for days-on-market (defaults to current UTC)

    Returns:
        CSV text including the leading BOM
    """
    now = now or datetime.now(timezone.utc)
    leads = list(leads)

    lines = [
        BRANDING_ROW,
        (
            f"Generated: {format_generated_date(order.created_at)} | "
            f"Location: {order.primary_city}, {default_state} | "
            f"Total Leads: {len(leads)}"
        ),
        "",
        csv_line(CSV_HEADER),
    ]
    lines.extend(csv_line(lead_csv_row(lead, now, default_state)) for lead in leads)

    return "\ufeff" + "\r\n".join(lines) + "\r\n"


def build_sheet_values(leads: Iterable[Lead]) -> list[list[str]]:
    """Header plus raw lead values for the spreadsheet append call."""
    values = [list(SHEET_HEADER)]
    for lead in leads:
        values.append([
            lead.seller_name or "",
            lead.contact or "",
            lead.address,
            lead.city or "",
            lead.state or "",
            lead.zip or "",
            lead.price or "",
            lead.source,
            lead.source_type or "",
            lead.url or "",
            lead.date_listed.isoformat() if lead.date_listed else "",
        ])
    return values
