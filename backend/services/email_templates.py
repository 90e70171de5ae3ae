# services/email_templates.py
# ============================================================================
# REALTYLEADSAI FULFILLMENT - EMAIL TEMPLATES
# ============================================================================
# HTML bodies for the two lifecycle emails. Every interpolated value is escaped.
# ============================================================================

from html import escape
from typing import Optional

from pydantic import BaseModel

from schemas.orders import Lead

CONFIRMATION_SUBJECT = "Order Confirmed - Leads Arriving in 24hrs ✓"
LEADS_READY_SUBJECT = "Your Leads Are Ready 📊"

BASE_STYLE = """
body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
       line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px; }
.container { background: #ffffff; border: 1px solid #e5e7eb; border-radius: 8px; padding: 30px; }
h1 { color: #1a3a2e; font-size: 22px; margin: 0 0 20px 0; }
.order-details { background: #f9fafb; padding: 15px; border-radius: 6px; margin: 20px 0; }
.detail-line { margin: 8px 0; }
.cta-button { display: inline-block; background: #FFC107; color: #1a3a2e; padding: 14px 28px;
              text-decoration: none; border-radius: 6px; font-weight: 600; margin: 20px 0; }
.preview { width: 100%; border-collapse: collapse; font-size: 13px; }
.preview td, .preview th { border-bottom: 1px solid #e5e7eb; padding: 6px; text-align: left; }
.footer { margin-top: 30px; padding-top: 20px; border-top: 1px solid #e5e7eb; color: #6b7280; font-size: 13px; }
"""


class RenderedEmail(BaseModel):
    subject: str
    html: str


def _page(body: str) -> str:
    return (
        "<!DOCTYPE html><html><head>"
        f"<style>{BASE_STYLE}</style>"
        "</head><body><div class='container'>"
        f"{body}"
        "<div class='footer'>Questions? Just reply to this email.</div>"
        "</div></body></html>"
    )


def _button(url: str, label: str) -> str:
    return (
        "<div style='text-align: center;'>"
        f"<a href='{escape(url, quote=True)}' class='cta-button'>{escape(label)}</a>"
        "</div>"
    )


def render_order_confirmation(
    name: str,
    email: str,
    lead_count_label: str,
    city: str,
    price_cents: int,
    action_url: str,
    returning_account: bool,
) -> RenderedEmail:
    """
    Confirmation email.

    New accounts get a "set your password" block pointing at `action_url`;
    returning accounts get a plain login button instead.
    """
    details = (
        "<div class='order-details'>"
        f"<div class='detail-line'>✓ {escape(lead_count_label)} FSBO leads for {escape(city)}</div>"
        f"<div class='detail-line'>✓ ${price_cents / 100:.2f} paid</div>"
        "<div class='detail-line'>✓ Delivery: Within 24 hours</div>"
        "</div>"
    )

    if returning_account:
        account_block = (
            "<p>Welcome back! Your order has been added to your account.</p>"
            + _button(action_url, "View Your Dashboard")
        )
    else:
        account_block = (
            "<p><strong>🔐 Set Your Password</strong></p>"
            f"<p>We created your account: {escape(email)}</p>"
            + _button(action_url, "Set Password Now")
        )

    body = (
        f"<h1>Hi {escape(name)},</h1>"
        "<p>Your order is confirmed!</p>"
        + details
        + account_block
        + "<p>You'll get another email when your leads are ready.</p>"
    )
    return RenderedEmail(subject=CONFIRMATION_SUBJECT, html=_page(body))


def _preview_table(leads: list[Lead]) -> str:
    if not leads:
        return ""
    rows = "".join(
        "<tr>"
        f"<td>{escape(lead.seller_name or 'Homeowner')}</td>"
        f"<td>{escape(lead.address)}</td>"
        f"<td>{escape(lead.city or '')}</td>"
        f"<td>{escape(lead.price or '')}</td>"
        "</tr>"
        for lead in leads
    )
    return (
        "<p><strong>Preview of your first leads:</strong></p>"
        "<table class='preview'>"
        "<tr><th>Seller</th><th>Address</th><th>City</th><th>Price</th></tr>"
        f"{rows}</table>"
    )


def render_leads_ready(
    name: str,
    lead_count: int,
    city: str,
    preview_leads: list[Lead],
    site_url: str,
    document_url: Optional[str] = None,
    export_url: Optional[str] = None,
    sheet_url: Optional[str] = None,
) -> RenderedEmail:
    """Delivery-ready email with a short preview and links to every artifact produced."""
    buttons = []
    if document_url:
        buttons.append(_button(document_url, "Download PDF Report"))
    if export_url:
        buttons.append(_button(export_url, "Download Leads (CSV)"))
    if sheet_url:
        buttons.append(_button(sheet_url, "Open Google Sheet"))

    login_url = f"{site_url.rstrip('/')}/login"
    body = (
        f"<h1>Hi {escape(name)},</h1>"
        f"<p>Your {lead_count} {escape(city)} FSBO leads are ready!</p>"
        + "".join(buttons)
        + _preview_table(preview_leads)
        + f"<p>Or login anytime: <a href='{escape(login_url, quote=True)}'>{escape(login_url)}</a></p>"
        + "<p>Good luck closing! 🏠</p>"
    )
    return RenderedEmail(subject=LEADS_READY_SUBJECT, html=_page(body))
