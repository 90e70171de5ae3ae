"""
Delivery Finalizer
==================
Turns an order's collected leads into deliverable artifacts and closes the order.

Per order:
- delivered_at set   -> short-circuit with the stored artifact reference
- no leads yet       -> no-op ("nothing to finalize")
- leads present      -> PDF report, CSV export, optional Google Sheet,
                        then one conditional write that sets delivered_at

Artifact steps fail independently and degrade to whatever succeeded. The
order update is fatal: it propagates, because a delivered order without an
artifact reference is wrong. Only the invocation that wins the conditional
write sends the leads-ready email.

pip install pydantic structlog xhtml2pdf
"""

from typing import Optional

import structlog

from pipeline.agents.notifications import NotificationDispatcher
from pipeline.errors import OrderNotFoundError, SheetsUnavailableError
from pipeline.stores import ILeadStore, IOrderStore
from schemas.orders import FinalizeResult, Lead, Order, OrderStatus
from services.lead_exports import build_lead_csv
from services.lead_report import generate_lead_report
from storage.document_storage import IDocumentStorage
from storage.sheets_storage import ISheetsStorage


class DeliveryFinalizer:
    """
    Idempotent order finalization.

    Example:
        finalizer = DeliveryFinalizer(orders, leads, documents, sheets, notifier)
        result = await finalizer.finalize(order_id)
    """

    def __init__(
        self,
        order_store: IOrderStore,
        lead_store: ILeadStore,
        documents: IDocumentStorage,
        sheets: ISheetsStorage,
        notifier: NotificationDispatcher,
        default_state: str = "MI",
        rows_per_page: int = 25,
    ):
        self.orders = order_store
        self.leads = lead_store
        self.documents = documents
        self.sheets = sheets
        self.notifier = notifier
        self.default_state = default_state
        self.rows_per_page = rows_per_page
        self._base_logger = structlog.get_logger()

    def _get_logger(self, order_id: str):
        return self._base_logger.bind(component="delivery_finalizer", order_id=order_id)

    async def finalize(self, order_id: str) -> FinalizeResult:
        log = self._get_logger(order_id)

        order = await self.orders.get(order_id)
        if not order:
            raise OrderNotFoundError(order_id)

        if order.delivered_at is not None:
            log.info("finalize_skipped_already_delivered", delivered_at=order.delivered_at.isoformat())
            return self._already_delivered(order)

        leads = await self.leads.list_for_order(order_id)
        if not leads:
            log.info("finalize_skipped_no_leads")
            return FinalizeResult(
                order_id=order_id,
                outcome="awaiting_leads",
                status=order.status,
                message="No leads yet to finalize.",
            )

        log.info("finalize_started", lead_count=len(leads))

        document_url = await self._build_document(order, leads, log)
        export_url = await self._build_export(order, leads, log)
        sheet_url = await self._build_sheet(order, leads, log)

        artifact_url = document_url or export_url or sheet_url or order.sheet_url
        status = self._delivery_status(order, len(leads))

        delivered = await self.orders.mark_delivered(
            order_id,
            sheet_url=artifact_url,
            leads_count=len(leads),
            total_leads_delivered=len(leads),
            status=status,
        )
        if delivered is None:
            # A concurrent invocation delivered first and owns the email
            log.info("finalize_lost_race")
            current = await self.orders.get(order_id)
            return self._already_delivered(current or order)

        log.info("order_delivered",
                 status=status.value,
                 artifact_url=artifact_url,
                 has_document=bool(document_url),
                 has_export=bool(export_url),
                 has_sheet=bool(sheet_url))

        await self.notifier.send_leads_ready(
            delivered,
            leads,
            document_url=document_url,
            export_url=export_url,
            sheet_url=sheet_url,
        )

        return FinalizeResult(
            order_id=order_id,
            outcome="finalized",
            artifact_url=artifact_url,
            document_url=document_url,
            export_url=export_url,
            sheet_url=sheet_url,
            leads_count=len(leads),
            status=status,
            message="Order finalized",
        )

    # =========================================================================
    # ARTIFACTS (each best-effort)
    # =========================================================================

    async def _build_document(self, order: Order, leads: list[Lead], log) -> Optional[str]:
        try:
            pdf = await generate_lead_report(order, leads, self.rows_per_page)
            url = await self.documents.upload_artifact(order.id, "pdf", pdf)
        except Exception:
            log.warning("document_artifact_failed", exc_info=True)
            return None
        log.info("document_artifact_uploaded", url=url)
        return url

    async def _build_export(self, order: Order, leads: list[Lead], log) -> Optional[str]:
        try:
            csv_text = build_lead_csv(leads, order, default_state=self.default_state)
            url = await self.documents.upload_artifact(order.id, "csv", csv_text.encode("utf-8"))
        except Exception:
            log.warning("export_artifact_failed", exc_info=True)
            return None
        log.info("export_artifact_uploaded", url=url)
        return url

    async def _build_sheet(self, order: Order, leads: list[Lead], log) -> Optional[str]:
        try:
            url = await self.sheets.create_lead_sheet(order, leads)
        except SheetsUnavailableError as e:
            log.info("sheet_artifact_unavailable", reason=str(e))
            return None
        except Exception:
            log.warning("sheet_artifact_failed", exc_info=True)
            return None
        log.info("sheet_artifact_created", url=url)
        return url

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _delivery_status(order: Order, lead_count: int) -> OrderStatus:
        minimum = order.min_leads if order.min_leads is not None else order.tier.quota[0]
        return OrderStatus.COMPLETED if lead_count >= minimum else OrderStatus.PARTIAL_DELIVERY

    @staticmethod
    def _already_delivered(order: Order) -> FinalizeResult:
        return FinalizeResult(
            order_id=order.id,
            outcome="already_delivered",
            artifact_url=order.sheet_url,
            leads_count=order.leads_count,
            status=order.status,
            message="Order already finalized",
        )
