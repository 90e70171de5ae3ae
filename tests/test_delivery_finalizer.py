"""Tests for idempotent delivery finalization."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import make_lead, make_order
from pipeline.errors import OrderNotFoundError, SheetsUnavailableError
from pipeline.orchestrator import build_in_memory_pipeline
from schemas.orders import OrderStatus
from storage.sheets_storage import ISheetsStorage


async def fake_report(order, leads, rows_per_page=25):
    # Yield once so concurrent finalizations interleave the way real rendering does
    await asyncio.sleep(0)
    return b"%PDF-1.4 fake"


@pytest.fixture(autouse=True)
def quick_report():
    with patch("pipeline.agents.delivery_finalizer.generate_lead_report", fake_report):
        yield


class RecordingSheets(ISheetsStorage):
    def __init__(self):
        self.created = []

    async def create_lead_sheet(self, order, leads):
        self.created.append(order.id)
        return f"https://docs.google.com/spreadsheets/d/sheet-{order.id[:8]}"


def seed(pipeline, lead_count=25, **order_fields):
    order = make_order(**order_fields)

    async def insert():
        await pipeline.orders.insert(order)
        for i in range(lead_count):
            await pipeline.leads.add(make_lead(order.id, address=f"{i} Main St"))

    asyncio.run(insert())
    return order


def leads_ready_emails(pipeline):
    return pipeline.email_client.sent_to("dana@example.com", "Your Leads Are Ready")


class TestFinalize:
    def test_finalizes_with_all_artifacts(self, settings):
        sheets = RecordingSheets()
        pipeline = build_in_memory_pipeline(settings, sheets=sheets)
        order = seed(pipeline)

        result = asyncio.run(pipeline.finalizer.finalize(order.id))

        assert result.outcome == "finalized"
        assert result.leads_count == 25
        assert result.status == OrderStatus.COMPLETED
        assert result.document_url.endswith(f"{order.id}/leads-{order.id}.pdf")
        assert result.export_url.endswith(f"{order.id}/leads-{order.id}.csv")
        assert result.sheet_url.startswith("https://docs.google.com/spreadsheets/d/")
        assert result.artifact_url == result.document_url

        stored = asyncio.run(pipeline.orders.get(order.id))
        assert stored.delivered_at is not None
        assert stored.sheet_url == result.document_url
        assert stored.leads_count == 25
        assert stored.total_leads_delivered == 25
        assert stored.status == OrderStatus.COMPLETED
        assert sheets.created == [order.id]

        [email] = leads_ready_emails(pipeline)
        assert "Download PDF Report" in email["html"]
        assert "Download Leads (CSV)" in email["html"]
        assert "Open Google Sheet" in email["html"]

    def test_second_call_is_a_noop(self, pipeline):
        order = seed(pipeline)

        first = asyncio.run(pipeline.finalizer.finalize(order.id))
        uploads = dict(pipeline.documents.files)
        second = asyncio.run(pipeline.finalizer.finalize(order.id))

        assert first.outcome == "finalized"
        assert second.outcome == "already_delivered"
        assert second.artifact_url == first.artifact_url
        assert pipeline.documents.files == uploads
        assert len(leads_ready_emails(pipeline)) == 1

    def test_no_leads_is_a_noop(self, pipeline):
        order = seed(pipeline, lead_count=0)

        result = asyncio.run(pipeline.finalizer.finalize(order.id))

        assert result.outcome == "awaiting_leads"
        assert result.message == "No leads yet to finalize."
        stored = asyncio.run(pipeline.orders.get(order.id))
        assert stored.delivered_at is None
        assert stored.status == OrderStatus.PROCESSING
        assert pipeline.documents.files == {}
        assert pipeline.email_client.outbox == []

    def test_unknown_order_raises(self, pipeline):
        with pytest.raises(OrderNotFoundError):
            asyncio.run(pipeline.finalizer.finalize("00000000-0000-0000-0000-000000000000"))

    def test_below_minimum_is_partial_delivery(self, pipeline):
        order = seed(pipeline, lead_count=12)

        result = asyncio.run(pipeline.finalizer.finalize(order.id))

        assert result.status == OrderStatus.PARTIAL_DELIVERY
        assert asyncio.run(pipeline.orders.get(order.id)).status == OrderStatus.PARTIAL_DELIVERY

    def test_sheets_unavailable_still_delivers(self, pipeline):
        order = seed(pipeline)

        result = asyncio.run(pipeline.finalizer.finalize(order.id))

        assert result.outcome == "finalized"
        assert result.sheet_url is None
        assert result.document_url is not None
        [email] = leads_ready_emails(pipeline)
        assert "Open Google Sheet" not in email["html"]

    def test_sheet_error_degrades_gracefully(self, settings):
        sheets = RecordingSheets()
        pipeline = build_in_memory_pipeline(settings, sheets=sheets)
        order = seed(pipeline)

        with patch.object(sheets, "create_lead_sheet", AsyncMock(side_effect=RuntimeError("quota exceeded"))):
            result = asyncio.run(pipeline.finalizer.finalize(order.id))

        assert result.outcome == "finalized"
        assert result.sheet_url is None
        assert asyncio.run(pipeline.orders.get(order.id)).delivered_at is not None

    def test_falls_back_to_csv_then_sheet(self, settings):
        sheets = RecordingSheets()
        pipeline = build_in_memory_pipeline(settings, sheets=sheets)
        order = seed(pipeline)
        pipeline.documents.fail_extensions = {"pdf"}

        result = asyncio.run(pipeline.finalizer.finalize(order.id))
        assert result.document_url is None
        assert result.artifact_url == result.export_url

        other = seed(pipeline)
        pipeline.documents.fail_extensions = {"pdf", "csv"}
        result = asyncio.run(pipeline.finalizer.finalize(other.id))
        assert result.artifact_url == result.sheet_url

    def test_every_artifact_failing_keeps_existing_reference(self, pipeline):
        order = seed(pipeline, sheet_url="https://example.com/legacy-sheet")
        pipeline.documents.fail_extensions = {"pdf", "csv"}

        result = asyncio.run(pipeline.finalizer.finalize(order.id))

        assert result.outcome == "finalized"
        assert result.artifact_url == "https://example.com/legacy-sheet"

    def test_store_failure_propagates_without_email(self, pipeline):
        order = seed(pipeline)

        async def scenario():
            with patch.object(pipeline.orders, "mark_delivered", AsyncMock(side_effect=ConnectionError("db down"))):
                await pipeline.finalizer.finalize(order.id)

        with pytest.raises(ConnectionError):
            asyncio.run(scenario())
        assert pipeline.email_client.outbox == []

    def test_email_failure_does_not_undo_delivery(self, pipeline):
        order = seed(pipeline)
        pipeline.email_client.fail = True

        result = asyncio.run(pipeline.finalizer.finalize(order.id))

        assert result.outcome == "finalized"
        assert asyncio.run(pipeline.orders.get(order.id)).delivered_at is not None
        assert pipeline.notifier.records[-1].status.value == "failed"

    def test_concurrent_finalizations_send_one_email(self, pipeline):
        order = seed(pipeline)

        async def race():
            return await asyncio.gather(
                pipeline.finalizer.finalize(order.id),
                pipeline.finalizer.finalize(order.id),
                pipeline.finalizer.finalize(order.id),
            )

        results = asyncio.run(race())

        outcomes = sorted(r.outcome for r in results)
        assert outcomes == ["already_delivered", "already_delivered", "finalized"]
        assert len(leads_ready_emails(pipeline)) == 1

    def test_email_preview_limited(self, pipeline, settings):
        order = seed(pipeline, lead_count=12)

        asyncio.run(pipeline.finalizer.finalize(order.id))

        [email] = leads_ready_emails(pipeline)
        assert email["html"].count("Main St") == settings.preview_lead_count


class TestSheetsDisabled:
    def test_disabled_storage_raises_unavailable(self, pipeline):
        order = make_order()
        with pytest.raises(SheetsUnavailableError):
            asyncio.run(pipeline.sheets.create_lead_sheet(order, []))
