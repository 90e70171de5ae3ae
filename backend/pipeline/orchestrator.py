"""
Fulfillment Pipeline - Component Wiring
=======================================
Builds the four fulfillment components around one set of collaborators and
owns their start/stop lifecycle.

    payment webhook -> PaymentGateway -> order store
                                      -> LeadAcquisitionTrigger -> work queue -> scraper
                                      -> NotificationDispatcher (confirmation)
    finalize call   -> DeliveryFinalizer -> artifacts -> order store
                                         -> NotificationDispatcher (leads ready)
    stale sweep     -> DeliveryFinalizer / LeadAcquisitionTrigger

Usage:
    pipeline = build_pipeline(settings)        # Postgres, Supabase, Resend, Sheets
    await pipeline.start()
    ...
    await pipeline.stop()

    pipeline = build_in_memory_pipeline()      # local runs and tests
"""

import asyncio
from typing import Optional

import structlog

from config import Settings
from pipeline.agents.delivery_finalizer import DeliveryFinalizer
from pipeline.agents.lead_acquisition import (
    InMemoryWorkQueue,
    IWorkQueue,
    LeadAcquisitionTrigger,
    ScraperClient,
    create_work_queue,
)
from pipeline.agents.notifications import IEmailClient, InMemoryEmailClient, NotificationDispatcher, ResendEmailClient
from pipeline.agents.payment_gateway import PaymentGateway
from pipeline.stores import (
    ILeadStore,
    InMemoryLeadStore,
    InMemoryOrderStore,
    InMemoryProfileStore,
    IOrderStore,
    IProfileStore,
)
from storage.document_storage import IDocumentStorage, InMemoryDocumentStorage, SupabaseDocumentStorage
from storage.sheets_storage import DisabledSheetsStorage, GoogleSheetsStorage, ISheetsStorage
from storage.supabase_accounts import IAccountDirectory, InMemoryAccountDirectory, SupabaseAccountDirectory
from tasks.stale_orders import StaleOrderSweeper, stale_order_loop


# =============================================================================
# PIPELINE
# =============================================================================

class FulfillmentPipeline:
    """
    Holds the wired components.

    The work-queue consumer only starts when a scraper client is supplied;
    without one, jobs accumulate on the queue (useful in tests).
    """

    def __init__(
        self,
        settings: Settings,
        order_store: IOrderStore,
        lead_store: ILeadStore,
        profile_store: IProfileStore,
        documents: IDocumentStorage,
        sheets: ISheetsStorage,
        accounts: IAccountDirectory,
        email_client: IEmailClient,
        queue: IWorkQueue,
        scraper: Optional[ScraperClient] = None,
    ):
        self.settings = settings
        self.orders = order_store
        self.leads = lead_store
        self.profiles = profile_store
        self.documents = documents
        self.sheets = sheets
        self.accounts = accounts
        self.email_client = email_client
        self.queue = queue
        self.scraper = scraper

        self.acquisition = LeadAcquisitionTrigger(queue)
        self.notifier = NotificationDispatcher(
            email_client,
            accounts,
            site_url=settings.site_url,
            preview_lead_count=settings.preview_lead_count,
        )
        self.gateway = PaymentGateway(
            order_store,
            accounts,
            self.notifier,
            self.acquisition,
            webhook_secret=settings.stripe_webhook_secret,
            recurring_interval_days=settings.recurring_interval_days,
            profiles=profile_store,
        )
        self.finalizer = DeliveryFinalizer(
            order_store,
            lead_store,
            documents,
            sheets,
            self.notifier,
            default_state=settings.default_state,
            rows_per_page=settings.report_rows_per_page,
        )
        self.sweeper = StaleOrderSweeper(
            order_store,
            self.finalizer,
            self.acquisition,
            threshold_minutes=settings.stale_threshold_minutes,
            batch_size=settings.stale_batch_size,
            max_attempts=settings.max_finalize_attempts,
        )

        self._sweep_task: Optional[asyncio.Task] = None
        self._started = False
        self._logger = structlog.get_logger().bind(component="fulfillment_pipeline")

    async def start(self, run_sweep: bool = True):
        """Connect the queue, start the consumer and the stale sweep"""
        self._logger.info("starting_pipeline", queue=type(self.queue).__name__)

        await self.queue.connect()
        if self.scraper is not None:
            await self.queue.start_consumer(self.scraper.handle)

        if run_sweep and self.settings.stale_sweep_enabled:
            self._sweep_task = asyncio.create_task(
                stale_order_loop(self.sweeper, interval_seconds=self.settings.stale_check_interval_seconds)
            )

        self._started = True
        self._logger.info("pipeline_started")

    async def stop(self):
        """Stop the sweep and disconnect the queue"""
        self._logger.info("stopping_pipeline")

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        await self.queue.disconnect()
        self._started = False
        self._logger.info("pipeline_stopped")

    async def health_check(self) -> dict:
        return {
            "started": self._started,
            "work_queue": await self.queue.health_check(),
            "stale_sweep": self._sweep_task is not None and not self._sweep_task.done(),
            "sheets": not isinstance(self.sheets, DisabledSheetsStorage),
        }


# =============================================================================
# FACTORIES
# =============================================================================

def build_pipeline(settings: Settings) -> FulfillmentPipeline:
    """Production wiring. Call Database.initialize before using the stores."""
    from database import PostgresLeadStore, PostgresOrderStore, PostgresProfileStore

    documents = SupabaseDocumentStorage(
        settings.supabase_url,
        settings.supabase_service_role_key,
        bucket=settings.artifact_bucket,
    )
    accounts = SupabaseAccountDirectory(settings.supabase_url, settings.supabase_service_role_key)

    if settings.sheets_configured:
        sheets: ISheetsStorage = GoogleSheetsStorage(
            settings.google_sheets_folder_id,
            credentials_file=settings.google_service_account_file,
            credentials_json=settings.google_service_account_json,
        )
    else:
        sheets = DisabledSheetsStorage()

    queue = create_work_queue(
        settings.work_queue_backend,
        rabbitmq_url=settings.rabbitmq_url,
        queue_name=settings.lead_queue_name,
        max_attempts=settings.lead_queue_max_attempts,
        retry_delay=settings.lead_queue_retry_delay_seconds,
    )
    scraper = ScraperClient(
        settings.scraper_endpoint,
        settings.supabase_service_role_key,
        timeout=settings.scraper_timeout_seconds,
    )

    return FulfillmentPipeline(
        settings,
        order_store=PostgresOrderStore(),
        lead_store=PostgresLeadStore(),
        profile_store=PostgresProfileStore(),
        documents=documents,
        sheets=sheets,
        accounts=accounts,
        email_client=ResendEmailClient(settings.resend_api_key, settings.email_from),
        queue=queue,
        scraper=scraper,
    )


def build_in_memory_pipeline(settings: Optional[Settings] = None, **overrides) -> FulfillmentPipeline:
    """
    Fully in-memory wiring. Any collaborator can be swapped via keyword,
    e.g. `build_in_memory_pipeline(order_store=InMemoryOrderStore(enforce_unique=False))`.
    """
    settings = settings or Settings(stripe_webhook_secret="whsec_test")
    components = {
        "order_store": InMemoryOrderStore(),
        "lead_store": InMemoryLeadStore(),
        "profile_store": InMemoryProfileStore(),
        "documents": InMemoryDocumentStorage(),
        "sheets": DisabledSheetsStorage(),
        "accounts": InMemoryAccountDirectory(),
        "email_client": InMemoryEmailClient(),
        "queue": InMemoryWorkQueue(
            max_attempts=settings.lead_queue_max_attempts,
            retry_delay=settings.lead_queue_retry_delay_seconds,
        ),
        "scraper": None,
    }
    unknown = set(overrides) - set(components)
    if unknown:
        raise TypeError(f"Unknown pipeline components: {sorted(unknown)}")
    components.update(overrides)
    return FulfillmentPipeline(settings, **components)
