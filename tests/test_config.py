"""Tests for settings loading and startup validation."""

import pytest

from config import Settings
from pipeline.errors import ConfigurationError


def test_from_env_reads_upper_case_keys():
    settings = Settings.from_env({
        "STRIPE_WEBHOOK_SECRET": "whsec_x",
        "STALE_THRESHOLD_MINUTES": "15",
        "STALE_SWEEP_ENABLED": "false",
        "WORK_QUEUE_BACKEND": "rabbitmq",
    })
    assert settings.stripe_webhook_secret == "whsec_x"
    assert settings.stale_threshold_minutes == 15
    assert settings.stale_sweep_enabled is False
    assert settings.work_queue_backend == "rabbitmq"


def test_empty_values_fall_back_to_defaults():
    settings = Settings.from_env({"ARTIFACT_BUCKET": ""})
    assert settings.artifact_bucket == "lead-csvs"


def test_validation_names_every_missing_key():
    settings = Settings.from_env({"STRIPE_WEBHOOK_SECRET": "whsec_x"})

    with pytest.raises(ConfigurationError) as exc_info:
        settings.validate_for_startup()

    assert exc_info.value.missing == ["SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY"]


def test_complete_settings_validate():
    Settings.from_env({
        "STRIPE_WEBHOOK_SECRET": "whsec_x",
        "SUPABASE_URL": "https://project.supabase.co",
        "SUPABASE_SERVICE_ROLE_KEY": "service-role",
    }).validate_for_startup()


def test_scraper_endpoint_defaults_to_supabase_function():
    settings = Settings(supabase_url="https://project.supabase.co/")
    assert settings.scraper_endpoint == "https://project.supabase.co/functions/v1/scrape-leads"
    assert Settings(scraper_url="https://scraper.test/run").scraper_endpoint == "https://scraper.test/run"


def test_sheets_require_credentials_and_folder():
    assert not Settings(google_sheets_folder_id="folder").sheets_configured
    assert Settings(google_service_account_json="{}", google_sheets_folder_id="folder").sheets_configured
