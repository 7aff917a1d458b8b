import os

os.environ.setdefault("API_TOKEN", "test-token")
os.environ.setdefault("AZURE_DOCUMENT_ENDPOINT", "https://example.cognitiveservices.azure.com/")
os.environ.setdefault("AZURE_DOCUMENT_KEY", "test-azure-key")
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")

import pytest
from fastapi.testclient import TestClient
from invoice_service.main import app
from invoice_service.core.dependencies import (
    get_batch_orchestrator,
    get_event_publisher,
    get_job_registry,
)
from invoice_service.core.exceptions import DownloadError, ExtractionError
from invoice_service.services.batch_orchestrator import BatchOrchestrator
from invoice_service.services.event_publisher import EventPublisher
from invoice_service.services.job_registry import JobRegistry
from tests.fakes import FakeExtractionClient, FakeNormalizationClient


@pytest.fixture
def publisher():
    return EventPublisher(buffer_size=100)

@pytest.fixture
def registry():
    return JobRegistry()

@pytest.fixture
def fake_extraction():
    return FakeExtractionClient()

@pytest.fixture
def fake_normalization():
    return FakeNormalizationClient()

@pytest.fixture
def orchestrator(fake_extraction, fake_normalization, publisher, registry):
    return BatchOrchestrator(
        extraction_client=fake_extraction,
        normalization_client=fake_normalization,
        publisher=publisher,
        registry=registry,
        drain_timeout=0.05,
        settle_delay=0
    )

@pytest.fixture
def test_client(orchestrator, publisher, registry):
    app.dependency_overrides[get_batch_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_event_publisher] = lambda: publisher
    app.dependency_overrides[get_job_registry] = lambda: registry
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()

@pytest.fixture
def download_error():
    return DownloadError("Failed to download file: 404 Not Found", status_code=404)

@pytest.fixture
def extraction_error():
    return ExtractionError("No text was extracted from the document")
