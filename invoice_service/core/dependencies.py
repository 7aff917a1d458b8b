from fastapi import Depends, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from functools import lru_cache
from typing import Optional
from invoice_service.core.config import get_settings
from invoice_service.core.exceptions import AuthenticationError
from invoice_service.services.batch_orchestrator import BatchOrchestrator
from invoice_service.services.event_publisher import EventPublisher
from invoice_service.services.extraction_service import DocumentExtractionClient
from invoice_service.services.file_resolver import HttpFileResolver
from invoice_service.services.job_registry import JobRegistry
from invoice_service.services.normalization_service import TextNormalizationClient
import hmac
import logging

logger = logging.getLogger(__name__)
settings = get_settings()

bearer_scheme = HTTPBearer(auto_error=False)

class TokenVerifier:
    """Checks caller tokens against the configured API token"""

    def __init__(self, token: str):
        self._token = token

    def verify(self, token: Optional[str]) -> bool:
        if not token or not self._token:
            return False
        return hmac.compare_digest(token.encode(), self._token.encode())

@lru_cache()
def get_token_verifier() -> TokenVerifier:
    return TokenVerifier(settings.API_TOKEN)

@lru_cache()
def get_event_publisher() -> EventPublisher:
    return EventPublisher(buffer_size=settings.EVENT_BUFFER_SIZE)

@lru_cache()
def get_job_registry() -> JobRegistry:
    return JobRegistry(max_finished_jobs=settings.MAX_RETAINED_JOBS)

@lru_cache()
def get_file_resolver() -> HttpFileResolver:
    return HttpFileResolver()

@lru_cache()
def get_extraction_client() -> DocumentExtractionClient:
    return DocumentExtractionClient(file_resolver=get_file_resolver())

@lru_cache()
def get_normalization_client() -> TextNormalizationClient:
    return TextNormalizationClient()

def get_batch_orchestrator(
    extraction_client: DocumentExtractionClient = Depends(get_extraction_client),
    normalization_client: TextNormalizationClient = Depends(get_normalization_client),
    publisher: EventPublisher = Depends(get_event_publisher),
    registry: JobRegistry = Depends(get_job_registry),
) -> BatchOrchestrator:
    return BatchOrchestrator(
        extraction_client=extraction_client,
        normalization_client=normalization_client,
        publisher=publisher,
        registry=registry
    )

async def require_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    verifier: TokenVerifier = Depends(get_token_verifier),
):
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthenticationError()
    if not verifier.verify(credentials.credentials):
        raise AuthenticationError("Invalid token")

async def require_query_token(
    token: Optional[str] = Query(None),
    verifier: TokenVerifier = Depends(get_token_verifier),
):
    # EventSource clients cannot send headers, so the token travels in the query
    if not verifier.verify(token):
        raise AuthenticationError()

async def close_clients():
    if get_extraction_client.cache_info().currsize:
        await get_extraction_client().close()
    if get_normalization_client.cache_info().currsize:
        await get_normalization_client().close()
