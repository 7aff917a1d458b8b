from typing import Any, Optional, Sequence
from azure.ai.formrecognizer.aio import DocumentAnalysisClient
from azure.core.credentials import AzureKeyCredential
from azure.core.exceptions import AzureError
from invoice_service.core.config import get_settings
from invoice_service.core.exceptions import ExtractionError
from invoice_service.core.monitoring import STAGE_PROCESSING_TIME, track_time
from invoice_service.services.file_resolver import HttpFileResolver
import asyncio
import logging

logger = logging.getLogger(__name__)
settings = get_settings()

class DocumentExtractionClient:
    """OCR/layout stage backed by Azure Document Intelligence.

    Downloads the referenced file, submits it to the analysis service, waits
    for the long-running operation and returns the recognized text. There is
    no retry here: a failure is final for the item within its batch.
    """

    def __init__(
        self,
        file_resolver: HttpFileResolver,
        analysis_client: Optional[DocumentAnalysisClient] = None,
        model_id: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        self.file_resolver = file_resolver
        self.model_id = model_id or settings.DOCUMENT_MODEL_ID
        self.timeout = timeout or settings.EXTRACTION_TIMEOUT
        self.analysis_client = analysis_client or DocumentAnalysisClient(
            endpoint=settings.AZURE_DOCUMENT_ENDPOINT,
            credential=AzureKeyCredential(settings.AZURE_DOCUMENT_KEY),
            # A failed analysis is final for the item; the SDK must not retry it
            retry_total=0
        )

    async def extract(self, file_ref: str) -> str:
        content = await self.file_resolver.fetch(file_ref)
        logger.debug(f"Starting document analysis for {file_ref} ({len(content)} bytes)")

        result = await self._analyze(content)
        text = self.join_pages(getattr(result, "pages", None))

        logger.info(
            f"Document analysis completed for {file_ref}: "
            f"{len(result.pages)} pages, {len(text)} characters"
        )
        return text

    @track_time(STAGE_PROCESSING_TIME, "extraction")
    async def _analyze(self, content: bytes) -> Any:
        try:
            return await asyncio.wait_for(self._poll_until_done(content), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ExtractionError(f"Document analysis timed out after {self.timeout}s")
        except AzureError as e:
            raise ExtractionError(f"Document analysis failed: {str(e)}") from e

    async def _poll_until_done(self, content: bytes) -> Any:
        poller = await self.analysis_client.begin_analyze_document(self.model_id, document=content)
        return await poller.result()

    @staticmethod
    def join_pages(pages: Optional[Sequence[Any]]) -> str:
        """Concatenate recognized lines: spaces within a page, newlines between pages"""
        if not pages:
            raise ExtractionError("No pages found in the document")

        page_texts = []
        for page in pages:
            lines = getattr(page, "lines", None) or []
            text = " ".join(line.content for line in lines if line and line.content)
            if text.strip():
                page_texts.append(text)

        extracted_text = "\n".join(page_texts)
        if not extracted_text.strip():
            raise ExtractionError("No text was extracted from the document")
        return extracted_text

    async def close(self):
        await self.analysis_client.close()
