from invoice_service.core.config import get_settings
from invoice_service.core.exceptions import DownloadError
from invoice_service.core.monitoring import STAGE_PROCESSING_TIME, track_time
import asyncio
import aiohttp
import logging
import ssl
import certifi

logger = logging.getLogger(__name__)
settings = get_settings()

class HttpFileResolver:
    """Fetch the raw bytes behind a file reference (an http(s) URL)"""

    def __init__(self, timeout: float = None):
        self.timeout = aiohttp.ClientTimeout(total=timeout or settings.DOWNLOAD_TIMEOUT)
        self.ssl_context = ssl.create_default_context(cafile=certifi.where())

    @track_time(STAGE_PROCESSING_TIME, "download")
    async def fetch(self, file_ref: str) -> bytes:
        if not file_ref:
            raise DownloadError("File URL is required")

        logger.debug(f"Downloading file: {file_ref}")
        try:
            connector = aiohttp.TCPConnector(ssl=self.ssl_context)
            async with aiohttp.ClientSession(connector=connector, timeout=self.timeout) as session:
                async with session.get(file_ref, headers={"Accept": "*/*"}) as response:
                    if response.status < 200 or response.status >= 300:
                        raise DownloadError(
                            f"Failed to download file: {response.status} {response.reason}",
                            status_code=response.status
                        )
                    content = await response.read()
        except asyncio.TimeoutError:
            raise DownloadError(f"Download timed out after {self.timeout.total}s")
        except aiohttp.ClientError as e:
            raise DownloadError(f"Failed to download file: {str(e)}") from e

        if not content:
            raise DownloadError("Downloaded file is empty")

        logger.debug(f"Downloaded {len(content)} bytes from {file_ref}")
        return content
