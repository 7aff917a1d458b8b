from pydantic_settings import BaseSettings
from typing import List, Optional
from functools import lru_cache

class Settings(BaseSettings):
    # App Settings
    APP_NAME: str = "Invoice Batch Processing Service"
    API_V1_STR: str = "/api/v1"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["*"]

    # Security
    API_TOKEN: str

    # Azure Document Intelligence
    AZURE_DOCUMENT_ENDPOINT: str
    AZURE_DOCUMENT_KEY: str
    DOCUMENT_MODEL_ID: str = "prebuilt-invoice"

    # OpenAI
    OPENAI_API_KEY: str
    OPENAI_MODEL: str = "gpt-4-turbo-preview"
    OPENAI_BASE_URL: Optional[str] = None

    # Batch Configuration
    BATCH_SIZE: int = 10
    MAX_BATCH_SIZE: int = 50
    BATCH_SETTLE_DELAY: float = 0.0
    # Finished jobs kept for status queries
    MAX_RETAINED_JOBS: int = 20

    # Normalization retry policy
    NORMALIZATION_MAX_RETRIES: int = 2
    NORMALIZATION_RETRY_DELAY: float = 1.0

    # Deadlines for external calls (seconds)
    DOWNLOAD_TIMEOUT: float = 60.0
    EXTRACTION_TIMEOUT: float = 120.0
    NORMALIZATION_TIMEOUT: float = 60.0

    # Live status channel
    EVENT_BUFFER_SIZE: int = 100
    EVENT_DRAIN_TIMEOUT: float = 1.0

    class Config:
        env_file = ".env"
        case_sensitive = True

@lru_cache()
def get_settings():
    return Settings()
