from typing import Optional, Any
from invoice_service.models.base import CamelModel

class ErrorResponse(CamelModel):
    detail: str
    error_code: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
