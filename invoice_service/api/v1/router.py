from fastapi import APIRouter
from invoice_service.api.v1.endpoints import health, invoices, websocket

api_router = APIRouter()

api_router.include_router(invoices.router, prefix="/invoices", tags=["invoices"])
api_router.include_router(websocket.router, tags=["status"])
api_router.include_router(health.router, tags=["health"])
