"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter
from app.api.routes import bookings, payments, tickets

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(bookings.router)
api_router.include_router(payments.router)
api_router.include_router(tickets.router)
