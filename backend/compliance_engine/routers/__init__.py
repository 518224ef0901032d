"""Compliance Engine - API Routers"""
from .compliance import router as compliance_router
from .scheduler import router as scheduler_router

__all__ = [
    "compliance_router",
    "scheduler_router",
]
