"""Deadline Enforcer - API Routers"""
from .consequences import router as consequences_router
from .scheduler import router as scheduler_router

__all__ = [
    "consequences_router",
    "scheduler_router",
]
