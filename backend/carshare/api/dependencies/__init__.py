# backend/carshare/api/dependencies/__init__.py
"""
Central export point for all dependencies.

This module re-exports all dependencies from submodules
for convenient access throughout the application.
"""

from .auth import get_current_actor
from .services import build_booking_service, build_reconciler, get_booking_service

__all__ = [
    # Auth
    "get_current_actor",
    # Services
    "build_booking_service",
    "build_reconciler",
    "get_booking_service",
]
