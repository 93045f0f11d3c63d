"""
API Module for the Loan Lead Pipeline.

FastAPI application with routes for:
- Abandonment event ingestion and visitor registration
- Return-link redemption and chat
- Lead, dead-letter and activity inspection
"""

from .main import create_app, app

__all__ = ["create_app", "app"]
