"""
API route modules.
"""

from caseflow.api.routes.sync import router as sync_router

__all__ = ["sync_router"]
