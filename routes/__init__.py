"""
API route modules.

Each module defines routes for one domain area.
"""

from routes.attendance import router as attendance_router

__all__ = [
    "attendance_router",
]
