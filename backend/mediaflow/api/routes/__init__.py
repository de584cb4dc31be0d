"""
API route modules.

Import all route modules here for easy access.
"""

from mediaflow.api.routes import admin, media, tenants

__all__ = ["admin", "media", "tenants"]
