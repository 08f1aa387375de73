"""FastAPI route modules.

Exports all route modules for inclusion in the main application.
"""

from src.api.routes import analytics, links, portrait, proxy, purchase_history

__all__ = [
    "analytics",
    "links",
    "portrait",
    "proxy",
    "purchase_history",
]
