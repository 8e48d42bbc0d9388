"""
API routes
"""

from calltree.api.routes import analytics, health

__all__ = ["analytics", "health"]
