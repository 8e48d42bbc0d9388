"""
calltree - execution tracing and analytics for tool-calling agents

Packages:
- calltree.analytics: trace recorder, analytics engine, real-time processor, storage
- calltree.api: FastAPI read surface over the analytics pipeline
"""

__version__ = "1.0.0"
