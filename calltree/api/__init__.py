"""
calltree HTTP API

Read surface over the analytics pipeline (FastAPI)
"""
