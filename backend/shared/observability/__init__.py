"""
Observability helpers (metrics)
"""
