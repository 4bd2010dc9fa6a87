"""
Utility functions for the fulfillment workers
"""
