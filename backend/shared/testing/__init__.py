"""
Test doubles for the fulfillment pipeline
"""
