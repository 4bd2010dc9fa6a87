"""
Shared runtime for the tutoring fulfillment workers
"""
