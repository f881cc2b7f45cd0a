"""
Order Progress Sync Service

Keeps the lifecycle stage of orders and their items consistent across the
denormalized order views, and applies ERP webhook events to item progress.
"""

__version__ = "0.1.0"
