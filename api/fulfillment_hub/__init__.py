"""Fulfillment Hub - transactional order fulfillment."""

__version__ = "1.0.0"
