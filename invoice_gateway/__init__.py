"""
Square invoice gateway.

Turns order data captured by the browser extension into a published
Square invoice: customer -> order -> invoice -> publish.
"""

__version__ = "1.0.0"
