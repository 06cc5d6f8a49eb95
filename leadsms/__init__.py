"""
SMS lead intake engine.

Receives provider webhooks, moves each lead through the quote funnel and
answers with brand-controlled copy, escalating pricing to the owner.
"""

__version__ = "0.1.0"
