"""
Tremendous Provider

Gift card issuing through the Tremendous orders API.
"""

from engagement_engine.providers.tremendous.client import TremendousGiftCardService

__all__ = ["TremendousGiftCardService"]
