"""
Stub Providers

In-memory gateway and gift card service for development and tests.
"""

from engagement_engine.providers.stub.client import StubDeliveryGateway, StubGiftCardService

__all__ = ["StubDeliveryGateway", "StubGiftCardService"]
