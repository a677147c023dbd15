"""
SendPulse Provider

SMTP API delivery gateway and webhook adapter.
"""

from engagement_engine.providers.sendpulse.client import SendPulseDeliveryGateway
from engagement_engine.providers.sendpulse.webhook import SendPulseWebhookAdapter

__all__ = ["SendPulseDeliveryGateway", "SendPulseWebhookAdapter"]
