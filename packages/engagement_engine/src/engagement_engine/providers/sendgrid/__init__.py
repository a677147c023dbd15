"""
SendGrid Provider

Only the event webhook is supported; SendGrid is no longer used for sending.
"""

from engagement_engine.providers.sendgrid.webhook import SendGridWebhookAdapter

__all__ = ["SendGridWebhookAdapter"]
