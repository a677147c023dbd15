"""
Engagement Templates

Mustache-style template language and the built-in template registry.
"""

from engagement_engine.templates.registry import (
    EmailTemplate,
    RenderedTemplate,
    TemplateRegistry,
    extract_body,
    html_to_text,
    template_registry,
)
from engagement_engine.templates.renderer import render

__all__ = [
    "EmailTemplate",
    "RenderedTemplate",
    "TemplateRegistry",
    "extract_body",
    "html_to_text",
    "render",
    "template_registry",
]
