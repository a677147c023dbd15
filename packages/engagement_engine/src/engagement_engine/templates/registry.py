"""
Email Template Registry

Named built-in templates used for previews and for automations that have no
stored copy of their own.

Usage:
    rendered = template_registry.render("reset_password", {"resetLink": url, "firstName": "Ana"})
"""

import html
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from bs4 import BeautifulSoup

from engagement_engine.errors import TemplateNotFoundError
from engagement_engine.templates.renderer import render

_FOOTER = (
    '<p style="margin:24px 0 0 0;font-size:12px;color:#94a3b8;text-align:center;">'
    '&copy; {{year}} ColorCompete &bull; <a href="{{unsubscribeUrl}}" style="color:#94a3b8;">Unsubscribe</a>'
    "</p>"
)


@dataclass(frozen=True)
class EmailTemplate:
    """A named subject/html/text triple."""

    name: str
    subject: str
    html: str
    text: str | None = None


@dataclass
class RenderedTemplate:
    """A template rendered for one scope."""

    subject: str
    html: str
    text: str


_TEMPLATES = [
    EmailTemplate(
        name="reset_password",
        subject="Reset your ColorCompete password",
        html=(
            '<h1 style="font-size:20px;">Password Reset</h1>'
            "<p>Hello {{firstName}},</p>"
            "<p>We received a request to reset your ColorCompete password. "
            "This link will expire in 1 hour.</p>"
            '<p><a href="{{resetLink}}">Reset Password</a></p>'
            "<p>If the button doesn't work, copy and paste this URL into your browser: {{resetLink}}</p>"
            "<p>If you didn't request this, you can safely ignore this email.</p>"
            '<p style="font-size:12px;color:#94a3b8;">&copy; {{year}} ColorCompete. All rights reserved.</p>'
        ),
    ),
    EmailTemplate(
        name="contest_announcement",
        subject="New Contest: {{contestTitle}} - Join Now",
        html=(
            '<h1 style="font-size:20px;">New Contest</h1>'
            "<p>Hey {{userName}},</p>"
            "<p>{{contestDescription}}</p>"
            "<p><strong>Prize:</strong> {{contestPrize}}<br>"
            "<strong>Deadline:</strong> {{contestDeadline}}</p>"
            '<p><a href="{{contestUrl}}">View Contest</a></p>' + _FOOTER
        ),
    ),
    EmailTemplate(
        name="weekly_summary",
        subject="Your Weekly Summary - {{user_name}}",
        html=(
            '<h1 style="font-size:20px;">Weekly Summary</h1>'
            "<p>Hi {{user_name}}, here's your week at a glance:</p>"
            "<p>Submissions: <strong>{{user_submissions_count}}</strong><br>"
            "Wins: <strong>{{user_wins_count}}</strong><br>"
            "Total Votes (all-time): <strong>{{user_total_votes}}</strong></p>"
            "{{#active_contests}}<p>Active Contests: <strong>{{active_contests}}</strong></p>{{/active_contests}}"
            '<p><a href="{{dashboard_url}}">ColorCompete</a></p>' + _FOOTER
        ),
    ),
    EmailTemplate(
        name="voting_results",
        subject="Results: {{contestTitle}} - See Winners",
        html=(
            '<h1 style="font-size:20px;">Voting Results</h1>'
            "<p>Hi {{userName}}, here are the results for <strong>{{contestTitle}}</strong>:</p>"
            "<p>Total Submissions: <strong>{{totalSubmissions}}</strong><br>"
            "Total Votes: <strong>{{totalVotes}}</strong><br>"
            "Participants: <strong>{{totalParticipants}}</strong></p>"
            "<ol>{{#winners}}<li>{{rank}} - {{winnerName}} ({{prize}}), votes: {{voteCount}}</li>{{/winners}}</ol>"
            "{{^winners}}<p>No winners were announced for this contest.</p>{{/winners}}"
            '<p><a href="{{contestUrl}}">View Full Results</a></p>' + _FOOTER
        ),
    ),
    EmailTemplate(
        name="admin_broadcast",
        subject="{{subject}}",
        html=(
            '<h1 style="font-size:20px;">Announcement</h1>'
            "<p>Hi {{userName}},</p>"
            "<div>{{bodyHtml}}</div>"
            '<p style="color:#64748b;font-size:13px;">Sent from the ColorCompete admin dashboard.</p>'
            + _FOOTER
        ),
    ),
    EmailTemplate(
        name="monthly_drawing_winner",
        subject="Congratulations {{winner_name}}! You won ${{prize_amount}} in the {{tier_name}} Monthly Drawing!",
        html=(
            '<h1 style="font-size:28px;">Congratulations!</h1>'
            "<p>You are this month's {{tier_name}} tier winner!</p>"
            "<h2>Hi {{winner_name}},</h2>"
            "<p>You have won the <strong>{{tier_name}} Monthly Drawing</strong> for {{month_year}}! "
            "You have been randomly selected from all {{tier_name}} subscribers to receive a "
            "<strong>${{prize_amount}} gift card</strong>.</p>"
            "{{#gift_card_code}}<p>Gift Card Code: <strong>{{gift_card_code}}</strong></p>{{/gift_card_code}}"
            '{{#redeem_url}}<p><a href="{{redeem_url}}">Redeem Your Gift Card</a></p>{{/redeem_url}}'
            '<p><a href="{{dashboard_url}}">Visit Your Dashboard</a></p>' + _FOOTER
        ),
    ),
    EmailTemplate(
        name="monthly_drawing_participant",
        subject="The {{tier_name}} Monthly Drawing for {{month_year}} is complete",
        html=(
            "<p>Hi {{user_name}},</p>"
            "<p>Thanks for being a {{tier_name}} subscriber. This month's ${{prize_amount}} drawing "
            "has been completed and the winner has been notified.</p>"
            "<p>You are automatically entered again next month.</p>"
            '<p><a href="{{dashboard_url}}">Visit Your Dashboard</a></p>' + _FOOTER
        ),
    ),
]

# Never part of the readable text
_NON_TEXT_TAGS = ["head", "style", "script"]


def extract_body(content: str) -> str:
    """Inner HTML of <body>, or the input unchanged when there is none."""
    soup = BeautifulSoup(content or "", "html.parser")
    if soup.body is None:
        return content or ""
    return soup.body.decode_contents()


def html_to_text(content: str) -> str:
    """Plain-text fallback derived from HTML."""
    soup = BeautifulSoup(content or "", "html.parser")
    for tag in soup(_NON_TEXT_TAGS):
        tag.decompose()
    text = (soup.body or soup).get_text(" ", strip=True)
    return " ".join(text.split())


def wrap_document(subject: str, body_html: str) -> str:
    """Wrap rendered body HTML in a minimal, email-safe document."""
    title = html.escape(subject) if subject else "ColorCompete"
    return (
        "<!doctype html>\n"
        '<html lang="en">\n'
        "<head>\n"
        '  <meta charset="utf-8">\n'
        '  <meta name="viewport" content="width=device-width, initial-scale=1">\n'
        f"  <title>{title}</title>\n"
        "</head>\n"
        '<body style="margin:0;padding:0;background:#f5f7fa;">\n'
        f"{body_html}\n"
        "</body>\n"
        "</html>"
    )


class TemplateRegistry:
    """Lookup and rendering of named templates."""

    def __init__(self, templates: list[EmailTemplate] | None = None):
        self._templates = {t.name: t for t in (templates if templates is not None else _TEMPLATES)}

    def names(self) -> list[str]:
        return sorted(self._templates)

    def get(self, name: str) -> EmailTemplate:
        template = self._templates.get(name)
        if template is None:
            raise TemplateNotFoundError(
                f"Email template not found: {name}",
                details={"available": self.names()},
            )
        return template

    def register(self, template: EmailTemplate) -> None:
        self._templates[template.name] = template

    def render(
        self,
        name: str,
        variables: dict[str, Any] | None = None,
        wrap: bool = True,
    ) -> RenderedTemplate:
        """
        Render a named template.

        Args:
            name: Registry name
            variables: Scope for placeholders; ``year`` defaults to the current year
            wrap: Whether to wrap the body in a full HTML document

        Returns:
            RenderedTemplate with subject, html and text
        """
        template = self.get(name)
        scope = {"year": datetime.now(timezone.utc).year, **(variables or {})}

        subject = render(template.subject, scope)
        body = render(template.html, scope)
        text = render(template.text, scope) if template.text else html_to_text(body)

        return RenderedTemplate(
            subject=subject,
            html=wrap_document(subject, body) if wrap else body,
            text=text,
        )


template_registry = TemplateRegistry()
