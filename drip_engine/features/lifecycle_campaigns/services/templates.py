"""
Email rendering for campaign steps and one-shot notifications.
"""

from typing import Any

from jinja2 import DictLoader, Environment, StrictUndefined, select_autoescape

from drip_engine.config import settings
from drip_engine.features.lifecycle_campaigns.domain import (
    OutboxNotification,
    RenderedMessage,
    StepDefinition,
)
from drip_engine.models.domain.user_domain import CampaignUser

_BUTTON = (
    '<a href="{{ cta_url }}" style="background: {{ accent }}; color: white; '
    'padding: 12px 24px; text-decoration: none; border-radius: 6px;">{{ cta_text }}</a>'
)

_LAYOUT = (
    '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">'
    "{% if preview_text %}"
    '<span style="display: none; max-height: 0; overflow: hidden;">{{ preview_text }}</span>'
    "{% endif %}"
    "{% block content %}{% endblock %}"
    "{% if cta_url %}"
    '<div style="text-align: center; margin: 30px 0;">' + _BUTTON + "</div>"
    "{% endif %}"
    "</div>"
)

TEMPLATES = {
    "layout.html": _LAYOUT,
    "drip_step.html": (
        '{% extends "layout.html" %}{% block content %}'
        "<h2>{{ subject }}</h2>"
        "<p>Hey {{ user_name }},</p>"
        "<p>{{ preview_text }}</p>"
        "{% endblock %}"
    ),
    "drip_step.txt": (
        "Hey {{ user_name }},\n\n{{ preview_text }}\n\n{{ cta_text }}: {{ cta_url }}\n"
    ),
    "activity_ready.html": (
        '{% extends "layout.html" %}{% block content %}'
        "<h2>Your run analysis is ready</h2>"
        "<p>Hey {{ user_name }},</p>"
        "<p>We finished analyzing <strong>{{ activity_name }}</strong>.</p>"
        "{% endblock %}"
    ),
    "activity_recap.html": (
        '{% extends "layout.html" %}{% block content %}'
        "<h2>{{ activity_name }}: your coach recap</h2>"
        "<p>Hey {{ user_name }},</p>"
        "<ul>{% for bullet in recap_bullets %}<li>{{ bullet }}</li>{% endfor %}</ul>"
        "<p>Next step: {{ next_step }}</p>"
        "{% endblock %}"
    ),
    "weekly_summary.html": (
        '{% extends "layout.html" %}{% block content %}'
        "<h2>Your Weekly Training Summary</h2>"
        "<p>Hey {{ user_name }}!</p><p>{{ body }}</p>"
        "{% endblock %}"
    ),
    "plan_reminder.html": (
        '{% extends "layout.html" %}{% block content %}'
        "<h2>Training Plan Reminder</h2>"
        "<p>Hey {{ user_name }}!</p><p>{{ body }}</p>"
        "{% endblock %}"
    ),
    "notification.html": (
        '{% extends "layout.html" %}{% block content %}<p>{{ body }}</p>{% endblock %}'
    ),
}

# (template, cta path, button text, accent colour) per one-shot notification type
NOTIFICATION_LAYOUTS: dict[str, tuple[str, str | None, str | None, str]] = {
    "activity_ready": ("activity_ready.html", "/activities/{activity_id}", "View Analysis", "#2563eb"),
    "activity_recap": ("activity_recap.html", "/activities/{activity_id}", "Open Recap", "#2563eb"),
    "weekly_summary": ("weekly_summary.html", "/dashboard", "View Full Summary", "#e74c3c"),
    "plan_reminder": ("plan_reminder.html", "/training-plans", "View Your Plan", "#27ae60"),
}
DEFAULT_NOTIFICATION_LAYOUT = ("notification.html", None, None, "#2563eb")

_env = Environment(
    loader=DictLoader(TEMPLATES),
    autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
    undefined=StrictUndefined,
)


class TemplateRenderError(Exception):
    """Raised when a message cannot be rendered."""


def render_step(user: CampaignUser, step: StepDefinition, overrides: dict[str, Any] | None = None) -> RenderedMessage:
    """Render a sequenced campaign email. Job metadata overrides catalog params."""
    params = {**step.params, **(overrides or {})}
    cta_url = settings.cta_url(params.get("cta_path", "/dashboard"))

    ctx = {
        "user_name": user.greeting_name,
        "subject": params.get("subject", ""),
        "preview_text": params.get("preview_text", ""),
        "cta_text": params.get("cta_text", "Open AI Tracker"),
        "cta_url": cta_url,
        "accent": "#e74c3c",
        "step": step.label,
        "campaign": step.segment.value,
    }

    try:
        html = _env.get_template("drip_step.html").render(**ctx)
        text = _env.get_template("drip_step.txt").render(**ctx)
    except Exception as e:
        raise TemplateRenderError(f"Failed to render step {step.label}: {e}") from e

    return RenderedMessage(subject=ctx["subject"], html=html, text=text, preview_text=ctx["preview_text"])


def render_notification(user: CampaignUser, notification: OutboxNotification) -> RenderedMessage:
    """Render a one-shot notification with its type-specific template."""
    template_name, cta_path, cta_text, accent = NOTIFICATION_LAYOUTS.get(
        notification.type, DEFAULT_NOTIFICATION_LAYOUT
    )
    data = notification.data or {}

    cta_url = None
    if cta_path:
        try:
            cta_url = settings.cta_url(cta_path.format(**data))
        except KeyError:
            cta_url = settings.cta_url("/dashboard")

    ctx = {
        "user_name": user.greeting_name,
        "body": notification.body,
        "preview_text": None,
        "cta_url": cta_url,
        "cta_text": cta_text,
        "accent": accent,
        "activity_name": data.get("activity_name") or "Your Run",
        "recap_bullets": data.get("recap_bullets") or [notification.body],
        "next_step": data.get("next_step") or "easy",
    }

    try:
        html = _env.get_template(template_name).render(**ctx)
    except Exception as e:
        raise TemplateRenderError(f"Failed to render notification {notification.type}: {e}") from e

    return RenderedMessage(subject=notification.title, html=html, text=notification.body)
