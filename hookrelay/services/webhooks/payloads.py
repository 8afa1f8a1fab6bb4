from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from typing import Any, Awaitable, Callable

from jinja2 import BaseLoader, Environment, Template

from hookrelay.core.config import Settings, get_settings
from hookrelay.domain.events import WebhookEvent
from hookrelay.domain.models import Webhook
from hookrelay.services.webhooks.cache import BoundedLRU


logger = logging.getLogger(__name__)

# Payloads are JSON, not HTML; autoescape would corrupt quotes in rendered values.
_jinja_env = Environment(loader=BaseLoader(), autoescape=False)  # noqa: S701

DEFAULT_PAYLOAD_TEMPLATE = """{
  "event": {{ event | tojson }},
  "user": {{ user | tojson }},
  "project": {{ project | tojson }},
  "timestamp": {{ timestamp | tojson }},
  "metadata": {{ metadata | tojson }}
}"""

FALLBACK_ERROR = "Failed to build custom payload"

SEVERITY_EMOJI = {"low": "🔵", "medium": "🟡", "high": "🟠", "critical": "🔴"}
SEVERITY_COLORS = {"low": 0x36A64F, "medium": 0xFFB700, "high": 0xFF6B00, "critical": 0xFF0000}
_DEFAULT_EMOJI = "⚪"
_DEFAULT_COLOR = 0x808080

UserResolver = Callable[[str], Awaitable[dict[str, Any] | None]]
ProjectResolver = Callable[[str], Awaitable[dict[str, Any] | None]]


def detect_platform(url: str) -> str:
    if "hooks.slack.com" in url:
        return "slack"
    if "discord.com/api/webhooks" in url or "discordapp.com/api/webhooks" in url:
        return "discord"
    return "generic"


def fallback_payload(event: WebhookEvent) -> str:
    return json.dumps(
        {"event_id": event.event_id, "event_type": event.event_type, "error": FALLBACK_ERROR}
    )


def _event_summary(event: WebhookEvent) -> tuple[str, str, str]:
    severity = str(event.data.get("severity") or "low")
    title = str(event.data.get("title") or "Alert")
    description = str(event.data.get("description") or "No description provided")
    return severity, title, description


def format_slack_payload(event: WebhookEvent, *, vendor: str) -> str:
    # Slack Block Kit: header, description, and a field grid with a localized timestamp.
    severity, title, description = _event_summary(event)
    emoji = SEVERITY_EMOJI.get(severity, _DEFAULT_EMOJI)
    epoch = int(event.occurred_at.timestamp())
    payload = {
        "text": f"{emoji} {title}",
        "blocks": [
            {"type": "header", "text": {"type": "plain_text", "text": f"{emoji} {title}", "emoji": True}},
            {"type": "section", "text": {"type": "mrkdwn", "text": description}},
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Type:*\n{event.event_type}"},
                    {"type": "mrkdwn", "text": f"*Severity:*\n{severity.upper()}"},
                    {
                        "type": "mrkdwn",
                        "text": (
                            f"*Time:*\n<!date^{epoch}^{{date_short_pretty}} at {{time}}"
                            f"|{event.occurred_at.isoformat()}>"
                        ),
                    },
                ],
            },
            {
                "type": "context",
                "elements": [
                    {"type": "mrkdwn", "text": f"{vendor} Alert System | Event ID: `{event.event_id}`"}
                ],
            },
        ],
    }
    return json.dumps(payload, ensure_ascii=False)


def format_discord_payload(event: WebhookEvent, *, vendor: str) -> str:
    severity, title, description = _event_summary(event)
    emoji = SEVERITY_EMOJI.get(severity, _DEFAULT_EMOJI)
    epoch = int(event.occurred_at.timestamp())
    payload: dict[str, Any] = {
        "embeds": [
            {
                "title": f"{emoji} {title}",
                "description": description,
                "color": SEVERITY_COLORS.get(severity, _DEFAULT_COLOR),
                "fields": [
                    {"name": "📋 Type", "value": event.event_type, "inline": True},
                    {"name": "⚠️ Severity", "value": severity.upper(), "inline": True},
                    {"name": "🕐 Time", "value": f"<t:{epoch}:F>", "inline": True},
                ],
                "footer": {"text": f"{vendor} Alert System | Event ID: {event.event_id}"},
                "timestamp": event.occurred_at.isoformat(),
            }
        ]
    }
    if severity == "critical":
        payload["content"] = "⚠️ **Critical Alert**"
    return json.dumps(payload, ensure_ascii=False)


class PayloadBuilder:
    """Render the request body for one subscription and event.

    Chat-platform URLs get native Slack/Discord shapes. Everything else is
    rendered from the subscription's Jinja2 template (or the default JSON
    template). Templating never fails a delivery: any error yields the
    minimal fallback body.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        resolve_user: UserResolver | None = None,
        resolve_project: ProjectResolver | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._resolve_user = resolve_user
        self._resolve_project = resolve_project
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._templates: BoundedLRU[str, Template] = BoundedLRU(self._settings.webhook_template_cache_size)

    @property
    def template_cache(self) -> BoundedLRU[str, Template]:
        return self._templates

    def compile(self, template_text: str) -> Template:
        # Compile once per distinct template text; syntax errors propagate to the caller.
        compiled = self._templates.get(template_text)
        if compiled is None:
            compiled = _jinja_env.from_string(template_text)
            self._templates.set(template_text, compiled)
        return compiled

    async def build_context(
        self,
        event: WebhookEvent,
        *,
        user: dict[str, Any] | None = None,
        project: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if user is None and self._resolve_user and event.user_id:
            user = await self._resolve_user(event.user_id)
        if project is None and self._resolve_project and event.project_id:
            project = await self._resolve_project(event.project_id)
        return {
            "event": event.to_dict(),
            "user": user,
            "project": project,
            "timestamp": self._clock().isoformat(),
            "metadata": {
                "version": self._settings.service_version,
                "environment": self._settings.environment,
            },
        }

    def render(self, template_text: str, context: dict[str, Any]) -> str:
        return self.compile(template_text).render(**context)

    async def build(
        self,
        subscription: Webhook,
        event: WebhookEvent,
        *,
        user: dict[str, Any] | None = None,
        project: dict[str, Any] | None = None,
    ) -> str:
        platform = detect_platform(subscription.url or "")
        try:
            if platform == "slack":
                return format_slack_payload(event, vendor=self._settings.webhook_vendor)
            if platform == "discord":
                return format_discord_payload(event, vendor=self._settings.webhook_vendor)
            if subscription.use_default_payload or not subscription.payload_template:
                template_text = DEFAULT_PAYLOAD_TEMPLATE
            else:
                template_text = subscription.payload_template
            context = await self.build_context(event, user=user, project=project)
            return self.render(template_text, context)
        except Exception:  # noqa: BLE001 - a broken template must not block delivery.
            logger.warning(
                "webhook_payload_build_failed webhook_id=%s event_id=%s",
                subscription.id,
                event.event_id,
                exc_info=True,
            )
            return fallback_payload(event)
