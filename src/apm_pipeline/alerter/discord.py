"""Discord webhook channel for alert notifications."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx
import structlog

log = structlog.get_logger()

# Discord embed colors
COLOR_CRITICAL = 0xFF0000  # Red
COLOR_HIGH = 0xFFA500  # Orange
COLOR_WARNING = 0xFFFF00  # Yellow
COLOR_INFO = 0x00FF00  # Green

_SEVERITY_COLORS = {
    "critical": COLOR_CRITICAL,
    "error": COLOR_HIGH,
    "warning": COLOR_WARNING,
    "info": COLOR_INFO,
}


@dataclass(frozen=True)
class AlertMessage:
    """Payload handed to a notification channel."""

    alert_type: str
    title: str
    description: str
    severity: str
    user_id: str | None = None
    metric_value: float | None = None
    threshold_value: float | None = None
    error_message: str | None = None
    error_stack: str | None = None
    component_name: str | None = None
    url: str | None = None
    user_agent: str | None = None
    user_email: str | None = None


class AlertChannel(Protocol):
    """Outbound notification channel. Returns False on failure, never raises."""

    async def send_alert(self, message: AlertMessage) -> bool: ...


class DiscordClient:
    """Discord webhook client implementing AlertChannel."""

    def __init__(
        self,
        webhook_url: str,
        ping_critical: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            webhook_url: Discord webhook URL
            ping_critical: Whether to @here on critical alerts
            transport: Optional httpx transport (used by tests)
        """
        self.webhook_url = webhook_url
        self.username = "APM Alerter"
        self.ping_critical = ping_critical
        self._client = httpx.AsyncClient(timeout=10.0, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, payload: dict[str, Any]) -> bool:
        try:
            response = await self._client.post(self.webhook_url, json=payload)
            response.raise_for_status()
            return True
        except httpx.HTTPStatusError as e:
            log.error("Discord API error", status=e.response.status_code)
            return False
        except httpx.RequestError as e:
            log.error("Discord request failed", error=str(e))
            return False

    async def send(self, message: str, ping: bool = False) -> bool:
        """Send a plain message to Discord.

        Args:
            message: The message content (supports Discord markdown)
            ping: If True, prepend @here to alert channel members

        Returns:
            True if successful, False otherwise
        """
        content = f"@here\n{message}" if ping else message
        sent = await self._post({"content": content, "username": self.username})
        if sent:
            log.debug("Discord message sent", ping=ping)
        return sent

    async def send_alert(self, message: AlertMessage) -> bool:
        """Send an alert as a rich embed."""
        payload = {
            "username": self.username,
            "embeds": [build_embed(message)],
        }
        if self.ping_critical and message.severity == "critical":
            payload["content"] = "@here"

        sent = await self._post(payload)
        if sent:
            log.debug("Discord alert sent", title=message.title, severity=message.severity)
        return sent


def build_embed(message: AlertMessage) -> dict[str, Any]:
    """Render an AlertMessage as a Discord embed."""
    fields: list[dict[str, Any]] = [
        {"name": "Type", "value": message.alert_type, "inline": True},
        {"name": "Severity", "value": message.severity, "inline": True},
        {
            "name": "Time",
            "value": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"),
            "inline": True,
        },
    ]

    if message.alert_type == "performance":
        fields.append(
            {"name": "Current Value", "value": _or_na(message.metric_value), "inline": True}
        )
        fields.append(
            {"name": "Threshold", "value": _or_na(message.threshold_value), "inline": True}
        )
    else:
        fields.append(
            {"name": "Component", "value": _or_na(message.component_name), "inline": True}
        )
        if message.error_message:
            fields.append(
                {
                    "name": "Error",
                    "value": f"```{message.error_message[:500]}```",
                    "inline": False,
                }
            )
        if message.error_stack:
            fields.append(
                {"name": "Stack", "value": f"```{message.error_stack[:800]}```", "inline": False}
            )

    fields.append({"name": "URL", "value": _or_na(message.url), "inline": False})
    fields.append(
        {
            "name": "User",
            "value": f"{_or_na(message.user_id)} ({_or_na(message.user_email)})",
            "inline": False,
        }
    )
    if message.user_agent:
        fields.append({"name": "User Agent", "value": message.user_agent, "inline": False})

    return {
        "title": f"{message.severity.upper()}: {message.title}",
        "description": message.description,
        "color": _SEVERITY_COLORS.get(message.severity, COLOR_INFO),
        "fields": fields,
    }


def _or_na(value: object) -> str:
    return "N/A" if value is None else str(value)
