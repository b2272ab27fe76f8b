"""Channel payload builders.

Pure functions from an alert and channel config to the wire payload,
kept apart from delivery so formats can be tested without I/O.
"""

import html
from datetime import datetime
from typing import Optional

from voiceguard.alerting import Alert, AlertSeverity, AlertStatus

from .config import DispatcherConfig, PagerDutyChannelConfig, SlackChannelConfig

SEVERITY_COLORS = {
    AlertSeverity.CRITICAL: "#dc2626",
    AlertSeverity.WARNING: "#f59e0b",
    AlertSeverity.INFO: "#3b82f6",
}
DEFAULT_COLOR = "#6b7280"

SLACK_USERNAME = "Voice Agent Monitor"
SLACK_ICON = ":telephone_receiver:"
PAGERDUTY_COMPONENT = "voice-agent-v2"
PAGERDUTY_GROUP = "voice-calls"


def severity_color(severity: AlertSeverity) -> str:
    return SEVERITY_COLORS.get(severity, DEFAULT_COLOR)


def dashboard_url(config: DispatcherConfig) -> Optional[str]:
    if not config.dashboard_base_url:
        return None
    return f"{config.dashboard_base_url.rstrip('/')}/admin/monitoring"


def _is_resolved(alert: Alert) -> bool:
    return alert.status == AlertStatus.RESOLVED


def build_slack_payload(alert: Alert, channel: SlackChannelConfig, config: DispatcherConfig) -> dict:
    """Slack incoming-webhook payload with a colored block attachment."""
    resolved = _is_resolved(alert)
    status_emoji = ":white_check_mark:" if resolved else ":rotating_light:"
    blocks = [
        {
            "type": "header",
            "text": {
                "type": "plain_text",
                "text": f"{status_emoji} {'Resolved' if resolved else 'Alert'}: {alert.name}",
                "emoji": True,
            },
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Severity:*\n{alert.severity.value.upper()}"},
                {"type": "mrkdwn", "text": f"*Status:*\n{alert.status.value}"},
                {"type": "mrkdwn", "text": f"*Value:*\n{alert.value:.2f}"},
                {"type": "mrkdwn", "text": f"*Threshold:*\n{alert.threshold:g}"},
            ],
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Description:*\n{alert.description}"},
        },
        {
            "type": "context",
            "elements": [
                {
                    "type": "mrkdwn",
                    "text": (
                        f"Environment: {config.environment} | Service: {config.service_name}"
                        f" | Time: {alert.fired_at.isoformat()}"
                    ),
                }
            ],
        },
    ]

    url = dashboard_url(config)
    if url:
        blocks.append({
            "type": "actions",
            "elements": [
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "View Dashboard", "emoji": True},
                    "url": url,
                    "action_id": "view_dashboard",
                }
            ],
        })

    text = f"Alert: {alert.name}"
    if alert.severity == AlertSeverity.CRITICAL and channel.mention_users:
        mentions = " ".join(f"<@{user}>" for user in channel.mention_users)
        text = f"{mentions} {text}"

    return {
        "channel": channel.channel_name,
        "username": SLACK_USERNAME,
        "icon_emoji": SLACK_ICON,
        "text": text,
        "attachments": [{"color": severity_color(alert.severity), "blocks": blocks}],
    }


def build_pagerduty_payload(alert: Alert, channel: PagerDutyChannelConfig, config: DispatcherConfig) -> dict:
    """PagerDuty Events API v2 trigger or resolve event."""
    url = dashboard_url(config)
    return {
        "routing_key": channel.routing_key,
        "event_action": "resolve" if _is_resolved(alert) else "trigger",
        "dedup_key": f"voice-agent-{alert.rule_id}",
        "payload": {
            "summary": f"[{alert.severity.value.upper()}] {alert.name}",
            "severity": alert.severity.value,
            "source": config.service_name,
            "component": PAGERDUTY_COMPONENT,
            "group": PAGERDUTY_GROUP,
            "class": alert.rule_id,
            "custom_details": {
                "description": alert.description,
                "value": alert.value,
                "threshold": alert.threshold,
                "labels": dict(alert.labels),
                "environment": config.environment,
            },
        },
        "links": [{"href": url, "text": "View Dashboard"}] if url else [],
    }


def build_webhook_payload(alert: Alert, config: DispatcherConfig, sent_at: datetime) -> dict:
    return {
        "alert": {
            "id": alert.alert_id,
            "name": alert.name,
            "description": alert.description,
            "severity": alert.severity.value,
            "status": alert.status.value,
            "value": alert.value,
            "threshold": alert.threshold,
            "firedAt": alert.fired_at.isoformat(),
            "resolvedAt": alert.resolved_at.isoformat() if alert.resolved_at else None,
            "labels": dict(alert.labels),
        },
        "metadata": {
            "environment": config.environment,
            "service": config.service_name,
            "timestamp": sent_at.isoformat(),
        },
    }


def build_email_subject(alert: Alert) -> str:
    return f"[{alert.severity.value.upper()}] Voice Agent Alert: {alert.name}"


def build_email_body(alert: Alert, config: DispatcherConfig) -> str:
    """HTML email body with a header colored by severity."""
    esc = html.escape
    heading = "RESOLVED" if _is_resolved(alert) else "ALERT"
    resolved_row = ""
    if alert.resolved_at:
        resolved_row = (
            f'<div class="field"><span class="label">Resolved At:</span> '
            f"{alert.resolved_at.isoformat()}</div>"
        )
    url = dashboard_url(config)
    dashboard_link = f'<br><a href="{esc(url)}">View Dashboard</a>' if url else ""

    return f"""<!DOCTYPE html>
<html>
<head>
  <style>
    body {{ font-family: Arial, sans-serif; line-height: 1.6; }}
    .header {{ background-color: {severity_color(alert.severity)}; color: white; padding: 20px; }}
    .content {{ padding: 20px; }}
    .field {{ margin-bottom: 10px; }}
    .label {{ font-weight: bold; color: #666; }}
    .footer {{ background-color: #f5f5f5; padding: 10px; font-size: 12px; color: #666; }}
  </style>
</head>
<body>
  <div class="header"><h1>{heading}: {esc(alert.name)}</h1></div>
  <div class="content">
    <div class="field"><span class="label">Severity:</span> {alert.severity.value.upper()}</div>
    <div class="field"><span class="label">Status:</span> {alert.status.value}</div>
    <div class="field"><span class="label">Description:</span> {esc(alert.description)}</div>
    <div class="field"><span class="label">Current Value:</span> {alert.value:.4f}</div>
    <div class="field"><span class="label">Threshold:</span> {alert.threshold:g}</div>
    <div class="field"><span class="label">Time:</span> {alert.fired_at.isoformat()}</div>
    {resolved_row}
  </div>
  <div class="footer">
    Environment: {esc(config.environment)} | Service: {esc(config.service_name)}
    {dashboard_link}
  </div>
</body>
</html>"""


def build_email_text(alert: Alert, config: DispatcherConfig) -> str:
    lines = [
        f"{'Resolved' if _is_resolved(alert) else 'Alert'}: {alert.name}",
        f"Severity: {alert.severity.value.upper()}",
        f"Status: {alert.status.value}",
        "",
        alert.description,
        "",
        f"Current Value: {alert.value:.4f}",
        f"Threshold: {alert.threshold:g}",
        f"Time: {alert.fired_at.isoformat()}",
        f"Environment: {config.environment} | Service: {config.service_name}",
    ]
    return "\n".join(lines)
