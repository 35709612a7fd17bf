"""Alert message formatter for operator notifications.

This module turns ``CompetitionEvent`` objects into short, human-readable
alerts. Only events an operator should see are formatted: disabled
automation, engine errors and resolutions.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Literal

from tokenwars.alerter.models import FormattedAlert, Severity
from tokenwars.models import CompetitionEvent, EventType

SOLSCAN_TOKEN_URL = "https://solscan.io/token/{address}"

ALERTABLE_EVENTS = frozenset({EventType.AUTOMATION_DISABLED, EventType.ERROR, EventType.RESOLVED})

SEVERITY_ICONS: dict[Severity, str] = {
    "info": "🏁",
    "warning": "⚠️",
    "critical": "🚨",
}


def truncate_address(address: str, chars: int = 4) -> str:
    """Truncate a token address to ABCD...WXYZ format."""
    if len(address) < chars * 2 + 3:
        return address
    return f"{address[:chars]}...{address[-chars:]}"


def format_percent(value: object) -> str:
    """Format a performance ratio (0.0123) as a signed percentage (+1.23%)."""
    try:
        ratio = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return "n/a"
    return f"{ratio * 100:+.2f}%"


class AlertFormatter:
    """Formats competition events into operator alerts.

    Supports two verbosity levels:
    - compact: one line per alert
    - detailed: payload details and links
    """

    def __init__(self, verbosity: Literal["compact", "detailed"] = "detailed") -> None:
        self.verbosity = verbosity

    def should_alert(self, event: CompetitionEvent) -> bool:
        return event.type in ALERTABLE_EVENTS

    def format(self, event: CompetitionEvent) -> FormattedAlert:
        """Format an event into an alert.

        Raises:
            ValueError: If the event type is not alertable.
        """
        if event.type == EventType.AUTOMATION_DISABLED:
            severity: Severity = "critical"
            title = "Automated competition creation disabled"
            lines = [
                f"Reason: {event.payload.get('reason', 'unknown')}",
                "Re-enable automation once the cause is fixed.",
            ]
        elif event.type == EventType.ERROR:
            severity = "warning"
            title = f"Engine error during {event.payload.get('operation', 'unknown operation')}"
            lines = [f"Error: {event.payload.get('error', 'unknown')}"]
        elif event.type == EventType.RESOLVED:
            severity = "info"
            title = f"Competition resolved: {event.payload.get('winner_symbol') or 'unknown'} wins"
            lines = [
                f"{event.payload.get('token_a_symbol', 'A')}: "
                f"{format_percent(event.payload.get('token_a_performance'))}",
                f"{event.payload.get('token_b_symbol', 'B')}: "
                f"{format_percent(event.payload.get('token_b_performance'))}",
            ]
        else:
            raise ValueError(f"event type {event.type.value} is not alertable")

        if event.competition_id:
            lines.insert(0, f"Competition: {event.competition_id}")

        links: dict[str, str] = {}
        winner = event.payload.get("winner_token")
        if winner:
            links["winner"] = SOLSCAN_TOKEN_URL.format(address=winner)

        if self.verbosity == "compact":
            body = lines[0] if lines else ""
        else:
            body = "\n".join(lines)
            if winner:
                body += f"\nWinner token: {truncate_address(str(winner))}"

        plain_text = f"{SEVERITY_ICONS[severity]} {title}\n{body}".rstrip()
        return FormattedAlert(
            title=title,
            body=body,
            severity=severity,
            plain_text=plain_text,
            competition_id=event.competition_id,
            links=links,
        )
