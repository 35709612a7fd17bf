"""Data models for operator alerts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

Severity = Literal["info", "warning", "critical"]


@dataclass(frozen=True)
class FormattedAlert:
    """An alert rendered for delivery."""

    title: str
    body: str
    severity: Severity
    plain_text: str
    competition_id: str | None = None
    links: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of delivering one alert to every channel."""

    success_count: int
    failure_count: int
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def all_succeeded(self) -> bool:
        return self.failure_count == 0
