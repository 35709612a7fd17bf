"""Alert delivery to operator channels."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Protocol

from tokenwars.alerter.formatter import AlertFormatter
from tokenwars.alerter.models import DispatchResult, FormattedAlert
from tokenwars.events import EventBus
from tokenwars.models import CompetitionEvent

logger = logging.getLogger(__name__)

_SEVERITY_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "critical": logging.CRITICAL,
}


class AlertChannel(Protocol):
    """A destination for operator alerts."""

    name: str

    async def send(self, alert: FormattedAlert) -> bool: ...


class LogAlertChannel:
    """Delivers alerts to a dedicated logger."""

    name = "log"

    def __init__(self, logger_name: str = "tokenwars.alerts") -> None:
        self._logger = logging.getLogger(logger_name)

    async def send(self, alert: FormattedAlert) -> bool:
        self._logger.log(_SEVERITY_LEVELS.get(alert.severity, logging.INFO), "%s", alert.plain_text)
        return True


class AlertDispatcher:
    """Sends each alert to every channel concurrently."""

    def __init__(self, channels: Sequence[AlertChannel]) -> None:
        self._channels = list(channels)

    @property
    def channel_names(self) -> list[str]:
        return [c.name for c in self._channels]

    async def dispatch(self, alert: FormattedAlert) -> DispatchResult:
        if not self._channels:
            return DispatchResult(success_count=0, failure_count=0)

        results = await asyncio.gather(
            *(channel.send(alert) for channel in self._channels),
            return_exceptions=True,
        )
        success = 0
        errors: dict[str, str] = {}
        for channel, result in zip(self._channels, results, strict=False):
            if result is True:
                success += 1
            elif isinstance(result, BaseException):
                errors[channel.name] = str(result)
            else:
                errors[channel.name] = "channel reported failure"
        return DispatchResult(success_count=success, failure_count=len(errors), errors=errors)


class OperatorAlerter:
    """Subscribes to the event bus and forwards operator-relevant events."""

    def __init__(
        self,
        formatter: AlertFormatter,
        dispatcher: AlertDispatcher,
        *,
        dry_run: bool = False,
    ) -> None:
        self._formatter = formatter
        self._dispatcher = dispatcher
        self._dry_run = dry_run
        self._unsubscribe: Callable[[], None] | None = None
        self.alerts_sent = 0

    def attach(self, events: EventBus) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = events.subscribe(self.handle)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def handle(self, event: CompetitionEvent) -> None:
        if not self._formatter.should_alert(event):
            return
        alert = self._formatter.format(event)

        if self._dry_run:
            logger.info("[DRY RUN] Would send alert: %s", alert.title)
            return

        result = await self._dispatcher.dispatch(alert)
        if result.all_succeeded:
            self.alerts_sent += 1
        else:
            logger.warning(
                "Alert partially failed: %d/%d channels succeeded",
                result.success_count,
                result.success_count + result.failure_count,
            )
