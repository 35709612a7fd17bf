"""Operator alerting for engine events."""

from tokenwars.alerter.dispatcher import AlertChannel, AlertDispatcher, LogAlertChannel, OperatorAlerter
from tokenwars.alerter.formatter import AlertFormatter
from tokenwars.alerter.models import DispatchResult, FormattedAlert

__all__ = [
    "AlertChannel",
    "AlertDispatcher",
    "AlertFormatter",
    "DispatchResult",
    "FormattedAlert",
    "LogAlertChannel",
    "OperatorAlerter",
]
