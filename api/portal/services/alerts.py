"""Process-level alert signals raised after a sync run.

The coordinator only decides *that* something is worth telling a human;
delivery belongs to the sinks (log, WhatsApp bot). A sink failing never
affects the run.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Protocol

from portal.services.entity_sync import EntityOutcome, OutcomeStatus
from portal.services.whatsapp import WhatsAppClient
from portal.utils.money import format_cents

logger = logging.getLogger(__name__)


class Severity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Alert:
    severity: Severity
    title: str
    message: str
    entity_id: str | None = None


class AlertSink(Protocol):
    async def send(self, alert: Alert) -> None: ...


class LoggingAlertSink:
    _LEVELS = {
        Severity.INFO: logging.INFO,
        Severity.WARNING: logging.WARNING,
        Severity.CRITICAL: logging.CRITICAL,
    }

    async def send(self, alert: Alert) -> None:
        logger.log(self._LEVELS[alert.severity], "ALERT [%s] %s: %s", alert.severity.value, alert.title, alert.message)


class WhatsAppAlertSink:
    """Forwards warning and critical alerts to the configured phone numbers."""

    def __init__(self, client: WhatsAppClient, recipients: list[str], *, min_severity: Severity = Severity.WARNING):
        self._client = client
        self._recipients = [r for r in recipients if r]
        self._min = min_severity

    async def send(self, alert: Alert) -> None:
        order = list(Severity)
        if not self._recipients or order.index(alert.severity) < order.index(self._min):
            return
        text = f"[{alert.severity.value.upper()}] {alert.title}\n{alert.message}"
        sent = await asyncio.to_thread(self._client.broadcast, self._recipients, text)
        logger.info("Alert '%s' delivered to %d/%d recipients", alert.title, sent, len(self._recipients))


class AlertDispatcher:
    def __init__(self, sinks: list[AlertSink] | None = None):
        self._sinks = sinks if sinks is not None else [LoggingAlertSink()]

    async def dispatch(self, alerts: list[Alert]) -> None:
        for alert in alerts:
            for sink in self._sinks:
                try:
                    await sink.send(alert)
                except Exception:
                    logger.exception("Alert sink %s failed", type(sink).__name__)


def evaluate_run(
    outcomes: list[EntityOutcome],
    *,
    failure_ratio: float,
    low_balance_threshold_cents: int | None,
) -> list[Alert]:
    """Alerts implied by one run's outcomes: widespread failure, low balances."""
    alerts: list[Alert] = []
    if outcomes:
        # Skipped entities (no credential yet) are expected for building/planned units
        failed = [o for o in outcomes if o.status is OutcomeStatus.FAILED]
        if len(failed) / len(outcomes) > failure_ratio:
            detail = ", ".join(f"{o.entity_id} ({o.reason})" for o in failed)
            alerts.append(Alert(
                Severity.CRITICAL,
                "Mercury sync failing",
                f"{len(failed)} of {len(outcomes)} entities failed to sync: {detail}",
            ))

    if low_balance_threshold_cents is not None:
        for outcome in outcomes:
            for name, cents in outcome.balances:
                if cents < low_balance_threshold_cents:
                    alerts.append(Alert(
                        Severity.WARNING,
                        "Low balance",
                        f"{outcome.entity_id} / {name}: {format_cents(cents)} "
                        f"(threshold {format_cents(low_balance_threshold_cents)})",
                        entity_id=outcome.entity_id,
                    ))
    return alerts
