import logging
from datetime import datetime, timezone
from typing import Optional

from services import metrics
from services.errors import ImportAbstainError
from services.models import AbstainEvent, EvidenceSizes, SupportRates
from services.telemetry import TelemetryRingBuffer
from smart_import.logging import log_with_context

logger = logging.getLogger(__name__)


def abstain_reason(source: str) -> str:
    return f"insufficient_{source}_evidence"


class AbstainGate:
    """Refuses to return a recipe whose ingredients or steps the evidence does not back."""

    def __init__(
        self,
        min_ingredient_support: float,
        min_step_support: float,
        telemetry: TelemetryRingBuffer,
    ):
        self.min_ingredient_support = min_ingredient_support
        self.min_step_support = min_step_support
        self.telemetry = telemetry

    def accepts(self, rates: SupportRates) -> bool:
        return (
            rates.ingredient_support >= self.min_ingredient_support
            and rates.step_support >= self.min_step_support
        )

    def check(
        self,
        source: str,
        rates: SupportRates,
        evidence_sizes: Optional[EvidenceSizes] = None,
    ) -> None:
        if self.accepts(rates):
            return

        reason = abstain_reason(source)
        self.telemetry.record(
            AbstainEvent(
                at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                source=source,
                reason=reason,
                support=rates,
                evidence_sizes=evidence_sizes,
            )
        )
        metrics.record_abstain(source, reason)
        log_with_context(
            logger,
            logging.WARNING,
            "Import abstained",
            source=source,
            reason=reason,
            ingredient_support=round(rates.ingredient_support, 2),
            step_support=round(rates.step_support, 2),
            min_ingredient_support=self.min_ingredient_support,
            min_step_support=self.min_step_support,
            evidence_sizes=evidence_sizes.to_dict() if evidence_sizes else None,
        )
        raise ImportAbstainError(source, reason, rates)
