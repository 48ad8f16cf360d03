"""Exception taxonomy for the import pipeline."""
from __future__ import annotations

from typing import Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from services.models import SupportRates

MANUAL_ALTERNATIVES = (
    "Paste the recipe text directly",
    "Upload a screenshot of the recipe",
    "Try a different video with clearer audio or on-screen text",
)


class SmartImportError(Exception):
    """Base class for errors surfaced to callers of the import pipeline."""

    suggestions: Sequence[str] = ()

    def user_message(self) -> str:
        lines = [str(self)]
        if self.suggestions:
            lines.append("Try instead:")
            lines.extend(f"• {item}" for item in self.suggestions)
        return "\n".join(lines)


class ValidationError(SmartImportError):
    def __init__(self, errors: Sequence[str]):
        self.errors = list(errors)
        super().__init__(f"Input validation failed: {', '.join(self.errors) or 'unknown input'}")


class ExternalServiceError(SmartImportError):
    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")


class ImportFailedError(SmartImportError):
    def __init__(self, message: str, suggestions: Sequence[str] = MANUAL_ALTERNATIVES):
        self.suggestions = list(suggestions)
        super().__init__(message)


class ImportAbstainError(SmartImportError):
    """Evidence was gathered but was too weak to trust; nothing is returned."""

    def __init__(
        self,
        source: str,
        reason: str,
        rates: Optional["SupportRates"] = None,
        suggestions: Sequence[str] = MANUAL_ALTERNATIVES,
    ):
        self.source = source
        self.reason = reason
        self.rates = rates
        self.suggestions = list(suggestions)
        self.code = abstain_code(source, reason, rates)
        super().__init__(self.code)

    def user_message(self) -> str:
        lines = [
            f"The {self.source} did not contain enough recognizable recipe content to import safely.",
            "Try instead:",
        ]
        lines.extend(f"• {item}" for item in self.suggestions)
        return "\n".join(lines)


class ReconciliationParseError(ValueError):
    """Model output could not be turned into JSON. Never leaves the reconciler."""


def abstain_code(source: str, reason: str, rates: Optional["SupportRates"] = None) -> str:
    code = f"ImportAbstain:{source}:{reason}"
    if rates is not None:
        code += f":ing={rates.ingredient_support:.2f};step={rates.step_support:.2f}"
    return code
