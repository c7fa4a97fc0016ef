"""
Engine error taxonomy.

Every layer raises one of these; the turn orchestrator decides whether an
error becomes a clarification turn, a silent fallback, or a reset.
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for all orchestration engine errors."""


class ValidationError(EngineError):
    """Assembled parameters failed the function schema. The function was never invoked."""

    def __init__(self, function: str, errors: dict[str, str]):
        self.function = function
        self.errors = dict(errors)
        details = "; ".join(f"{name}: {reason}" for name, reason in self.errors.items())
        super().__init__(f"Invalid parameters for '{function}': {details}")

    @property
    def fields(self) -> list[str]:
        return list(self.errors.keys())


class IntentAmbiguityError(EngineError):
    """The two intent extractions kept disagreeing past the retry bound."""

    def __init__(self, attempts: int, message: str = ""):
        self.attempts = attempts
        super().__init__(message or f"Intent still ambiguous after {attempts} attempts")


class WorkflowSynthesisError(EngineError):
    """Both plan generation rounds failed the quality check."""

    def __init__(self, intent: str, issues: list[str]):
        self.intent = intent
        self.issues = list(issues)
        super().__init__(f"Could not synthesize a plan for '{intent}': {'; '.join(self.issues)}")


class ExternalCallError(EngineError):
    """A language-model or domain API call failed or timed out."""

    def __init__(
        self,
        source: str,
        message: str,
        *,
        retryable: bool = False,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.source = source
        self.retryable = retryable
        self.status_code = status_code
        self.details = details or {}
        super().__init__(f"[{source}] {message}")


class StateCorruptionError(EngineError):
    """A resumed session references a plan or field that no longer resolves."""


class ConfigurationError(EngineError):
    """Domain configuration or plan content is unusable."""


class DomainNotFoundError(ConfigurationError):
    def __init__(self, domain_id: str):
        self.domain_id = domain_id
        super().__init__(f"Domain not found: {domain_id}")


class TemplateResolutionError(ConfigurationError):
    """A ${name} token referenced a name outside the reserved runtime namespace."""

    def __init__(self, name: str, available: list[str] | None = None):
        self.name = name
        self.available = sorted(available or [])
        super().__init__(
            f"Unknown template variable '${{{name}}}' (available: {', '.join(self.available) or 'none'})"
        )


class PatternNotFoundError(EngineError):
    def __init__(self, fingerprint: str):
        self.fingerprint = fingerprint
        super().__init__(f"Pattern observation not found: {fingerprint}")


class PatternNotSuggestedError(EngineError):
    """Only patterns that crossed the promotion threshold can be approved."""

    def __init__(self, fingerprint: str, status: str):
        self.fingerprint = fingerprint
        self.status = status
        super().__init__(f"Pattern {fingerprint} is '{status}', not suggested for promotion")
