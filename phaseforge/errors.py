"""
PHASEFORGE error taxonomy.

Every failure the engine reports carries a stable `kind` string so that
event consumers can classify it without matching on message text.
"""

from __future__ import annotations


class PhaseforgeError(Exception):
    """Base class for all engine errors."""

    kind: str = "other"


class NotInitializedError(PhaseforgeError):
    kind = "not_initialized"

    def __init__(self, message: str = "not initialized: run `phaseforge init` first"):
        super().__init__(message)


class AlreadyInitializedError(PhaseforgeError):
    kind = "already_initialized"

    def __init__(self, message: str = "already initialized"):
        super().__init__(message)


class FeatureNotFoundError(PhaseforgeError):
    kind = "feature_not_found"


class InvalidSpecError(PhaseforgeError):
    """The plan file exists but does not match the plan schema."""

    kind = "invalid_spec"


class CollaboratorError(PhaseforgeError):
    """The change-producing collaborator failed (network, credentials, transcript)."""

    kind = "collaborator"


class VersionControlError(PhaseforgeError):
    kind = "version_control"


class CheckCycleExhaustedError(PhaseforgeError):
    kind = "check_cycle_exhausted"

    def __init__(self, failed_checks: list[str], max_retries: int):
        self.failed_checks = list(failed_checks)
        self.max_retries = max_retries
        super().__init__(
            f"checks failed after {max_retries} retries: {', '.join(self.failed_checks)}"
        )


class ConfigError(PhaseforgeError):
    kind = "config"


class PromptError(PhaseforgeError):
    """Template could not be loaded or rendered."""
