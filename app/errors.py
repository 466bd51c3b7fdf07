"""
Error taxonomy for the onboarding engine.

Every error is a local validation failure: it carries a stable `code` for
API clients and a `reason` that can be shown to the partner as-is.
"""


class OnboardingError(Exception):
    """Base class for onboarding validation failures."""

    code = "OnboardingError"
    status_code = 400

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class UnknownStage(OnboardingError):
    code = "UnknownStage"


class UnknownDocument(OnboardingError):
    code = "UnknownDocument"


class UnknownTeam(OnboardingError):
    code = "UnknownTeam"


class AlreadyTerminal(OnboardingError):
    code = "AlreadyTerminal"


class CannotSkipRequired(OnboardingError):
    code = "CannotSkipRequired"


class InvalidDecision(OnboardingError):
    code = "InvalidDecision"


class StageNotComplete(OnboardingError):
    code = "StageNotComplete"


class CannotSkipStage(OnboardingError):
    code = "CannotSkipStage"


class SessionNotFound(OnboardingError):
    code = "SessionNotFound"
    status_code = 404


class SessionCompleted(OnboardingError):
    code = "SessionCompleted"
    status_code = 409


class InvalidPersistedState(OnboardingError):
    """Raised while decoding a stored snapshot; the store recovers from it."""
    code = "InvalidPersistedState"
