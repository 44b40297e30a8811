"""sitewright exception hierarchy.

Recoverable errors (selector resolution, condition timeouts, stale or
invalid bindings, malformed model output) are caught by the executor,
runner, and orchestrator and turned into fix requests, rediscovery, or
observations.  Terminal errors (driver disconnection, exhausted budgets)
end a session with ``success=False`` and a populated result.
"""

from __future__ import annotations


class SitewrightError(Exception):
    """Base exception for all sitewright errors."""


# ---------------------------------------------------------------------------
# Page / selector errors
# ---------------------------------------------------------------------------


class SelectorResolutionError(SitewrightError):
    """Raised when a selector matches nothing or the element cannot be used.

    Attributes:
        selector: The selector that failed to resolve (may be empty).
    """

    def __init__(self, message: str, selector: str = "") -> None:
        self.selector = selector
        super().__init__(message)


class ConditionTimeoutError(SitewrightError):
    """Raised when a wait predicate never became true.

    Attributes:
        condition: Human-readable description of the awaited condition.
        timeout_sec: How long the executor polled before giving up.
    """

    def __init__(self, condition: str, timeout_sec: float) -> None:
        self.condition = condition
        self.timeout_sec = timeout_sec
        super().__init__(f"Timeout waiting for condition: {condition}")


class DisallowedNavigationError(SitewrightError):
    """Raised when the driver refuses to navigate to a URL outside the allow list."""

    def __init__(self, url: str, reason: str = "blocked by navigation policy") -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"Navigation to {url} is not allowed: {reason}")


class DriverDisconnectedError(SitewrightError):
    """Raised when the browser session is gone."""


# ---------------------------------------------------------------------------
# Binding errors
# ---------------------------------------------------------------------------


class BindingStaleError(SitewrightError):
    """Raised when cached bindings are older than the freshness window."""

    def __init__(self, binding_id: str, age_hours: float) -> None:
        self.binding_id = binding_id
        self.age_hours = age_hours
        super().__init__(f"Bindings {binding_id!r} are stale ({age_hours:.1f}h old)")


class BindingInvalidError(SitewrightError):
    """Raised when bindings fail structural validation.

    Attributes:
        errors: The validation error messages.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("Invalid bindings: " + "; ".join(self.errors))


# ---------------------------------------------------------------------------
# Model / budget errors
# ---------------------------------------------------------------------------


class ModelInvocationError(SitewrightError):
    """Raised when the language model returns no usable structured answer.

    Attributes:
        raw: The raw model text, truncated, for logging.
    """

    def __init__(self, message: str, raw: str = "") -> None:
        self.raw = raw[:500]
        super().__init__(message)


class LoopDetectedError(SitewrightError):
    """Raised (and handled) when the exploration loop repeats itself."""


class MaxStepsExceededError(SitewrightError):
    """Raised when an exploration hits its step budget without finishing."""

    def __init__(self, max_steps: int) -> None:
        self.max_steps = max_steps
        super().__init__(f"Max exploration steps reached ({max_steps})")


class MaxRetriesExceededError(SitewrightError):
    """Raised when a recipe run used every retry cycle without success."""

    def __init__(self, attempts: int, last_error: str) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Recipe failed after {attempts} attempt(s): {last_error}")
