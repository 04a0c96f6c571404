"""Error taxonomy for orchestration failures."""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """High-level categories used to decide how a failure is recorded."""

    CONFIGURATION = "configuration"
    RATE_LIMIT = "rate_limit"
    AGENT = "agent"
    ORCHESTRATION = "orchestration"
    EFFECTOR = "effector"
    VALIDATION = "validation"


# Error codes written to Job.error_code and ExecutionLog.error_code.
AGENT_ERROR = "agent_error"
EFFECTOR_ERROR = "effector_error"
VERIFICATION_FAILED = "verification_failed"
EXECUTION_ERROR = "execution_error"
ORCHESTRATION_FAILED = "orchestration_failed"
ALL_AGENTS_FAILED = "all_agents_failed"
JOB_TIMEOUT = "job_timeout"
JOB_CANCELLED = "job_cancelled"


class OrchestrationError(Exception):
    """Base exception for orchestration failures."""

    category = ErrorCategory.ORCHESTRATION

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize the error with a code and details."""
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}


class ConfigurationError(OrchestrationError):
    """Raised when a schedule or action policy is missing or disabled."""

    category = ErrorCategory.CONFIGURATION


class RateLimitError(OrchestrationError):
    """Raised when an action exceeds its usage budget."""

    category = ErrorCategory.RATE_LIMIT


class AgentError(OrchestrationError):
    """Raised when an agent capability fails to analyze or decide."""

    category = ErrorCategory.AGENT


class EffectorError(OrchestrationError):
    """Raised when performing or verifying an action fails."""

    category = ErrorCategory.EFFECTOR


class ValidationError(OrchestrationError):
    """Raised when caller input is malformed."""

    category = ErrorCategory.VALIDATION
