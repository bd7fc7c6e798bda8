"""Failure classification, recovery decisions and user messages."""

from .recovery import (
    FailureKind,
    RecoveryAction,
    Advisory,
    ClassificationRule,
    FailureRecord,
    ErrorRecoveryCoordinator,
    suggest_smaller_model,
)

from .messages import (
    user_message,
    fallback_subtitle,
)

__all__ = [
    "FailureKind",
    "RecoveryAction",
    "Advisory",
    "ClassificationRule",
    "FailureRecord",
    "ErrorRecoveryCoordinator",
    "suggest_smaller_model",
    "user_message",
    "fallback_subtitle",
]
