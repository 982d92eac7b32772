"""Configuration services."""

from .settings import (
    ContextPolicySettings,
    RetrySettings,
    SecretVault,
    Settings,
    SettingsStore,
    redact_secret,
)

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "ContextPolicySettings",
    "RetrySettings",
    "redact_secret",
]
