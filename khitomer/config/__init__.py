"""Configuration system for khitomer.

Key Components:
    - KhitomerSettings: Main configuration container with YAML loading support
    - TrackerConfig: Jira connection, custom field, status filter, poll interval
    - HostingConfig: GitHub token, workspace root, branch prefix
    - CompletionConfig: OpenAI-compatible plan backend
    - CodeAgentConfig: External code agent command
    - RuntimeConfig: Run state directory, queue size, activity timeout and retry

Example:
    >>> from khitomer.config import KhitomerSettings
    >>> settings = KhitomerSettings.from_yaml("khitomer.yaml")
    >>> settings.tracker.status_filter
    ['Ready for Development']
"""

from khitomer.config.settings import (
    ApiConfig,
    CodeAgentConfig,
    CompletionConfig,
    HostingConfig,
    KhitomerSettings,
    RetryConfig,
    RuntimeConfig,
    TrackerConfig,
)

__all__ = [
    "ApiConfig",
    "CodeAgentConfig",
    "CompletionConfig",
    "HostingConfig",
    "KhitomerSettings",
    "RetryConfig",
    "RuntimeConfig",
    "TrackerConfig",
]
