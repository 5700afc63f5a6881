"""Provider implementations for the external collaborators.

Key Components:
    - TrackerProvider / JiraRestProvider: Work-item tracker
    - HostingProvider / GitHubHostingProvider: Repository hosting and working copies
    - CompletionBackend / OpenAICompatibleBackend: Plan text completion
    - CodeGenerator / ExternalAgentCodeGenerator: Workspace code modification
"""

from khitomer.providers.base import CodeGenerator, CompletionBackend, HostingProvider, TrackerProvider
from khitomer.providers.external_agent import ExternalAgentCodeGenerator
from khitomer.providers.github_rest import GitHubHostingProvider
from khitomer.providers.jira_rest import JiraRestProvider, parse_repository_reference
from khitomer.providers.openai_compatible import OpenAICompatibleBackend

__all__ = [
    "CodeGenerator",
    "CompletionBackend",
    "ExternalAgentCodeGenerator",
    "GitHubHostingProvider",
    "HostingProvider",
    "JiraRestProvider",
    "OpenAICompatibleBackend",
    "TrackerProvider",
    "parse_repository_reference",
]
