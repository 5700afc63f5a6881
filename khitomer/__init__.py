"""khitomer: turns ready Jira tickets into GitHub pull requests."""

__version__ = "0.1.0"
