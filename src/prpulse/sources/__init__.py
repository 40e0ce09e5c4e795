"""Pull request sources and registry."""

from .base import FetchError, PullRequestSource
from .github_source import GitHubSource
from .json_file_source import JsonFileSource
from .registry import (
    SourceRegistrationError,
    create_source,
    register_source,
    registered_source_types,
)

__all__ = [
    "FetchError",
    "GitHubSource",
    "JsonFileSource",
    "PullRequestSource",
    "SourceRegistrationError",
    "create_source",
    "register_source",
    "registered_source_types",
]
