"""Configuration sources.

Submodules:
    git       -- GitFetcher: in-memory clone and single-file read (dulwich).
    resolver  -- ConfigurationResolver: fetch + YAML parse into Configuration.
"""

from heimdall.source.git import GitCredentials, GitFetcher
from heimdall.source.resolver import ConfigurationResolver, load_git_credentials, parse_configuration

__all__ = [
    "ConfigurationResolver",
    "GitCredentials",
    "GitFetcher",
    "load_git_credentials",
    "parse_configuration",
]
