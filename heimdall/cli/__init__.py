"""Heimdall command-line interface.

Exposes:
    cli -- Click group entry point (registered as ``heimdall`` script).
"""

from heimdall.cli.main import cli

__all__ = ["cli"]
