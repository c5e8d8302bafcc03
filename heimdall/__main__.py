"""Entry point for `python -m heimdall`.

Usage:
    python -m heimdall injector
    python -m heimdall keys
    python -m heimdall encrypt --config app.yaml --variable DB_PASS --data s3cret
"""

from __future__ import annotations

from heimdall.cli.main import cli

cli()
