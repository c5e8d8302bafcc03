"""Main CLI entry point for Heimdall.

Commands:
    heimdall injector   Run the injection controller.
    heimdall keys       Run the key service.
    heimdall encrypt    Encrypt one entity of a configuration document in place.

Example:
    $ heimdall encrypt --config config.yaml --variable DB_PASSWORD --data s3cret
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import click
import yaml

from heimdall import __version__
from heimdall.errors import HeimdallError
from heimdall.models.config import HeimdallConfig
from heimdall.observability.logging import setup_logging


@click.group(
    name="heimdall",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(version=__version__, prog_name="heimdall")
def cli() -> None:
    """heimdall - configuration injection for Kubernetes workloads."""


def _load_app_config(kubeconfig: str | None, port: int | None = None) -> HeimdallConfig:
    from heimdall.config import load_config

    try:
        config = load_config()
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    if kubeconfig:
        config.kubeconfig = kubeconfig
    if port is not None:
        config.keys.port = port
    return config


@cli.command("injector")
@click.option(
    "--kubeconfig",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Kubeconfig to use when running outside the cluster.",
)
def injector_command(kubeconfig: str | None) -> None:
    """Run the injection controller until SIGTERM/SIGINT."""
    from heimdall.app import run_injector

    asyncio.run(run_injector(_load_app_config(kubeconfig)))


@cli.command("keys")
@click.option(
    "--kubeconfig",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Kubeconfig to use when running outside the cluster.",
)
@click.option("--port", type=click.IntRange(1024, 65535), default=None, help="Listen port, 1024-65535 (default 8080).")
def keys_command(kubeconfig: str | None, port: int | None) -> None:
    """Run the key service until SIGTERM/SIGINT."""
    from heimdall.app import run_keys

    asyncio.run(run_keys(_load_app_config(kubeconfig, port)))


@cli.command("encrypt")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Configuration document to update.",
)
@click.option("--variable", "-v", required=True, help="Name of the entity to encrypt.")
@click.option("--data", "-d", required=True, help="Plaintext value.")
@click.option(
    "--keys-address",
    default=None,
    help="Key service address. Defaults to $HEIMDALL_KEYS_ADDRESS or http://localhost:8080.",
)
def encrypt_command(config_path: Path, variable: str, data: str, keys_address: str | None) -> None:
    """Encrypt VARIABLE's value with the namespace public key.

    The entity must exist and be marked ``encrypted: true``.  The document is
    rewritten in place; entity order is preserved.

    Examples:
        $ heimdall encrypt -c config.yaml -v DB_PASSWORD -d s3cret
        $ heimdall encrypt -c config.yaml -v TOKEN -d abc --keys-address localhost:8080
    """
    from heimdall.source.resolver import parse_configuration

    setup_logging("warning", json=False)

    try:
        configuration = parse_configuration(config_path.read_bytes())
    except HeimdallError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1) from e

    entity = configuration.entity(variable)
    if entity is None:
        click.echo(f"Error: variable '{variable}' is not defined in {config_path}", err=True)
        raise SystemExit(1)
    if not entity.encrypted:
        click.echo(f"Error: variable '{variable}' is not marked as encrypted", err=True)
        raise SystemExit(1)

    address = keys_address or os.environ.get("HEIMDALL_KEYS_ADDRESS", "http://localhost:8080")
    try:
        ciphertext = asyncio.run(_encrypt(address, configuration.metadata.namespace, data))
    except HeimdallError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1) from e

    updated = configuration.with_entity_value(variable, ciphertext)
    with config_path.open("w") as f:
        yaml.safe_dump(updated.to_dict(), f, default_flow_style=False, sort_keys=False)
    click.echo(f"Encrypted '{variable}' in {config_path}")


async def _encrypt(address: str, namespace: str, plaintext: str) -> str:
    from heimdall import codec
    from heimdall.config import normalize_keys_address
    from heimdall.keys import KeysClient

    async with KeysClient(normalize_keys_address(address)) as client:
        public_key = await client.get_public_key(namespace)
    return codec.encrypt(public_key, plaintext)
