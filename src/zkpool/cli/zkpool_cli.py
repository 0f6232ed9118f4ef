#!/usr/bin/env python3
"""
zkpool CLI

Read-only inspection of a pool living in ZooKeeper. The CLI never joins the
pool as a participant, so it can be pointed at a production ensemble safely.
"""

import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

import click

from zkpool import __version__
from zkpool.core.config import PoolConfig
from zkpool.core.errors import NoNodeError, ZkPoolError
from zkpool.core.paths import PoolPaths
from zkpool.coordinator.base import CoordinatorAdapter
from zkpool.coordinator.kazoo_adapter import KazooCoordinator
from zkpool.pool.object_pool import UNKNOWN_PARTICIPANT_ADDRESS

logger = logging.getLogger(__name__)


def open_coordinator(config: PoolConfig) -> CoordinatorAdapter:
    return KazooCoordinator(
        config.connect_string,
        session_timeout=config.session_timeout,
        connect_timeout=config.connect_timeout
    )


def load_config(config_file: Optional[str], name: Optional[str], connect: Optional[str]) -> PoolConfig:
    overrides = {'name': name, 'connect_string': connect}
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if config_file:
        return PoolConfig.from_yaml(config_file, **overrides)
    if not name:
        raise click.UsageError("Either --config or --name is required")
    overrides.setdefault('size', 1)
    return PoolConfig.from_env(**overrides)


async def collect_status(coordinator: CoordinatorAdapter, paths: PoolPaths) -> Dict[str, Any]:
    """Object counts of a pool, read without registering as a participant"""
    counts = {}
    for key, path in (('size', paths.master), ('unused', paths.unused),
                      ('used', paths.used), ('zombies', paths.zombies),
                      ('participants', paths.participants)):
        stat = await coordinator.stat(path)
        counts[key] = stat.num_children if stat is not None else 0
    return counts


async def collect_participants(coordinator: CoordinatorAdapter, paths: PoolPaths) -> List[Dict[str, str]]:
    participants = []
    for participant in sorted(await coordinator.children(paths.participants)):
        try:
            data = await coordinator.data(paths.participant_node(participant))
        except NoNodeError:
            continue
        participants.append({
            'id': participant,
            'address': data.decode("utf-8") if data else UNKNOWN_PARTICIPANT_ADDRESS,
        })
    return participants


async def _inspect(config: PoolConfig, collector):
    coordinator = open_coordinator(config)
    paths = PoolPaths(config.name)
    await coordinator.connect()
    try:
        if not await coordinator.exists(paths.base):
            raise click.ClickException(f"Pool {config.name} does not exist at {config.connect_string}")
        return await collector(coordinator, paths)
    finally:
        await coordinator.close()


pool_options = [
    click.option('--config', '-c', 'config_file', type=click.Path(exists=True), help='Pool YAML configuration'),
    click.option('--name', '-n', help='Pool name'),
    click.option('--connect', help='ZooKeeper connect string'),
]


def with_pool_options(func):
    for option in reversed(pool_options):
        func = option(func)
    return func


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--debug', is_flag=True, help='Enable debug logging')
@click.version_option(version=__version__, prog_name='zkpool')
def cli(verbose: bool, debug: bool):
    """
    zkpool - inspect distributed object pools coordinated through ZooKeeper
    """
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    logging.getLogger('kazoo').setLevel(max(level, logging.WARNING))


@cli.command()
@with_pool_options
@click.option('--json', 'as_json', is_flag=True, help='Print JSON')
def status(config_file, name, connect, as_json):
    """Show object counts of a pool"""
    config = load_config(config_file, name, connect)
    counts = _run(_inspect(config, collect_status))

    if as_json:
        click.echo(json.dumps({'pool': config.name, **counts}, indent=2))
        return

    click.echo(f"Pool: {config.name} ({config.connect_string})")
    click.echo(f"   Objects:      {counts['size']}")
    click.echo(f"   Unused:       {counts['unused']}")
    click.echo(f"   Used:         {counts['used']}")
    click.echo(f"   Zombies:      {counts['zombies']}")
    click.echo(f"   Participants: {counts['participants']}")


@cli.command()
@with_pool_options
@click.option('--json', 'as_json', is_flag=True, help='Print JSON')
def participants(config_file, name, connect, as_json):
    """List the live participants of a pool"""
    config = load_config(config_file, name, connect)
    found = _run(_inspect(config, collect_participants))

    if as_json:
        click.echo(json.dumps(found, indent=2))
        return

    if not found:
        click.echo(f"No participants in pool {config.name}")
        return
    click.echo(f"Participants of pool {config.name} ({len(found)}):")
    for participant in found:
        click.echo(f"   {participant['id']}  {participant['address']}")


@cli.command()
@click.argument('name')
@click.option('--json', 'as_json', is_flag=True, help='Print JSON')
def paths(name, as_json):
    """Print the node layout of a pool"""
    layout = PoolPaths(name).to_dict()
    if as_json:
        click.echo(json.dumps(layout, indent=2))
        return
    for key, path in layout.items():
        click.echo(f"{key:<20} {path}")


def _run(coro):
    try:
        return asyncio.run(coro)
    except ZkPoolError as e:
        raise click.ClickException(str(e)) from e


def main():
    """Main CLI entry point"""
    try:
        cli()
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user")
        sys.exit(130)


if __name__ == '__main__':
    main()
