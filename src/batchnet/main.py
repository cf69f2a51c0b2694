"""
batchnet Main Entry Point

Runs the allocator service (with its status API) or a scheduler for one
target, and reports allocator state from the command line.
"""

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import uvicorn
from pydantic_settings import BaseSettings
from redis.exceptions import RedisError

from batchnet.allocator.api import create_app
from batchnet.allocator.channel import InProcessChannel, RedisChannel
from batchnet.allocator.client import AllocatorClient
from batchnet.allocator.service import AllocatorService
from batchnet.common.constants import DEFAULT_BLOCK_SIZE, PRIVILEGED_HOST, SCHEDULING, TIMEOUTS, Transport
from batchnet.common.errors import BatchnetError, InsufficientCapacity
from batchnet.common.utils import load_yaml_config, setup_logging
from batchnet.integrations.formulas import FormulaConfig, ModelFormulas
from batchnet.integrations.hosts import InventoryHostProvider, StaticHostProvider, parse_inventory
from batchnet.integrations.liveness import HeartbeatLiveness, OwnerHeartbeat, PidLiveness
from batchnet.integrations.processes import LocalProcessSupervisor
from batchnet.integrations.targets import ShadowTarget, target_from_config
from batchnet.scheduler.loop import SchedulingLoop
from batchnet.scheduler.runner import BatchRunner


class Settings(BaseSettings):
    """Application settings"""
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    # Allocator transport
    transport: Transport = Transport.REDIS
    redis_url: str = "redis://localhost:6379"
    request_timeout: float = TIMEOUTS["REQUEST"]

    # Allocator
    inventory: Optional[str] = None
    block_size: float = DEFAULT_BLOCK_SIZE
    privileged_host: str = PRIVILEGED_HOST
    privileged_reserved: Optional[float] = None
    housekeeping_period: float = TIMEOUTS["HOUSEKEEPING"]
    heartbeat_liveness: bool = False

    # Scheduler
    skew: float = SCHEDULING["SKEW"]
    guard: float = SCHEDULING["GUARD"]
    oom_delay: float = SCHEDULING["OOM_DELAY"]
    status_interval: float = SCHEDULING["STATUS_INTERVAL"]

    class Config:
        env_prefix = "BATCHNET_"


app = typer.Typer(help="batchnet - block capacity allocator and batch scheduler")
settings = Settings()


def _apply_common(log_level: Optional[str], transport: Optional[str]) -> None:
    if log_level:
        settings.log_level = log_level.upper()
    if transport:
        try:
            settings.transport = Transport(transport.lower())
        except ValueError:
            typer.echo(f"Invalid transport: {transport}")
            raise typer.Exit(1)
    setup_logging(settings.log_level)


def _host_provider(env: Dict[str, Any]):
    if settings.inventory:
        return InventoryHostProvider(settings.inventory, settings.privileged_host, settings.privileged_reserved)
    if "hosts" in env:
        return StaticHostProvider(
            parse_inventory({"hosts": env["hosts"]}, settings.privileged_host, settings.privileged_reserved)
        )
    typer.echo("No hosts configured: set BATCHNET_INVENTORY or add a hosts section")
    raise typer.Exit(1)


@app.command()
def allocator(
    inventory: Optional[Path] = typer.Option(None, "--inventory", "-i", help="YAML host inventory"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port for the status API"),
    log_level: Optional[str] = typer.Option(None, "--log-level", "-l", help="Log level: DEBUG, INFO, WARNING, ERROR"),
) -> None:
    """Run the allocator service and its status API"""
    if inventory:
        settings.inventory = str(inventory)
    if port:
        settings.port = port
    _apply_common(log_level, Transport.REDIS.value)

    channel = RedisChannel(settings.redis_url)
    liveness = HeartbeatLiveness(channel.redis) if settings.heartbeat_liveness else PidLiveness()
    service = AllocatorService(
        channel,
        _host_provider({}),
        liveness,
        block_size=settings.block_size,
        housekeeping_period=settings.housekeeping_period,
    )

    typer.echo(f"Starting batchnet allocator on {settings.host}:{settings.port}")
    uvicorn.run(
        create_app(service),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=True,
    )


async def run_schedule(
    env: Dict[str, Any],
    once: bool = False,
    force: bool = False,
    metrics_out: Optional[Path] = None,
) -> List[str]:
    """Run a scheduling loop for the target described by `env`"""
    shadow = ShadowTarget(target_from_config(env["target"]))
    formulas = ModelFormulas(FormulaConfig.model_validate(env.get("formulas") or {}))
    supervisor = LocalProcessSupervisor(env.get("workers") or {})

    service = None
    heartbeat = None
    if settings.transport == Transport.MEMORY:
        channel = InProcessChannel()
        service = AllocatorService(
            channel,
            _host_provider(env),
            PidLiveness(),
            block_size=settings.block_size,
            housekeeping_period=settings.housekeeping_period,
        )
        await service.start()
    else:
        channel = RedisChannel(settings.redis_url)

    client = AllocatorClient(channel, supervisor=supervisor, timeout=settings.request_timeout)
    try:
        if isinstance(channel, RedisChannel):
            heartbeat = OwnerHeartbeat(channel.redis, client.owner_id)
            await heartbeat.start()

        runner = BatchRunner(
            client,
            supervisor,
            formulas,
            shadow,
            skew=settings.skew,
            guard=settings.guard,
            unit_size=int(env.get("unit_size", 1)),
            hold_placeholders=bool(env.get("hold_placeholders", False)),
        )
        loop = SchedulingLoop(
            client,
            runner,
            shadow,
            formulas,
            unit_size=runner.unit_size,
            oom_delay=settings.oom_delay,
            status_interval=settings.status_interval,
            once=once,
        )
        await loop.preflight(force)
        try:
            return await loop.run()
        finally:
            if metrics_out:
                loop.metrics.write(metrics_out)
    finally:
        if heartbeat:
            await heartbeat.stop()
        if service:
            await service.stop()
        else:
            await channel.close()


@app.command()
def schedule(
    env_file: Path = typer.Argument(..., help="YAML file with target, formulas and worker commands"),
    once: bool = typer.Option(False, "--once", help="Stop once the target is at floor and ceiling"),
    force: bool = typer.Option(False, "--force", "-f", help="Run even if a full batch does not fit"),
    transport: Optional[str] = typer.Option(None, "--transport", "-t", help="Allocator transport: redis or memory"),
    metrics_out: Optional[Path] = typer.Option(None, "--metrics-out", help="Write run counters as JSON"),
    log_level: Optional[str] = typer.Option(None, "--log-level", "-l", help="Log level: DEBUG, INFO, WARNING, ERROR"),
) -> None:
    """Schedule batches against one target"""
    _apply_common(log_level, transport)

    try:
        env = load_yaml_config(str(env_file))
    except ValueError as e:
        typer.echo(str(e))
        raise typer.Exit(1)
    if "target" not in env:
        typer.echo(f"{env_file}: missing target section")
        raise typer.Exit(1)

    try:
        lines = asyncio.run(run_schedule(env, once=once, force=force, metrics_out=metrics_out))
    except KeyboardInterrupt:
        typer.echo("Scheduler shutting down...")
        return
    except InsufficientCapacity as e:
        typer.echo(f"{e}; use --force to run anyway")
        raise typer.Exit(1)
    except (BatchnetError, RedisError) as e:
        typer.echo(f"Scheduler failed: {e}")
        raise typer.Exit(1)

    for line in lines:
        typer.echo(line)


async def fetch_status(verbose: bool) -> List[str]:
    channel = RedisChannel(settings.redis_url)
    client = AllocatorClient(channel, timeout=settings.request_timeout)
    try:
        status = await client.status()
        lines = [
            f"Capacity: {status.available_capacity}/{status.total_capacity} blocks available, "
            f"{status.allocations} allocations",
        ]
        for host in await client.hosts():
            used = host.total_capacity - host.reserved_capacity - host.available_capacity
            marker = " (privileged)" if host.privileged else ""
            lines.append(
                f"  {host.host_id}{marker}: {host.available_capacity} available, "
                f"{used} allocated, {host.reserved_capacity} reserved of {host.total_capacity}"
            )
            if verbose:
                for entry in host.allocations:
                    lines.append(f"      {entry['allocation_id']} {entry['owner_id']}: {entry['units']} blocks")
        return lines
    finally:
        await channel.close()


@app.command()
def status(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="List allocations per host"),
) -> None:
    """Show allocator capacity per host"""
    setup_logging(settings.log_level)
    try:
        lines = asyncio.run(fetch_status(verbose))
    except (BatchnetError, RedisError) as e:
        typer.echo(f"Allocator unavailable: {e}")
        raise typer.Exit(1)
    for line in lines:
        typer.echo(line)


@app.command()
def version() -> None:
    """Show batchnet version"""
    from batchnet import __version__
    typer.echo(f"batchnet v{__version__}")


if __name__ == "__main__":
    app()
