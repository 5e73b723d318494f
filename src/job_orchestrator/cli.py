from __future__ import annotations

import asyncio
import json
import signal
import sys
from typing import Optional

import typer
from loguru import logger
from prometheus_client import start_http_server

from .errors import OrchestratorError
from .log import configure_logging
from .runtime import Orchestrator
from .settings import get_settings
from .streams import ProducerStreams, RedisConnections

app = typer.Typer(help="job-orchestrator operational CLI")


def parse_fields(pairs: list[str]) -> dict[str, str]:
    """``["mediaId=m1", "width=1024"]`` -> ``{"mediaId": "m1", "width": "1024"}``."""
    fields: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected key=value, got {pair!r}")
        fields[key] = value
    return fields


def _producer(connections: RedisConnections) -> ProducerStreams:
    s = get_settings()
    return ProducerStreams(connections.shared(), notify_prefix=s.NOTIFY_PREFIX, slow_append_ms=s.SLOW_APPEND_MS)


def _run_async(coro) -> None:
    try:
        asyncio.run(coro)
    except OrchestratorError as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)


@app.command()
def run(metrics_port: Optional[int] = typer.Option(None, "--metrics-port", help="Expose Prometheus metrics")):
    """Run the status consumer and the reconciler until SIGINT/SIGTERM."""
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    port = metrics_port or settings.METRICS_PORT
    if port:
        start_http_server(port)
        logger.info(f"Metrics exposed on :{port}/metrics")

    async def _main():
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        async with Orchestrator.from_settings(settings):
            await stop.wait()

    _run_async(_main())


@app.command()
def append(
    stream: str = typer.Argument(..., help="Stream name"),
    fields: list[str] = typer.Argument(..., help="key=value pairs"),
):
    """Append one message (and publish its notification)."""
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    data = parse_fields(fields)

    async def _main():
        connections = RedisConnections(settings)
        try:
            msg_id = await _producer(connections).append(stream, data)
            typer.echo(json.dumps({"stream": stream, "id": msg_id}))
        finally:
            await connections.aclose()

    _run_async(_main())


@app.command()
def pending(stream: str = typer.Argument(...), group: str = typer.Argument(...)):
    """Show a group's pending (delivered, unacknowledged) messages."""
    settings = get_settings()

    async def _main():
        connections = RedisConnections(settings)
        try:
            info = await _producer(connections).pending_info(stream, group)
            typer.echo(
                json.dumps(
                    {
                        "count": info.count,
                        "min_id": info.min_id,
                        "max_id": info.max_id,
                        "per_consumer": info.per_consumer,
                    },
                    indent=2,
                )
            )
        finally:
            await connections.aclose()

    _run_async(_main())


@app.command()
def info(stream: str = typer.Argument(...)):
    """Show stream length and first/last entry."""
    settings = get_settings()

    async def _main():
        connections = RedisConnections(settings)
        try:
            si = await _producer(connections).stream_info(stream)
            out = {"length": si.length}
            for label, entry in (("first_entry", si.first_entry), ("last_entry", si.last_entry)):
                out[label] = {"id": entry.id, "fields": entry.fields} if entry else None
            typer.echo(json.dumps(out, indent=2))
        finally:
            await connections.aclose()

    _run_async(_main())


@app.command("reconcile-once")
def reconcile_once():
    """Run a single reconciliation cycle and print its summary."""
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    async def _main():
        orch = Orchestrator.from_settings(settings)
        await orch.open_resources()
        try:
            summary = await orch.reconciler.reconcile_once()
            typer.echo(json.dumps({"scanned": summary.scanned, "actions": summary.actions, "errors": summary.errors}))
        finally:
            await orch.close_resources()

    _run_async(_main())


@app.command()
def ping():
    """Check broker connectivity (and provider health when enabled)."""
    settings = get_settings()

    async def _main():
        connections = RedisConnections(settings)
        result = {"redis": False}
        try:
            result["redis"] = bool(await connections.shared().ping())
        except Exception as e:
            logger.error(f"Redis ping failed: {e}")
        finally:
            await connections.aclose()

        if settings.provider_configured:
            from .reconciler import RunPodProvider

            provider = RunPodProvider.from_settings(settings)
            try:
                result["provider"] = await provider.health()
            except OrchestratorError as e:
                result["provider"] = {"error": str(e)}
            finally:
                await provider.aclose()

        typer.echo(json.dumps(result, indent=2, default=str))
        if not result["redis"]:
            sys.exit(1)

    asyncio.run(_main())


if __name__ == "__main__":
    app()
