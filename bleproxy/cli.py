"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer

from bleproxy.core.config_loader import load_config
from bleproxy.core.device_match import match_reason
from bleproxy.core.errors import BleProxyError
from bleproxy.core.model import ProxyConfig, ProxyEvent
from bleproxy.core.service import ProxyService
from bleproxy.core.topology import Topology
from bleproxy.transports.ble_central import scan_devices

app = typer.Typer(help="Mirror a remote BLE peripheral locally and relay its GATT traffic")

_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to proxy.yaml")
_TARGET_OPTION = typer.Option(None, "--target", help="Override the configured target device name")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _echo_event(event: ProxyEvent) -> None:
    typer.echo(f"[{event.source}] {event.message}")


async def _run_proxy(config: ProxyConfig, rescan_interval: float | None) -> None:
    service = ProxyService(config)
    service.add_observer(_echo_event)
    await service.run(rescan_interval_s=rescan_interval)


@app.command("run")
def run_proxy(
    config: Path | None = _CONFIG_OPTION,
    target: str | None = _TARGET_OPTION,
    rescan_interval: float | None = typer.Option(
        None,
        "--rescan-interval",
        min=0.0,
        help="Seconds to wait before scanning again after a disconnect; exit on disconnect if omitted",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Connect to the target peripheral and advertise its mirror until interrupted."""
    _configure_logging(verbose)
    try:
        proxy_config = load_config(config, target_name=target)
        typer.echo(f"Proxying '{proxy_config.target_name}' as '{proxy_config.local_name}'")
        asyncio.run(_run_proxy(proxy_config, rescan_interval))
    except BleProxyError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        typer.echo("Stopped")


@app.command("check-config")
def check_config(
    config: Path | None = _CONFIG_OPTION,
    target: str | None = _TARGET_OPTION,
) -> None:
    """Validate the configuration and print the expected topology."""
    try:
        proxy_config = load_config(config, target_name=target)
    except BleProxyError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None

    typer.echo(f"Target: {proxy_config.target_name}")
    typer.echo(f"Advertise as: {proxy_config.local_name}")
    for line in Topology.build(proxy_config).describe():
        typer.echo(line)


@app.command("devices")
def list_devices(
    config: Path | None = _CONFIG_OPTION,
    target: str | None = _TARGET_OPTION,
    timeout: float = typer.Option(5.0, "--timeout", min=0.5, help="Scan duration in seconds"),
) -> None:
    """Scan for nearby BLE devices and mark the configured target."""
    try:
        target_name = target
        if target_name is None:
            target_name = load_config(config).target_name
        devices = asyncio.run(scan_devices(timeout))
    except BleProxyError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None

    if not devices:
        typer.echo("No BLE devices found")
        return

    for device in sorted(devices, key=lambda d: d.address or ""):
        label = device.name or device.local_name or "<unknown-device>"
        reason = match_reason(device, target_name)
        marker = f" -> target (matched {reason})" if reason else ""
        typer.echo(f"{device.address} {label}{marker}")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
