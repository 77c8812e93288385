"""CLI for decoding flight-log files.

Usage:
    flightlog decode DJIFlightRecord_2023-05-14_[10-22-31].txt
    flightlog info DJIFlightRecord.txt
    flightlog export DJIFlightRecord.txt -o ./analysis --api-key KEY
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import click
from pydantic import SecretStr, ValidationError

from flightlog.config import DecoderConfig
from flightlog.details import parse_details
from flightlog.errors import FlightLogError
from flightlog.header import parse_header
from flightlog.models import DecodeResult
from flightlog.sections import locate_sections
from flightlog.session import decode_flight_log_sync
from logtool.export import result_to_dict, save_outputs


def load_config(
    config_path: Path | None,
    api_key: str | None,
    timeout: float | None,
) -> DecoderConfig:
    """Build decoder config from an optional JSON file plus CLI overrides."""
    try:
        config = (
            DecoderConfig.model_validate_json(config_path.read_text())
            if config_path else DecoderConfig()
        )
        if api_key or timeout is not None:
            keychain = config.keychain.model_copy(update={
                k: v for k, v in (
                    ("api_key", SecretStr(api_key) if api_key else None),
                    ("timeout_s", timeout),
                ) if v is not None
            })
            config = DecoderConfig.model_validate(
                {**config.model_dump(exclude={"keychain"}), "keychain": keychain}
            )
    except ValidationError as e:
        raise click.BadParameter(str(e), param_hint="--config") from e
    return config


def _decode(file: Path, config: DecoderConfig) -> DecodeResult:
    try:
        return decode_flight_log_sync(file.read_bytes(), filename=file.name, config=config)
    except FlightLogError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}") from e


def _common_options(fn):
    fn = click.option("--timeout", type=float, default=None,
                      help="Keychain service timeout in seconds")(fn)
    fn = click.option("--config", "config_path", type=click.Path(exists=True, path_type=Path),
                      help="Decoder config JSON")(fn)
    fn = click.option("--api-key", envvar="DJI_API_KEY", default=None,
                      help="Keychain API key (required for format v13+)")(fn)
    return fn


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """Flight-log decoder: summaries, tracks and issues from drone flight records."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_common_options
@click.option("--json", "as_json", is_flag=True, help="Print summary and issues as JSON")
def decode(file: Path, api_key: str | None, config_path: Path | None,
           timeout: float | None, as_json: bool):
    """Decode a flight log and print its summary."""
    config = load_config(config_path, api_key, timeout)
    result = _decode(file, config)

    if as_json:
        click.echo(json.dumps(result_to_dict(result), indent=2, default=str))
        return

    click.echo(result.summary.report())
    for issue in result.errors:
        click.echo(f"ERROR   [{issue.category}] {issue.message}")
    for issue in result.warnings:
        click.echo(f"WARNING [{issue.category}] {issue.message}")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def info(file: Path):
    """Show header and Details area without decoding records."""
    data = file.read_bytes()
    try:
        header = parse_header(data)
        layout = locate_sections(header, len(data))
    except FlightLogError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}") from e
    details = parse_details(data[layout.details.start:layout.details.end], header.version)

    click.echo(f"File: {file.name} ({len(data)} bytes)")
    click.echo(f"Format version: {header.version} ({header.variant.value})")
    click.echo(f"Scrambled: {header.is_scrambled} | Encrypted: {header.is_encrypted}")
    click.echo(f"Records: [{layout.records.start}, {layout.records.end})")
    click.echo(f"Details: [{layout.details.start}, {layout.details.end})")
    if header.device_serial:
        click.echo(f"Device serial: {header.device_serial}")
    if details.aircraft_name or details.aircraft_serial:
        click.echo(f"Aircraft: {details.aircraft_name or '?'} ({details.aircraft_serial or '?'})")
    if details.city or details.area:
        click.echo(f"Location: {', '.join(p for p in (details.street, details.city, details.area) if p)}")
    if details.start_time:
        click.echo(f"Recorded: {details.start_time.isoformat()}")
    if not details.complete:
        click.echo("Details area truncated")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_common_options
@click.option("--output", "-o", type=click.Path(path_type=Path),
              default=Path("./flight_export"), help="Output directory")
def export(file: Path, api_key: str | None, config_path: Path | None,
           timeout: float | None, output: Path):
    """Decode a flight log and write summary, GeoJSON, JSON and CSV files."""
    config = load_config(config_path, api_key, timeout)
    result = _decode(file, config)
    outputs = save_outputs(result, output, stem=file.stem)
    for kind, path in outputs.items():
        click.echo(f"{kind}: {path}")


if __name__ == "__main__":
    cli()
