"""Export decoded flight logs for post-flight analysis.

Writes a text summary, a GeoJSON trajectory, a summary JSON with the
issue list, and a per-data-point CSV.
"""

from __future__ import annotations

import csv
import json
import logging
from dataclasses import asdict
from enum import Enum
from pathlib import Path

from flightlog.geo import GeoPoint
from flightlog.models import DataPoint, DecodeResult, FlightIssue, FlightLogSummary

logger = logging.getLogger(__name__)

CSV_FIELDS = [
    "timestamp_offset_ms", "lat", "lon", "altitude_m", "speed_mps",
    "heading_deg", "gimbal_pitch_deg", "battery_percent", "satellite_count",
    "signal_strength", "battery_voltage", "battery_current",
    "battery_temperature", "battery_temperature_min", "battery_temperature_max",
    "battery_cell_voltage_deviation", "battery_current_capacity",
    "battery_full_capacity", "is_photo", "is_video_recording", "photo_filename",
]


def point_to_row(point: DataPoint) -> list:
    values = (getattr(point, name) for name in CSV_FIELDS)
    return ["" if v is None else v for v in values]


def _geo(point: GeoPoint | None) -> dict | None:
    return None if point is None else {"lat": point.lat, "lon": point.lon}


def summary_to_dict(summary: FlightLogSummary) -> dict:
    d = asdict(summary)
    d["flight_start"] = summary.flight_start.isoformat() if summary.flight_start else None
    for key in ("home_location", "start_location", "end_location"):
        d[key] = _geo(getattr(summary, key))
    return d


def issue_to_dict(issue: FlightIssue) -> dict:
    d = asdict(issue)
    d["severity"] = issue.severity.value
    return d


def result_to_dict(result: DecodeResult) -> dict:
    """JSON-ready view of a decode result, without the data points."""
    return {
        "summary": summary_to_dict(result.summary),
        "warnings": [issue_to_dict(i) for i in result.warnings],
        "errors": [issue_to_dict(i) for i in result.errors],
    }


def flight_to_geojson(result: DecodeResult) -> dict:
    """Convert data points to a GeoJSON FeatureCollection."""
    features = []

    coords = [[p.lon, p.lat, p.altitude_m or 0.0] for p in result.data_points
              if p.location is not None]
    if coords:
        features.append({
            "type": "Feature",
            "geometry": {"type": "LineString", "coordinates": coords},
            "properties": {"type": "trajectory", "filename": result.summary.filename},
        })

    home = result.summary.home_location
    if home is not None:
        features.append({
            "type": "Feature",
            "geometry": {"type": "Point", "coordinates": [home.lon, home.lat]},
            "properties": {"type": "home"},
        })

    # Photo locations
    for p in result.data_points:
        if not p.is_photo or p.location is None:
            continue
        features.append({
            "type": "Feature",
            "geometry": {"type": "Point", "coordinates": [p.lon, p.lat]},
            "properties": {
                "type": "photo",
                "timestamp_offset_ms": p.timestamp_offset_ms,
                "filename": p.photo_filename,
                "altitude_m": p.altitude_m,
                "heading_deg": p.heading_deg,
                "gimbal_pitch_deg": p.gimbal_pitch_deg,
            },
        })

    return {"type": "FeatureCollection", "features": features}


def _json_default(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bytes):
        return value.hex()
    raise TypeError(f"Not JSON serializable: {type(value).__name__}")


def save_outputs(result: DecodeResult, output_dir: Path, stem: str = "flight") -> dict[str, Path]:
    """Write all export formats.

    Returns dict of output file paths.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    outputs = {}

    summary_path = output_dir / f"{stem}_summary.txt"
    summary_path.write_text(result.summary.report())
    outputs["summary"] = summary_path

    geojson_path = output_dir / f"{stem}_track.geojson"
    with open(geojson_path, "w") as f:
        json.dump(flight_to_geojson(result), f, indent=2)
    outputs["geojson"] = geojson_path

    json_path = output_dir / f"{stem}_summary.json"
    with open(json_path, "w") as f:
        json.dump(result_to_dict(result), f, indent=2, default=_json_default)
    outputs["json"] = json_path

    csv_path = output_dir / f"{stem}_points.csv"
    with open(csv_path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_FIELDS)
        for point in result.data_points:
            writer.writerow(point_to_row(point))
    outputs["csv"] = csv_path

    logger.info("Exported %d data points to %s", len(result.data_points), output_dir)
    return outputs
