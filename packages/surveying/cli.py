"""CLI entry-point for the survey pipeline."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import click
from pydantic import TypeAdapter

from packages.core.config import load_settings
from packages.core.errors import EmptyGeometry
from packages.core.types import DetectedWall, PaperSize, PlanFormat, ScanSummary
from packages.surveying.export import render_plan
from packages.surveying.layout import ExportOptions
from packages.surveying.process import process_file
from packages.surveying.serialize import point_cloud_to_ply, serialize_point_cloud

_WALL_LIST = TypeAdapter(list[DetectedWall])


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log debug output.")
def main(verbose: bool):
    """Point-cloud survey processing pipeline."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s | %(name)s | %(message)s",
    )


@main.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "json_out", default=None, help="Write the detection summary here.")
@click.option(
    "--decimated",
    "decimated_out",
    default=None,
    help="Write the decimated cloud here (.ply for PLY, otherwise SVPC).",
)
@click.option("--config", "config_path", default=None, help="Pipeline settings JSON.")
def process(input_file: str, json_out: str | None, decimated_out: str | None, config_path: str | None):
    """Detect floors and walls in a LAS, LAZ or E57 file."""
    settings = load_settings(config_path)
    summary, decimated = process_file(input_file, settings)
    json_str = summary.model_dump_json(indent=2)

    if json_out:
        Path(json_out).write_text(json_str)
        click.echo(f"Wrote summary → {json_out}", err=True)
    else:
        click.echo(json_str)

    if decimated_out:
        out = Path(decimated_out)
        data = (
            point_cloud_to_ply(decimated)
            if out.suffix.lower() == ".ply"
            else serialize_point_cloud(decimated)
        )
        out.write_bytes(data)
        click.echo(f"Wrote {decimated.count} decimated points → {out}", err=True)


@main.command()
@click.argument("walls_json", type=click.Path(exists=True, dir_okay=False))
@click.option("-o", "--output", "output_file", required=True, help="Plan file to write.")
@click.option(
    "--format", "fmt",
    type=click.Choice([f.value for f in PlanFormat]), default=None,
    help="Defaults to the output file's extension.",
)
@click.option(
    "--paper", type=click.Choice([p.value for p in PaperSize]), default="A3", show_default=True,
)
@click.option("--scale", default="1:100", show_default=True)
@click.option("--floor", "floor_index", default=0, show_default=True, help="Floor index in a summary file.")
@click.option("--floor-label", default=None)
@click.option("--project", "project_name", default="")
def export(
    walls_json: str,
    output_file: str,
    fmt: str | None,
    paper: str,
    scale: str,
    floor_index: int,
    floor_label: str | None,
    project_name: str,
):
    """Draw a floor plan from a summary written by ``process`` or a list of walls."""
    payload = json.loads(Path(walls_json).read_text())
    if isinstance(payload, dict):
        summary = ScanSummary.model_validate(payload)
        if not 0 <= floor_index < len(summary.floors):
            raise click.BadParameter(
                f"{walls_json} has {len(summary.floors)} floor(s)", param_hint="--floor"
            )
        entry = summary.floors[floor_index]
        walls = entry.walls
        floor_label = floor_label or entry.floor.label
        project_name = project_name or Path(summary.source_file).stem
    else:
        walls = _WALL_LIST.validate_python(payload)

    output = Path(output_file)
    fmt = fmt or output.suffix.lstrip(".").lower()
    try:
        options = ExportOptions(
            format=PlanFormat(fmt),
            paper_size=PaperSize(paper),
            scale=scale,
            floor_label=floor_label or "",
            project_name=project_name,
        )
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    try:
        data = render_plan(walls, options)
    except EmptyGeometry as e:
        raise click.ClickException(str(e)) from e
    output.write_bytes(data)
    click.echo(f"Wrote {options.format.value.upper()} plan ({len(walls)} walls) → {output}")


if __name__ == "__main__":
    main()
