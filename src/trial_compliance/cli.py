# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Command-line interface for computing compliance metrics and analyzing documents."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict

import typer
import yaml
from pydantic import ValidationError

from .analyzer import DocumentAnalyzer
from .config import Settings
from .metrics import build_delay_histogram, compute_metrics
from .models import BinaryDocument, ComplianceMetrics, HistogramBin, TextDocument
from .parser import load_records

logger = logging.getLogger(__name__)

app = typer.Typer(help="Audit clinical-trial registration compliance.")

MEDIA_TYPES = {".pdf": "application/pdf", ".txt": "text/plain"}


def load_config(config_file: str | None) -> Dict[str, Any]:
    """Loads configuration overrides from a YAML file."""
    if config_file:
        try:
            with open(config_file, "r") as f:
                return yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning("Config file not found: %s", config_file)
    return {}


def build_settings(config_file: str | None) -> Settings:
    """Builds settings from the environment, overridden by the YAML file."""
    try:
        settings = Settings(**load_config(config_file))
    except (ValidationError, TypeError, ValueError) as e:
        typer.echo(f"Invalid configuration in {config_file}: {e}", err=True)
        raise typer.Exit(code=1)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    return settings


def format_summary(metrics: ComplianceMetrics, histogram: list[HistogramBin]) -> str:
    """Renders the metrics and delay histogram as plain text."""
    lines = [
        f"Trials analysed:          {metrics.total}",
        f"TRN reporting:            {metrics.trn_rate:.1f}% ({metrics.with_trn}/{metrics.total})",
        f"Prospective registration: {metrics.prospective_rate:.1f}% "
        f"({metrics.prospective}/{metrics.timed_records})",
        f"Retrospective:            {metrics.retrospective}",
        f"ICMJE member TRN rate:    {metrics.icmje_trn_rate:.1f}%",
        f"Non-member TRN rate:      {metrics.non_icmje_trn_rate:.1f}%",
    ]
    if metrics.invalid_date_records:
        lines.append(f"Records with invalid dates: {metrics.invalid_date_records}")
    lines.append("")
    lines.append("Registration delay (weeks after enrollment):")
    lines.extend(f"  week {b.week:>2}: {b.count}" for b in histogram)
    return "\n".join(lines)


@app.command()
def metrics(
    path: Path = typer.Argument(..., help="CSV or JSON file of trial records."),
    as_json: bool = typer.Option(False, "--json", help="Print metrics as JSON."),
    config_file: str = typer.Option(None, help="Path to YAML config file."),
):
    """Compute registration compliance metrics for a set of trial records."""
    build_settings(config_file)
    try:
        records = load_records(path)
    except (OSError, ValueError) as e:
        typer.echo(f"Could not read records from {path}: {e}", err=True)
        raise typer.Exit(code=1)

    result = compute_metrics(records)
    histogram = build_delay_histogram(result.delays)

    if as_json:
        payload = {
            "metrics": result.model_dump(mode="json"),
            "histogram": [b.model_dump() for b in histogram],
        }
        typer.echo(json.dumps(payload, indent=2))
    else:
        typer.echo(format_summary(result, histogram))


async def _run_analysis(settings: Settings, document) -> tuple:
    async with DocumentAnalyzer(settings) as analyzer:
        return await analyzer.analyze_with_error(document)


@app.command()
def analyze(
    text: str = typer.Option(None, help="Abstract or paper text to analyze."),
    file: Path = typer.Option(None, help="Document file to analyze, e.g. a PDF."),
    media_type: str = typer.Option(None, help="Media type of --file, if not inferable."),
    config_file: str = typer.Option(None, help="Path to YAML config file."),
):
    """Extract trial registration details from a document."""
    if (text is None) == (file is None):
        typer.echo("Provide exactly one of --text or --file.", err=True)
        raise typer.Exit(code=2)

    settings = build_settings(config_file)

    if file is not None:
        media_type = media_type or MEDIA_TYPES.get(file.suffix.lower())
        if not media_type:
            typer.echo(f"Cannot infer media type for {file}; pass --media-type.", err=True)
            raise typer.Exit(code=2)
        try:
            data = file.read_bytes()
        except OSError as e:
            typer.echo(f"Could not read {file}: {e}", err=True)
            raise typer.Exit(code=1)
        document = BinaryDocument(data=data, media_type=media_type)
    else:
        if not text.strip():
            typer.echo("--text must not be empty.", err=True)
            raise typer.Exit(code=2)
        document = TextDocument(text=text)

    analysis, error = asyncio.run(_run_analysis(settings, document))
    typer.echo(json.dumps(analysis.model_dump(by_alias=True), indent=2))
    if error:
        typer.echo(f"Analysis failed: {error}", err=True)
        raise typer.Exit(code=1)


def main():
    app()


if __name__ == "__main__":
    main()
