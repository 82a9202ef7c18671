import logging
import math
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
import typer  # type: ignore
from pydantic import ValidationError
from rich.console import Console  # type: ignore
from rich.panel import Panel  # type: ignore
from rich.table import Table  # type: ignore
from typing_extensions import Annotated

from aidloop.api.models import GlucoseStatus, InsulinState, LoopContext, ModeFlags, Preferences, ProfileLimits
from aidloop.core.orchestrator import DosingOrchestrator
from aidloop.core.safety.config import SafetyConfig
from aidloop.utils.run_io import read_state, write_json, write_state
from aidloop.validation import (
    build_loop_context,
    build_preferences,
    build_safety_config,
    context_warnings,
    format_validation_error,
    load_context,
    load_replay_config,
)

logger = logging.getLogger("aidloop.cli")

app = typer.Typer(help="aidloop - dosing decision core for automated insulin delivery loops.")

REQUIRED_TICK_COLUMNS = ("time", "glucose")
OPTIONAL_TICK_COLUMNS = {
    "delta": 0.0,
    "short_avg_delta": 0.0,
    "long_avg_delta": 0.0,
    "acceleration": 0.0,
    "noise": 0.0,
    "age_minutes": 0.0,
    "iob": 0.0,
    "cob": 0.0,
    "activity_now": 0.0,
    "tdd_24h": float("nan"),
    "predicted_bg": float("nan"),
    "eventual_bg": float("nan"),
}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


def _report_validation_error(console: Console, source: Path, error: ValidationError) -> None:
    console.print(f"[bold red]Error: {source} failed validation:[/bold red]")
    for message in format_validation_error(error):
        console.print(f"  - {message}")


def _directive_table(payload: Dict[str, Any], title: str) -> Table:
    table = Table(title=title, show_lines=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", justify="right")
    for key in ("source", "basal_rate_uph", "basal_duration_min", "bolus_units", "suspend", "explicit"):
        value = payload[key]
        table.add_row(key, f"{value:.2f}" if isinstance(value, float) else str(value))
    return table


def _optional(value: Any) -> Optional[float]:
    if value is None:
        return None
    value = float(value)
    return value if math.isfinite(value) else None


@app.command()
def decide(
    context: Annotated[Path, typer.Option(help="Path to the cycle context (YAML or JSON)")],
    state: Annotated[Optional[Path], typer.Option(help="Orchestrator state file, read before and written after the cycle")] = None,
    output: Annotated[Optional[Path], typer.Option(help="Write the cycle record as JSON")] = None,
    verbose: Annotated[bool, typer.Option(help="Log every decision step")] = False,
):
    """
    Runs one dosing cycle for a context file and prints the directive with its reason trail.
    """
    _configure_logging(verbose)
    console = Console()
    if not context.is_file():
        console.print(f"[bold red]Error: Context file '{context}' not found.[/bold red]")
        raise typer.Exit(code=1)

    try:
        model = load_context(context)
    except ValidationError as e:
        _report_validation_error(console, context, e)
        raise typer.Exit(code=1)
    except ValueError as e:
        console.print(f"[bold red]Error reading {context}: {e}[/bold red]")
        raise typer.Exit(code=1)

    for warning in context_warnings(model):
        console.print(f"[yellow]Warning: {warning}[/yellow]")

    orchestrator = DosingOrchestrator(safety_config=build_safety_config(model.safety))
    try:
        previous = read_state(state)
    except ValueError as e:
        console.print(f"[bold red]Error reading state {state}: {e}[/bold red]")
        raise typer.Exit(code=1)
    if previous is not None:
        orchestrator.set_state(previous)

    record = orchestrator.run_cycle_detailed(build_loop_context(model))
    payload = record.directive.to_dict()

    console.print(_directive_table(payload, title=f"Dosing directive at t={model.now:g} min"))
    console.print(Panel("\n".join(payload["reason_trail"]), title="Reason trail", expand=False))

    if state is not None:
        write_state(state, orchestrator.get_state())
    if output is not None:
        write_json(output, record.to_dict())
        console.print(f"Cycle record written to: {output}")
    orchestrator.close()


def _tick_context(row: Dict[str, Any], profile: ProfileLimits, preferences: Preferences, modes: ModeFlags) -> LoopContext:
    glucose = float(row["glucose"])
    predicted = _optional(row.get("predicted_bg"))
    eventual = _optional(row.get("eventual_bg"))
    series = tuple(value for value in (glucose, predicted, eventual) if value is not None)
    return LoopContext(
        now=float(row["time"]),
        glucose=GlucoseStatus(
            glucose=glucose,
            delta=float(row["delta"]),
            short_avg_delta=float(row["short_avg_delta"]),
            long_avg_delta=float(row["long_avg_delta"]),
            acceleration=float(row["acceleration"]),
            noise=float(row["noise"]),
            age_minutes=float(row["age_minutes"]),
            predicted_bg=predicted,
            eventual_bg=eventual,
            prediction_series=series if predicted is not None else (),
        ),
        insulin=InsulinState(
            iob=float(row["iob"]),
            activity_now=float(row["activity_now"]),
            tdd_24h=_optional(row.get("tdd_24h")),
        ),
        cob=float(row["cob"]),
        profile=profile,
        modes=modes,
        preferences=preferences,
    )


@app.command()
def replay(
    ticks: Annotated[Path, typer.Option(help="CSV of glucose ticks (time, glucose, and optional trend columns)")],
    config: Annotated[Optional[Path], typer.Option(help="Profile/preferences YAML for the replay")] = None,
    output_csv: Annotated[Optional[Path], typer.Option(help="Write one row per tick to this CSV")] = None,
    verbose: Annotated[bool, typer.Option(help="Log every decision step")] = False,
):
    """
    Replays a series of ticks through one orchestrator so hysteresis and refractory state carry over.
    """
    _configure_logging(verbose)
    console = Console()
    if not ticks.is_file():
        console.print(f"[bold red]Error: Ticks file '{ticks}' not found.[/bold red]")
        raise typer.Exit(code=1)

    safety_config = SafetyConfig()
    profile = ProfileLimits()
    preferences = Preferences()
    if config is not None:
        if not config.is_file():
            console.print(f"[bold red]Error: Config file '{config}' not found.[/bold red]")
            raise typer.Exit(code=1)
        try:
            replay_config = load_replay_config(config)
        except ValidationError as e:
            _report_validation_error(console, config, e)
            raise typer.Exit(code=1)
        profile = ProfileLimits(**replay_config.profile.model_dump())
        preferences = build_preferences(replay_config.preferences)
        safety_config = build_safety_config(replay_config.safety)

    df = pd.read_csv(ticks)
    missing = [column for column in REQUIRED_TICK_COLUMNS if column not in df.columns]
    if missing:
        console.print(f"[bold red]Error: Ticks file is missing columns: {', '.join(missing)}[/bold red]")
        raise typer.Exit(code=1)
    for column, default in OPTIONAL_TICK_COLUMNS.items():
        if column not in df.columns:
            df[column] = default
    df = df.sort_values("time").reset_index(drop=True)

    orchestrator = DosingOrchestrator(safety_config=safety_config)
    modes = ModeFlags()
    rows: List[Dict[str, Any]] = []
    for row in df.to_dict(orient="records"):
        directive = orchestrator.run_cycle(_tick_context(row, profile, preferences, modes))
        rows.append(
            {
                "time": row["time"],
                "glucose": row["glucose"],
                "source": directive.source,
                "basal_rate_uph": directive.basal_rate_uph,
                "basal_duration_min": directive.basal_duration_min,
                "bolus_units": directive.bolus_units,
                "suspend": directive.suspend,
                "reason": " | ".join(directive.reason_trail),
            }
        )
    orchestrator.close()

    results = pd.DataFrame(rows)
    logger.info("Replayed %d ticks from %s", len(results), ticks)
    summary = Table(title=f"Replay of {len(results)} ticks")
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value", justify="right")
    summary.add_row("Total bolus (U)", f"{results['bolus_units'].sum():.2f}" if len(results) else "0.00")
    summary.add_row("Suspended ticks", str(int(results["suspend"].sum())) if len(results) else "0")
    if len(results):
        for source, count in results["source"].value_counts().items():
            summary.add_row(f"Source: {source}", str(int(count)))
    console.print(summary)

    if output_csv is not None:
        output_csv.parent.mkdir(parents=True, exist_ok=True)
        results.to_csv(output_csv, index=False)
        console.print(f"Replay written to: {output_csv}")


def main():
    app()


if __name__ == "__main__":
    main()
