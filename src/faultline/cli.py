"""faultline Command Line Interface."""

import json
import os
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from faultline.classifier import ErrorClassifier
from faultline.errors import ConfigurationError, ErrorInfo
from faultline.logging import configure_logging, get_logger
from faultline.models import ErrorType
from faultline.recovery import RetryPolicy, plan_strategies

app = typer.Typer(
    name="faultline",
    help="faultline: error detection and automatic recovery",
    no_args_is_help=True,
)
console = Console()
logger = get_logger(__name__, component="cli")


def _setup_logging(log_level: str) -> None:
    configure_logging(log_level=log_level.upper(), log_format="console")


@app.command()
def version():
    """Show version information."""
    from faultline import __version__

    console.print(f"faultline version {__version__}")


@app.command()
def classify(
    message: str = typer.Argument(..., help="Error message to classify"),
    status: Optional[int] = typer.Option(None, "--status", "-s", help="HTTP status carried by the error"),
    code: Optional[str] = typer.Option(None, "--code", "-c", help="Error code such as ECONNREFUSED"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw classification as JSON"),
    log_level: str = typer.Option(
        os.getenv("FAULTLINE_LOG_LEVEL", "WARNING"),
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    ),
):
    """Classify one error message and show the recovery plan."""
    _setup_logging(log_level)
    classifier = ErrorClassifier()
    result = classifier.classify(ErrorInfo(message=message, status=status, code=code))

    if as_json:
        console.print_json(json.dumps(result.model_dump(mode="json")))
        return

    table = Table(title="Classification")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("error_id", result.error_id)
    table.add_row("type", result.type.value)
    table.add_row("severity", result.severity.value)
    table.add_row("confidence", f"{result.confidence:.2f}")
    table.add_row("category", result.category)
    table.add_row("business_impact", result.business_impact.value)
    table.add_row("user_impact", result.user_impact.value)
    table.add_row("complexity", result.technical_complexity.value)
    table.add_row("resolution", f"{result.estimated_resolution_minutes} min")
    table.add_row("tags", ", ".join(result.tags) or "-")
    table.add_row("patterns", ", ".join(m.pattern_id for m in result.matched_patterns) or "-")
    table.add_row("strategies", " -> ".join(s.value for s in plan_strategies(result.type)))
    table.add_row("auto retry", "yes" if RetryPolicy().should_retry(result) else "no")
    console.print(table)


@app.command()
def analyze(
    messages: List[str] = typer.Argument(..., help="Error messages to feed the analyzer"),
    log_level: str = typer.Option(
        os.getenv("FAULTLINE_LOG_LEVEL", "WARNING"),
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    ),
):
    """Classify several messages and print detection metrics and trends."""
    _setup_logging(log_level)
    classifier = ErrorClassifier()
    for message in messages:
        classifier.classify(message)

    detection = classifier.get_detection_metrics()
    table = Table(title=f"Detection ({detection['total_errors']} errors)")
    table.add_column("Type", style="cyan")
    table.add_column("Count", justify="right")
    for error_type, count in sorted(detection["errors_by_type"].items(), key=lambda kv: -kv[1]):
        table.add_row(error_type, str(count))
    console.print(table)

    analysis = classifier.analyze_patterns()
    trends = Table(title="Trends")
    trends.add_column("Type", style="cyan")
    trends.add_column("Frequency", justify="right")
    trends.add_column("Trend")
    trends.add_column("Severity")
    for trend in analysis.trends:
        trends.add_row(trend.error_type, str(trend.frequency), trend.trend.value, trend.severity.value)
    console.print(trends)

    for anomaly in analysis.anomalies:
        console.print(f"[red]Anomaly:[/red] {anomaly.description}")
    for prediction in analysis.predictions:
        console.print(
            f"[yellow]Prediction:[/yellow] {prediction.error_type} "
            f"p={prediction.probability:.2f} within {prediction.timeframe}"
        )


@app.command()
def strategies(
    error_type: ErrorType = typer.Argument(..., help="Error type to plan for"),
):
    """Show the recovery strategies selected for an error type."""
    for index, strategy in enumerate(plan_strategies(error_type), start=1):
        console.print(f"{index}. {strategy.value}")


@app.command()
def config(
    config_dir: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Configuration directory",
    ),
):
    """Show the effective configuration."""
    from faultline.config import load_config

    try:
        cfg = load_config(config_dir)
    except (FileNotFoundError, ConfigurationError) as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)
    console.print_json(json.dumps(cfg.model_dump(mode="json")))


@app.command()
def init(
    config_dir: Path = typer.Option(
        Path("config"),
        "--config",
        "-c",
        help="Configuration directory",
    ),
):
    """Initialize faultline configuration."""
    if config_dir.exists():
        console.print(f"[yellow]Config directory already exists: {config_dir}[/yellow]")
        return

    config_dir.mkdir(parents=True)
    (config_dir / "environments").mkdir()

    default_config = """# faultline Configuration
version: "1.0"
environment: development

logging:
  log_level: INFO
  log_format: console

recovery:
  max_retries: 5
  base_delay_ms: 1000
  max_delay_ms: 30000
  backoff_multiplier: 2.0
  circuit_breaker_threshold: 5
  circuit_breaker_timeout_ms: 60000
  health_check_interval_ms: 30000

classifier:
  spike_threshold: 100
"""
    (config_dir / "faultline.yaml").write_text(default_config)

    production_config = """# Production overrides
logging:
  log_level: WARNING
  log_format: json

metrics:
  start_server: true
"""
    (config_dir / "environments" / "production.yaml").write_text(production_config)

    logger.info("config_initialized", config_dir=str(config_dir))
    console.print(f"[green]Created configuration in {config_dir}[/green]")


if __name__ == "__main__":
    app()
