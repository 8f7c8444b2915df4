"""
CLI interface for LLM Cost Guard.

Shows built-in pricing and validates budget configuration files. Runtime
usage is process-local; query it through ``Guard.query`` inside your app.
"""

import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from llm_cost_guard.config.loader import CONFIG_ENV_VAR, load_guard_config
from llm_cost_guard.core.guard import GuardConfig
from llm_cost_guard.core.pricing import BUILT_IN_PRICING

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """LLM Cost Guard CLI."""
    if ctx.invoked_subcommand is None:
        console.print("LLM Cost Guard - Use --help to see available commands")


@app.command()
def status(
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        envvar=CONFIG_ENV_VAR,
        help="Budget configuration file to summarize"
    )
):
    """Show built-in model pricing and configured budgets."""
    _display_pricing()

    if config:
        try:
            guard_config = load_guard_config(config)
        except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
            console.print(f"[red]Error loading config:[/] {str(e)}")
            sys.exit(EXIT_CODE_FAIL)
        _display_budgets(guard_config)

    console.print(
        "\nRuntime usage is process-local. "
        "Query usage through guard.query() inside your app."
    )
    sys.exit(EXIT_CODE_PASS)


@app.command("check-config")
def check_config(
    path: str = typer.Argument(..., help="Path to YAML budget configuration")
):
    """Validate a budget configuration file."""
    try:
        guard_config = load_guard_config(path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] Configuration is valid "
        f"({len(guard_config.budgets)} budget rule(s), "
        f"{len(guard_config.pricing or {})} pricing override(s))"
    )
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format currency for per-million prices."""
    return f"${amount:,.4f}"


def _format_window(window) -> str:
    seconds = int(window.total_seconds())
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60)):
        if seconds >= size and seconds % size == 0:
            return f"{seconds // size}{unit}"
    return f"{window.total_seconds():g}s"


def _display_pricing():
    """Display the built-in pricing catalog."""
    table = Table(title="Built-in pricing (USD per 1M tokens)")
    table.add_column("Model")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")

    for model, price in BUILT_IN_PRICING.items():
        table.add_row(
            model,
            _format_currency(price.input_per_million_usd),
            _format_currency(price.output_per_million_usd),
        )
    console.print(table)


def _display_budgets(config: GuardConfig):
    """Display configured budget rules."""
    table = Table(title="Budgets")
    table.add_column("Rule")
    table.add_column("Limit", justify="right")
    table.add_column("Window")
    table.add_column("Scope")
    table.add_column("Filters")
    table.add_column("Kill switch")

    for index, rule in enumerate(config.budgets):
        filters = ", ".join(
            f"{name}={value}"
            for name, value in (("model", rule.model), ("user", rule.user_id), ("feature", rule.feature))
            if value
        )
        table.add_row(
            rule.id or f"rule-{index}",
            f"${rule.limit_usd:,.2f}",
            _format_window(rule.window),
            rule.scope_by.value,
            filters or "-",
            "on" if rule.kill_switch else "off",
        )
    console.print(table)


if __name__ == "__main__":
    app()
