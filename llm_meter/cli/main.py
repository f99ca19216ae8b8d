"""
CLI interface for LLM Meter.

Provides command-line access to refresh, export, connection tests and the
live dashboard.
"""

import dataclasses
import logging
import queue
import sys
import threading
from datetime import timedelta
from typing import Optional

import typer
from rich.console import Console, Group
from rich.live import Live
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from llm_meter.config.credentials import KeyringCredentialStore
from llm_meter.config.loader import (
    AppConfig,
    ProviderSettings,
    db_path,
    ensure_initialized,
    load_config,
    normalize_provider_name,
    save_config,
)
from llm_meter.core.errors import MeterError
from llm_meter.core.service import MeterService, utc_now
from llm_meter.providers import get_adapter
from llm_meter.storage.export import costs_to_csv, costs_to_json
from llm_meter.storage.models import AggregateSummary, TimeWindow
from llm_meter.storage.repository import SnapshotRepository
from llm_meter.ui.jobs import JobCoordinator
from llm_meter.ui.loop import DashboardLoop, help_text, provider_names
from llm_meter.ui.state import AppState, ConnectionStatus, ScreenKind, form_provider_name

app = typer.Typer()
console = Console()
err_console = Console(stderr=True)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def setup_logging(verbose: bool = False, debug: bool = False) -> None:
    """Configure logging for the CLI."""
    level = logging.WARNING
    if verbose:
        level = logging.INFO
    if debug:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def get_credentials():
    """Credential store used by every command."""
    return KeyringCredentialStore()


def get_service(credentials) -> MeterService:
    return MeterService(credentials)


def _fail(message: str) -> None:
    err_console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log progress"),
    debug: bool = typer.Option(False, "--debug", help="Log debug detail"),
):
    """LLM Meter: online LLM token and cost monitor."""
    setup_logging(verbose=verbose, debug=debug)
    if ctx.invoked_subcommand is None:
        console.print("LLM Meter - Use --help to see available commands")


@app.command()
def init():
    """Initialize LLM Meter config and data directories."""
    try:
        ensure_initialized()
        SnapshotRepository(db_path())
    except (MeterError, OSError) as e:
        _fail(f"initializing: {e}")
    console.print("[green]✓[/] Initialized llm-meter config and data directories.")
    sys.exit(EXIT_CODE_PASS)


@app.command("add-provider")
def add_provider(
    provider: str = typer.Argument(..., help="Provider name, e.g. openai"),
    api_key: str = typer.Option(..., "--api-key", help="API key stored in the keyring"),
    base_url: Optional[str] = typer.Option(None, "--base-url", help="Override the usage endpoint"),
    organization_id: Optional[str] = typer.Option(None, "--organization-id", help="Organization header"),
):
    """Store a provider key and settings, and enable the provider."""
    try:
        ensure_initialized()
        credentials = get_credentials()
        cfg = load_config(credentials=credentials)
        name = normalize_provider_name(provider)
        get_adapter(name)

        enabled = list(cfg.enabled_providers)
        if not cfg.is_enabled(name):
            enabled.append(name)
        settings = dict(cfg.provider_settings)
        settings[name] = ProviderSettings(base_url=base_url, organization_id=organization_id)

        credentials.set(name, api_key)
        save_config(dataclasses.replace(cfg, enabled_providers=enabled, provider_settings=settings))
    except (MeterError, OSError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Provider '{name}' configured.")


@app.command()
def refresh(
    window: str = typer.Option("7d", "--window", "-w", help="Look-back window: 1d, 7d or 30d"),
):
    """Fetch usage from enabled providers and store it."""
    try:
        time_window = TimeWindow.parse(window)
        ensure_initialized()
        credentials = get_credentials()
        cfg = load_config(credentials=credentials)
        storage = SnapshotRepository(db_path())
        with get_service(credentials) as service:
            snap = service.refresh(cfg, time_window, storage)
    except (MeterError, OSError) as e:
        _fail(str(e))
    console.print(
        f"Fetched {len(snap.usage)} usage records and {len(snap.cost)} cost rows "
        f"at {snap.fetched_at.isoformat()}"
    )


@app.command()
def summary(
    window: str = typer.Option("7d", "--window", "-w", help="Look-back window: 1d, 7d or 30d"),
):
    """Show stored tokens and cost for a window."""
    try:
        time_window = TimeWindow.parse(window)
        ensure_initialized()
        storage = SnapshotRepository(db_path())
        result = storage.aggregate_since(utc_now() - timedelta(hours=time_window.hours))
    except (MeterError, OSError) as e:
        _fail(str(e))
    console.print(_summary_tables(result, time_window))


@app.command()
def test(provider: str = typer.Argument(..., help="Provider to test")):
    """Run a connection test against one provider."""
    try:
        credentials = get_credentials()
        cfg = load_config(credentials=credentials)
        name = normalize_provider_name(provider)
        with get_service(credentials) as service:
            report = service.test_provider_connection(name, credentials.get(name), cfg.settings_for(name))
    except (MeterError, OSError) as e:
        _fail(f"Connection test failed for '{normalize_provider_name(provider)}': {e}")
    status = report.status_code if report.status_code is not None else "n/a"
    console.print(f"[green]✓[/] '{name}' responded with status {status} in {report.duration_ms} ms")


@app.command()
def export(
    format: str = typer.Option("json", "--format", "-f", help="Output format: json or csv"),
):
    """Print every stored cost row, newest first."""
    fmt = format.lower()
    if fmt not in ("json", "csv"):
        _fail("Unsupported export format. Use json or csv")
    try:
        ensure_initialized()
        rows = SnapshotRepository(db_path()).export_all_cost()
    except (MeterError, OSError) as e:
        _fail(str(e))
    if fmt == "json":
        typer.echo(costs_to_json(rows))
    else:
        typer.echo(costs_to_csv(rows), nl=False)


@app.command()
def dashboard():
    """Run the live dashboard. Commands are read line by line from stdin."""
    try:
        ensure_initialized()
        credentials = get_credentials()
        cfg = load_config(credentials=credentials)
        storage = SnapshotRepository(db_path())
    except (MeterError, OSError) as e:
        _fail(str(e))

    commands: "queue.Queue[str]" = queue.Queue()
    stdin = sys.stdin

    def read_stdin() -> None:
        for line in stdin:
            commands.put(line)
        commands.put("q")

    def next_command(timeout: float) -> Optional[str]:
        try:
            return commands.get(timeout=min(timeout, 0.25))
        except queue.Empty:
            return None

    def run_test(name: str, api_key: str, settings: ProviderSettings):
        with get_service(credentials) as tester:
            return tester.test_provider_connection(name, api_key, settings)

    threading.Thread(target=read_stdin, daemon=True).start()
    coordinator = JobCoordinator(run_test)
    with get_service(credentials) as service, Live(console=console, refresh_per_second=4) as live:
        loop = DashboardLoop(
            config=cfg,
            storage=storage,
            service=service,
            coordinator=coordinator,
            credentials=credentials,
            render=lambda state: live.update(_render_state(state, loop.config)),
            next_command=next_command,
            save_config=save_config,
        )
        try:
            loop.run()
        finally:
            coordinator.shutdown()


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${amount:,.4f}"


def _summary_tables(result: AggregateSummary, window: TimeWindow) -> Group:
    totals = Table(title=f"Usage ({window.label})", show_header=False)
    totals.add_row("Tokens", f"{result.total_tokens:,}")
    totals.add_row("Cost", _format_currency(result.total_cost))

    by_provider = Table(title="Cost by provider")
    by_provider.add_column("Provider")
    by_provider.add_column("Cost", justify="right")
    for name, cost in result.by_provider:
        by_provider.add_row(name, _format_currency(cost))

    by_model = Table(title="Top models")
    by_model.add_column("Model")
    by_model.add_column("Cost", justify="right")
    for name, cost in result.by_model:
        by_model.add_row(name, _format_currency(cost))

    return Group(totals, by_provider, by_model)


def _mask_key(api_key: str) -> str:
    if not api_key:
        return "(not set)"
    return "*" * min(len(api_key), 12)


def _manager_table(state: AppState, config: AppConfig) -> Table:
    table = Table(title="Providers")
    table.add_column("Provider")
    table.add_column("Enabled")
    table.add_column("Connection")
    table.add_column("Last log")
    for name in provider_names(config):
        status = state.provider_test_results.get(name, ConnectionStatus.not_tested())
        logs = state.provider_logs.get(name)
        table.add_row(
            name,
            "yes" if config.is_enabled(name) else "no",
            escape(status.describe()),
            escape(logs[-1].format_line()) if logs else "",
        )
    return table


def _form_panel(state: AppState) -> Group:
    mode = state.screen.form_mode
    draft = state.provider_draft
    title = "Add provider" if mode.is_add else f"Edit provider '{mode.provider}'"
    fields = Table(title=title, show_header=False)
    fields.add_row("name", escape(draft.name if mode.is_add else mode.provider))
    fields.add_row("api_key", _mask_key(draft.api_key))
    fields.add_row("base_url", escape(draft.base_url) or "(default)")
    fields.add_row("organization_id", escape(draft.organization_id))
    fields.add_row("enabled", "yes" if draft.enabled else "no")
    fields.add_row("connection", escape(draft.connection_status.describe()))

    provider = form_provider_name(state, mode)
    lines = [escape(entry.format_line()) for entry in state.provider_logs.get(provider, ())]
    logs = Panel("\n".join(lines) or "no test logs", title=f"Test logs: {provider or '-'}")
    return Group(fields, logs)


def _render_state(state: AppState, config: AppConfig) -> Group:
    kind = state.screen.kind
    if kind == ScreenKind.ERROR_DIALOG:
        body = Panel(escape(state.error_message), title="Error", border_style="red")
    elif kind == ScreenKind.CONFIRM:
        pending = state.pending_confirm
        question = "Delete provider" if pending and pending.kind == "delete_provider" else "Delete key for"
        body = Panel(f"{question} '{pending.provider if pending else ''}'?", title="Confirm")
    elif kind == ScreenKind.PROVIDER_FORM:
        body = _form_panel(state)
    elif kind == ScreenKind.PROVIDER_MANAGER:
        body = _manager_table(state, config)
    else:
        view = state.view
        summary_view = AggregateSummary(
            total_tokens=view.tokens,
            total_cost=view.cost,
            by_provider=view.provider_breakdown,
            by_model=view.model_breakdown,
        )
        body = Group(_summary_tables(summary_view, state.window), _manager_table(state, config))

    footer = Panel(f"{escape(state.status)}\nlast refresh: {state.view.last_refresh}\n{help_text(kind)}")
    return Group(body, footer)


if __name__ == "__main__":
    app()
