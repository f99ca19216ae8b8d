"""
Interactive dashboard loop.

A single-threaded loop that polls the background test job, redraws,
waits briefly for a command and runs the periodic refresh inline.
Rendering and input are injected so the loop itself has no terminal code.

Commands are read one line at a time and interpreted by the current screen:
the dashboard, the provider manager, the add/edit provider form, and the
error and confirm dialogs.
"""

import dataclasses
import logging
import time
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple

from llm_meter.config.loader import AppConfig, ProviderSettings, normalize_provider_name
from llm_meter.core.errors import ConfigurationError, MeterError
from llm_meter.core.service import MeterService, utc_now
from llm_meter.providers import supported_providers
from llm_meter.providers.base import is_valid_base_url
from llm_meter.storage.models import TimeWindow
from llm_meter.storage.repository import SnapshotRepository
from .jobs import BUSY_MESSAGE, JobCoordinator, JobOrigin
from .state import (
    AppState,
    ConfirmAction,
    ConnectionState,
    ConnectionStatus,
    FormMode,
    ProviderDraft,
    Screen,
    ScreenKind,
    can_enable,
    clear_provider_logs,
    close_dialog,
    edit_draft_field,
    form_provider_name,
    open_provider_form,
    request_confirm,
    show_error,
    toggle_draft_enabled,
    truncate_message,
)

logger = logging.getLogger(__name__)

MIN_TICK_SECONDS = 10

HELP_TEXT = "r refresh | w <1d|7d|30d> window | t <provider> test | e <provider> enable/disable | p providers | q quit"
MANAGER_HELP = (
    "n new | edit <provider> | t <provider> test | e <provider> enable/disable | "
    "d <provider> delete | k <provider> delete key | b back | q quit"
)
FORM_HELP = (
    "set <name|api_key|base_url|organization_id> <value> | t test | toggle enable | "
    "x clear logs | s save | c cancel"
)
CONFIRM_HELP = "y confirm | n cancel"
DIALOG_HELP = "press enter to close"

_HELP: Dict[ScreenKind, str] = {
    ScreenKind.DASHBOARD: HELP_TEXT,
    ScreenKind.PROVIDER_MANAGER: MANAGER_HELP,
    ScreenKind.PROVIDER_FORM: FORM_HELP,
    ScreenKind.CONFIRM: CONFIRM_HELP,
    ScreenKind.ERROR_DIALOG: DIALOG_HELP,
}


def help_text(kind: ScreenKind) -> str:
    return _HELP.get(kind, HELP_TEXT)


def provider_names(config: AppConfig) -> List[str]:
    """Configured, enabled and built-in providers, sorted and deduplicated."""
    names = set(config.provider_settings)
    names.update(normalize_provider_name(p) for p in config.enabled_providers)
    names.update(supported_providers())
    return sorted(n for n in names if n)


class DashboardLoop:
    """Drive AppState from commands, timer ticks and test completions.

    Args:
        config: Configuration snapshot; replaced (never mutated) on changes
        storage: Repository read for the dashboard and written by refresh
        service: Service used for the inline periodic refresh
        coordinator: Owner of the single outstanding connection test
        credentials: Store used to read, save and delete provider keys
        render: Called with the state once per iteration
        next_command: Waits up to ``timeout`` seconds for a command, or returns None
        save_config: Persists a changed config; optional
    """

    def __init__(
        self,
        config: AppConfig,
        storage: SnapshotRepository,
        service: MeterService,
        coordinator: JobCoordinator,
        credentials,
        render: Callable[[AppState], None],
        next_command: Callable[[float], Optional[str]],
        save_config: Optional[Callable[[AppConfig], None]] = None,
        now=utc_now,
    ):
        self.config = config
        self.storage = storage
        self.service = service
        self.coordinator = coordinator
        self.credentials = credentials
        self.render = render
        self.next_command = next_command
        self.save_config = save_config
        self.now = now
        self.state = AppState()

    @property
    def tick_seconds(self) -> int:
        return max(self.config.refresh_seconds, MIN_TICK_SECONDS)

    def run(self) -> AppState:
        """Run until a quit command; returns the final state."""
        self.refresh_dashboard()
        last_tick = time.monotonic()

        while self.state.running:
            self.coordinator.poll(self.state)
            self.render(self.state)

            remaining = self.tick_seconds - (time.monotonic() - last_tick)
            command = self.next_command(max(remaining, 0.0))
            if command:
                self.dispatch(command)

            if (
                self.state.screen.kind == ScreenKind.DASHBOARD
                and time.monotonic() - last_tick >= self.tick_seconds
            ):
                self.refresh_dashboard()
                last_tick = time.monotonic()

        return self.state

    def dispatch(self, command: str) -> None:
        kind = self.state.screen.kind
        if kind == ScreenKind.ERROR_DIALOG:
            close_dialog(self.state)
            return

        parts = command.strip().split()
        if not parts:
            return
        action, args = parts[0].lower(), parts[1:]

        if kind == ScreenKind.CONFIRM:
            self._dispatch_confirm(action)
        elif action in ("q", "quit"):
            self.state.running = False
        elif kind == ScreenKind.PROVIDER_FORM:
            self._dispatch_form(action, command)
        elif kind == ScreenKind.PROVIDER_MANAGER:
            self._dispatch_manager(action, args)
        else:
            self._dispatch_dashboard(action, args)

    def _dispatch_dashboard(self, action: str, args: List[str]) -> None:
        if action in ("r", "refresh"):
            self.refresh_dashboard()
        elif action in ("w", "window") and args:
            try:
                self.state.window = TimeWindow.parse(args[0])
            except MeterError as e:
                self.state.status = str(e)
                return
            self.refresh_dashboard()
        elif action in ("t", "test") and args:
            self.test_provider(args[0])
        elif action in ("e", "enable") and args:
            self.toggle_provider(args[0])
        elif action in ("p", "providers"):
            self.state.screen = Screen.provider_manager()
        else:
            self.state.status = HELP_TEXT

    def _dispatch_manager(self, action: str, args: List[str]) -> None:
        if action in ("b", "back"):
            self.state.screen = Screen.dashboard()
        elif action in ("n", "new"):
            open_provider_form(self.state, FormMode.add())
        elif action == "edit" and args:
            self.open_edit_form(args[0])
        elif action in ("t", "test") and args:
            self.test_provider(args[0])
        elif action in ("e", "enable") and args:
            self.toggle_provider(args[0])
        elif action in ("d", "delete") and args:
            request_confirm(self.state, ConfirmAction.delete_provider(args[0]))
        elif action in ("k", "delete-key") and args:
            request_confirm(self.state, ConfirmAction.delete_key(args[0]))
        else:
            self.state.status = MANAGER_HELP

    def _dispatch_form(self, action: str, command: str) -> None:
        mode = self.state.screen.form_mode
        if action == "set":
            parts = command.strip().split(None, 2)
            if len(parts) < 2:
                self.state.status = FORM_HELP
                return
            value = parts[2] if len(parts) == 3 else ""
            try:
                edit_draft_field(self.state, parts[1].lower(), value)
            except ValueError as e:
                self.state.status = str(e)
        elif action in ("t", "test"):
            self.test_form(mode)
        elif action in ("toggle", "enable"):
            toggle_draft_enabled(self.state)
        elif action in ("x", "clear-logs"):
            provider = form_provider_name(self.state, mode)
            if not provider:
                self.state.status = "Set provider name first to target logs, then press 'x'."
                return
            clear_provider_logs(self.state, provider)
            self.state.status = f"Cleared test logs for '{provider}'."
        elif action in ("s", "save"):
            self.submit_form(mode)
        elif action in ("c", "cancel", "esc"):
            self.state.screen = Screen.provider_manager()
        else:
            self.state.status = FORM_HELP

    def _dispatch_confirm(self, action: str) -> None:
        pending = self.state.pending_confirm
        close_dialog(self.state)
        if action not in ("y", "yes") or pending is None:
            return
        if pending.kind == "delete_provider":
            self.delete_provider(pending.provider)
        else:
            self.delete_key(pending.provider)

    def refresh_dashboard(self) -> None:
        """Refresh inline and reload the view.

        On failure the last successful view is kept and the status line
        carries the error.
        """
        self.state.status = "refreshing..."
        try:
            snapshot = self.service.refresh(self.config, self.state.window, self.storage)
            since = self.now() - timedelta(hours=self.state.window.hours)
            summary = self.storage.aggregate_since(since)
        except MeterError as e:
            logger.warning("Refresh failed: %s", e)
            self.state.status = f"refresh failed: {truncate_message(str(e))}"
            return

        self.state.view.apply(summary, snapshot.fetched_at)
        self.state.status = (
            f"refreshed {len(snapshot.usage)} usage rows, {len(snapshot.cost)} cost rows"
        )

    def test_provider(self, provider: str) -> bool:
        """Queue a connection test from the provider manager."""
        name = normalize_provider_name(provider)
        if self.coordinator.busy:
            self.state.status = BUSY_MESSAGE
            return False
        try:
            api_key = self.credentials.get(name)
        except MeterError:
            self.state.status = f"Provider '{name}' has no key. Set key first before testing."
            return False
        return self.coordinator.enqueue(
            self.state, name, api_key, self.config.settings_for(name), JobOrigin.manager(),
        )

    def test_form(self, mode: FormMode) -> bool:
        """Queue a connection test for the values typed into the open form.

        The typed key and settings are used when present, otherwise the
        stored ones.
        """
        if self.coordinator.busy:
            self.state.status = BUSY_MESSAGE
            return False
        try:
            name, api_key, settings = self._form_test_target(mode)
        except MeterError as e:
            show_error(self.state, str(e))
            return False
        return self.coordinator.enqueue(self.state, name, api_key, settings, JobOrigin.form(mode))

    def _form_test_target(self, mode: FormMode) -> Tuple[str, str, ProviderSettings]:
        draft = self.state.provider_draft
        name = form_provider_name(self.state, mode)
        if not name:
            raise ConfigurationError("Provider name is required before testing.")

        api_key = draft.api_key.strip()
        if not api_key:
            try:
                api_key = self.credentials.get(name)
            except MeterError:
                raise ConfigurationError("API key is required to run a connection test.")

        base_url = draft.base_url.strip()
        if base_url and not is_valid_base_url(base_url):
            raise ConfigurationError("Base URL is not valid")

        existing = self.config.settings_for(name)
        settings = ProviderSettings(
            base_url=base_url or existing.base_url,
            organization_id=draft.organization_id.strip() or existing.organization_id,
        )
        return name, api_key, settings

    def open_edit_form(self, provider: str) -> None:
        """Open the form for an existing provider, prefilled from config."""
        name = normalize_provider_name(provider)
        settings = self.config.settings_for(name)
        enabled = self.config.is_enabled(name)
        status = self.state.provider_test_results.get(name)
        if status is None:
            status = ConnectionStatus.success() if enabled else ConnectionStatus.not_tested()
        draft = ProviderDraft(
            name=name,
            base_url=settings.base_url or "",
            organization_id=settings.organization_id or "",
            enabled=enabled,
            connection_status=status,
        )
        open_provider_form(self.state, FormMode.edit(name), draft)

    def submit_form(self, mode: FormMode) -> bool:
        """Store the form's key and settings and apply its enable toggle.

        Enabling is only kept when the draft passed a connection test;
        otherwise the provider is saved disabled.

        Returns:
            True if the form was saved and closed
        """
        draft = self.state.provider_draft
        name = form_provider_name(self.state, mode)
        api_key = draft.api_key.strip()
        base_url = draft.base_url.strip()

        if not name:
            show_error(self.state, "Provider name is required")
            return False
        if mode.is_add and not api_key:
            show_error(self.state, "API key is required for new providers.")
            return False
        if base_url and not is_valid_base_url(base_url):
            show_error(self.state, "Base URL is not valid")
            return False

        settings = dict(self.config.provider_settings)
        settings[name] = ProviderSettings(
            base_url=base_url or None,
            organization_id=draft.organization_id.strip() or None,
        )

        try:
            if api_key:
                self.credentials.set(name, api_key)
            enable = draft.enabled and draft.connection_status.is_success
            if enable and not self.credentials.has(name):
                show_error(self.state, "Cannot enable provider without key. Add API key first.")
                return False
        except MeterError as e:
            show_error(self.state, str(e))
            return False

        enabled = [p for p in self.config.enabled_providers if p.lower() != name]
        if enable:
            enabled.append(name)
        if not self._update_config(enabled_providers=enabled, provider_settings=settings):
            return False

        if draft.enabled and not enable:
            draft.enabled = False
            self.state.status = f"Provider '{name}' saved disabled: run connection test first."
        elif mode.is_add:
            self.state.status = f"Provider '{name}' added"
        else:
            self.state.status = f"Provider '{name}' updated"
        if draft.connection_status.state in (ConnectionState.SUCCESS, ConnectionState.FAILURE):
            self.state.provider_test_results[name] = draft.connection_status
        self.state.provider_draft = ProviderDraft()
        self.state.screen = Screen.provider_manager()
        return True

    def toggle_provider(self, provider: str) -> None:
        """Enable or disable a provider; enabling needs a passed connection test."""
        name = normalize_provider_name(provider)
        if self.config.is_enabled(name):
            enabled = [p for p in self.config.enabled_providers if p.lower() != name]
            message = f"Provider '{name}' disabled"
        elif not can_enable(self.state, name):
            self.state.status = f"Run test first for '{name}' (t {name}), then enable with 'e {name}'."
            return
        else:
            try:
                has_key = self.credentials.has(name)
            except MeterError as e:
                show_error(self.state, str(e))
                return
            if not has_key:
                show_error(self.state, f"Provider '{name}' has no key. Set key first.")
                return
            enabled = list(self.config.enabled_providers) + [name]
            message = f"Provider '{name}' enabled"

        if self._update_config(enabled_providers=enabled):
            self.state.status = message

    def delete_provider(self, provider: str) -> None:
        """Forget a provider: settings, enable flag, key, cached status and logs."""
        name = normalize_provider_name(provider)
        settings = {k: v for k, v in self.config.provider_settings.items() if k != name}
        enabled = [p for p in self.config.enabled_providers if p.lower() != name]
        self._forget_results(name)
        try:
            self.credentials.delete(name)
        except MeterError as e:
            show_error(self.state, str(e))
            return
        if self._update_config(enabled_providers=enabled, provider_settings=settings):
            self.state.status = f"Provider '{name}' removed"

    def delete_key(self, provider: str) -> None:
        """Delete a provider's stored key; the provider is disabled as well."""
        name = normalize_provider_name(provider)
        try:
            self.credentials.delete(name)
        except MeterError as e:
            show_error(self.state, str(e))
            return
        self._forget_results(name)
        enabled = [p for p in self.config.enabled_providers if p.lower() != name]
        if self._update_config(enabled_providers=enabled):
            self.state.status = f"Key removed for '{name}'"

    def _forget_results(self, name: str) -> None:
        self.state.provider_test_results.pop(name, None)
        clear_provider_logs(self.state, name)

    def _update_config(self, **changes) -> bool:
        """Replace the config snapshot and persist it."""
        self.config = dataclasses.replace(self.config, **changes)
        if self.save_config is None:
            return True
        try:
            self.save_config(self.config)
        except (MeterError, OSError) as e:
            show_error(self.state, f"Failed to save config: {e}")
            return False
        return True
