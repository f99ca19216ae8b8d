"""
Interactive dashboard state.

Plain data observed by the renderer plus the small state transitions the
loop and the job coordinator apply to it.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Deque, Dict, List, Optional, Tuple

from llm_meter.config.loader import normalize_provider_name
from llm_meter.storage.models import AggregateSummary, TimeWindow

DEFAULT_MAX_PROVIDER_LOGS = 100
STATUS_MESSAGE_LIMIT = 80


class ConnectionState(Enum):
    NOT_TESTED = "not tested"
    TESTING = "testing..."
    SUCCESS = "ok"
    FAILURE = "failed"


@dataclass(frozen=True)
class ConnectionStatus:
    """Cached result of the latest connection test for a provider."""
    state: ConnectionState = ConnectionState.NOT_TESTED
    message: str = ""

    @classmethod
    def not_tested(cls) -> "ConnectionStatus":
        return cls(ConnectionState.NOT_TESTED)

    @classmethod
    def testing(cls) -> "ConnectionStatus":
        return cls(ConnectionState.TESTING)

    @classmethod
    def success(cls) -> "ConnectionStatus":
        return cls(ConnectionState.SUCCESS)

    @classmethod
    def failure(cls, message: str) -> "ConnectionStatus":
        return cls(ConnectionState.FAILURE, message)

    @property
    def is_success(self) -> bool:
        return self.state == ConnectionState.SUCCESS

    def describe(self) -> str:
        if self.state == ConnectionState.FAILURE:
            return f"failed: {truncate_message(self.message)}"
        return self.state.value


class LogLevel(Enum):
    INFO = "INFO"
    ERROR = "ERROR"


@dataclass(frozen=True)
class ProviderLogEntry:
    """One structured entry in a provider's connection-test log."""
    ts: datetime
    level: LogLevel
    event: str
    detail: str
    http_status: Optional[int] = None
    duration_ms: Optional[int] = None

    def format_line(self) -> str:
        parts = [self.ts.strftime("%H:%M:%S"), self.level.value, self.event]
        if self.http_status is not None:
            parts.append(f"status={self.http_status}")
        if self.duration_ms is not None:
            parts.append(f"{self.duration_ms}ms")
        parts.append(self.detail)
        return " ".join(parts)


@dataclass(frozen=True)
class FormMode:
    """Identity of an open provider form: Add, or Edit of one provider."""
    kind: str
    provider: str = ""

    @classmethod
    def add(cls) -> "FormMode":
        return cls("add")

    @classmethod
    def edit(cls, provider: str) -> "FormMode":
        return cls("edit", normalize_provider_name(provider))

    @property
    def is_add(self) -> bool:
        return self.kind == "add"


class ScreenKind(Enum):
    DASHBOARD = "dashboard"
    PROVIDER_MANAGER = "provider_manager"
    PROVIDER_FORM = "provider_form"
    ERROR_DIALOG = "error_dialog"
    CONFIRM = "confirm"


@dataclass(frozen=True)
class Screen:
    kind: ScreenKind
    form_mode: Optional[FormMode] = None

    @classmethod
    def dashboard(cls) -> "Screen":
        return cls(ScreenKind.DASHBOARD)

    @classmethod
    def provider_manager(cls) -> "Screen":
        return cls(ScreenKind.PROVIDER_MANAGER)

    @classmethod
    def provider_form(cls, mode: FormMode) -> "Screen":
        return cls(ScreenKind.PROVIDER_FORM, mode)


@dataclass(frozen=True)
class ConfirmAction:
    """A destructive manager action waiting for a yes/no answer."""
    kind: str
    provider: str

    @classmethod
    def delete_provider(cls, provider: str) -> "ConfirmAction":
        return cls("delete_provider", normalize_provider_name(provider))

    @classmethod
    def delete_key(cls, provider: str) -> "ConfirmAction":
        return cls("delete_key", normalize_provider_name(provider))


@dataclass
class ProviderDraft:
    """Values typed into the add/edit provider form."""
    name: str = ""
    base_url: str = ""
    organization_id: str = ""
    api_key: str = ""
    enabled: bool = False
    connection_status: ConnectionStatus = field(default_factory=ConnectionStatus.not_tested)


@dataclass
class DashboardView:
    tokens: int = 0
    cost: float = 0.0
    provider_breakdown: List[Tuple[str, float]] = field(default_factory=list)
    model_breakdown: List[Tuple[str, float]] = field(default_factory=list)
    last_refresh: str = "never"

    def apply(self, summary: AggregateSummary, refreshed_at: datetime) -> None:
        self.tokens = summary.total_tokens
        self.cost = summary.total_cost
        self.provider_breakdown = list(summary.by_provider)
        self.model_breakdown = list(summary.by_model)
        self.last_refresh = refreshed_at.strftime("%Y-%m-%d %H:%M:%S UTC")


@dataclass
class AppState:
    """Everything the renderer reads. Owned by the interactive loop."""
    running: bool = True
    window: TimeWindow = TimeWindow.SEVEN_DAYS
    status: str = "ready"
    view: DashboardView = field(default_factory=DashboardView)
    screen: Screen = field(default_factory=Screen.dashboard)
    previous_screen: Screen = field(default_factory=Screen.dashboard)
    provider_draft: ProviderDraft = field(default_factory=ProviderDraft)
    provider_test_results: Dict[str, ConnectionStatus] = field(default_factory=dict)
    provider_logs: Dict[str, Deque[ProviderLogEntry]] = field(default_factory=dict)
    max_provider_logs: int = DEFAULT_MAX_PROVIDER_LOGS
    error_message: str = ""
    pending_confirm: Optional[ConfirmAction] = None


def truncate_message(message: str, limit: int = STATUS_MESSAGE_LIMIT) -> str:
    """Shorten a message for the one-line status bar."""
    message = " ".join(message.split())
    if len(message) <= limit:
        return message
    return message[: max(limit - 3, 0)] + "..."


def append_provider_log(
    state: AppState,
    provider: str,
    level: LogLevel,
    event: str,
    detail: str,
    http_status: Optional[int] = None,
    duration_ms: Optional[int] = None,
    ts: Optional[datetime] = None,
) -> None:
    """Append to a provider's log, evicting its oldest entries past the cap.

    Each provider has its own ring; blank provider names are ignored.
    """
    key = normalize_provider_name(provider)
    if not key:
        return

    entry = ProviderLogEntry(
        ts=ts or datetime.now(),
        level=level,
        event=event,
        detail=detail,
        http_status=http_status,
        duration_ms=duration_ms,
    )
    logs = state.provider_logs.get(key)
    if logs is None or logs.maxlen != state.max_provider_logs:
        logs = deque(logs or (), maxlen=state.max_provider_logs)
        state.provider_logs[key] = logs
    logs.append(entry)


def clear_provider_logs(state: AppState, provider: str) -> None:
    state.provider_logs.pop(normalize_provider_name(provider), None)


def can_enable(state: AppState, provider: str) -> bool:
    """A provider may be enabled only after a successful connection test."""
    status = state.provider_test_results.get(normalize_provider_name(provider))
    return status is not None and status.is_success


def toggle_draft_enabled(state: AppState) -> bool:
    """Flip the form's enable toggle; turning it on requires a passed test.

    Returns:
        True if the toggle changed
    """
    draft = state.provider_draft
    if draft.enabled:
        draft.enabled = False
        return True
    if not draft.connection_status.is_success:
        state.status = "Run connection test before enabling provider."
        return False
    draft.enabled = True
    return True


def edit_draft_field(state: AppState, field_name: str, value: str) -> None:
    """Set a text field of the draft and invalidate its connection status."""
    if field_name not in ("name", "base_url", "organization_id", "api_key"):
        raise ValueError(f"Unknown form field: {field_name}")
    setattr(state.provider_draft, field_name, value)
    if state.provider_draft.connection_status.state != ConnectionState.NOT_TESTED:
        state.provider_draft.connection_status = ConnectionStatus.not_tested()


def open_provider_form(state: AppState, mode: FormMode, draft: Optional[ProviderDraft] = None) -> None:
    state.previous_screen = state.screen
    state.screen = Screen.provider_form(mode)
    state.provider_draft = draft or ProviderDraft(name=mode.provider)


def form_provider_name(state: AppState, mode: FormMode) -> str:
    if mode.is_add:
        return normalize_provider_name(state.provider_draft.name)
    return mode.provider


def show_error(state: AppState, message: str) -> None:
    state.error_message = message
    state.previous_screen = state.screen
    state.screen = Screen(ScreenKind.ERROR_DIALOG)


def request_confirm(state: AppState, action: ConfirmAction) -> None:
    state.pending_confirm = action
    state.previous_screen = state.screen
    state.screen = Screen(ScreenKind.CONFIRM)


def close_dialog(state: AppState) -> None:
    """Leave an error or confirm dialog, returning to the screen below it."""
    state.pending_confirm = None
    state.screen = state.previous_screen
