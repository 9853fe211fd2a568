"""roost settings management.

Handles $ROOST_HOME/settings.json: the ordered set of workflow statuses and
store tuning knobs.
"""

from dataclasses import dataclass, field

import orjson

from roost.core.paths import get_settings_path

DEFAULT_STATUSES = ["spec", "plan", "implement", "review", "done"]
DEFAULT_STATUS_COLORS = ["141", "33", "214", "226", "46"]

DEFAULT_BUSY_TIMEOUT_MS = 5000
DEFAULT_BUSY_RETRY_LIMIT = 3


def read_settings() -> dict:
    """Read roost settings, returning empty dict if not found."""
    settings_path = get_settings_path()
    if not settings_path.exists():
        return {}
    try:
        content = settings_path.read_bytes()
        return orjson.loads(content) if content else {}
    except (orjson.JSONDecodeError, OSError):
        return {}


def write_settings(settings: dict) -> None:
    """Write roost settings."""
    settings_path = get_settings_path()
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    settings_path.write_bytes(orjson.dumps(settings, option=orjson.OPT_INDENT_2))


def _parse_list(value: object) -> list[str]:
    """Accept either a JSON list or a comma-separated string."""
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, list):
        items = [str(v) for v in value]
    else:
        return []
    return [item.strip() for item in items if item.strip()]


@dataclass
class StatusConfig:
    """Ordered workflow statuses with their icons and colors."""

    statuses: list[str] = field(default_factory=lambda: list(DEFAULT_STATUSES))
    icons: list[str] = field(default_factory=list)
    colors: list[str] = field(default_factory=lambda: list(DEFAULT_STATUS_COLORS))

    def is_valid(self, status: str) -> bool:
        return status in self.statuses

    def icon_for(self, status: str) -> str:
        if status in self.statuses:
            idx = self.statuses.index(status)
            if idx < len(self.icons):
                return self.icons[idx]
        return ""

    def color_for(self, status: str) -> str:
        """Get the color for a status, cycling through the palette."""
        if not self.colors:
            return DEFAULT_STATUS_COLORS[0]
        if status in self.statuses:
            idx = self.statuses.index(status)
            return self.colors[idx % len(self.colors)]
        return self.colors[0]

    def next_status(self, current: str | None) -> str | None:
        """Cycle None -> first -> ... -> last -> None.

        An unknown current status restarts the cycle at the first status.
        """
        if not self.statuses:
            return None
        if not current or current not in self.statuses:
            return self.statuses[0]
        idx = self.statuses.index(current)
        if idx == len(self.statuses) - 1:
            return None
        return self.statuses[idx + 1]


def load_status_config() -> StatusConfig:
    """Build the StatusConfig from settings, falling back to defaults."""
    settings = read_settings()
    config = StatusConfig()

    statuses = _parse_list(settings.get("statuses"))
    if statuses:
        config.statuses = statuses
    config.icons = _parse_list(settings.get("status_icons"))
    colors = _parse_list(settings.get("status_colors"))
    if colors:
        config.colors = colors
    return config


def store_options() -> dict[str, int]:
    """Get keyword arguments for opening a SessionStore from settings."""
    settings = read_settings()
    timeout = settings.get("busy_timeout_ms", DEFAULT_BUSY_TIMEOUT_MS)
    retries = settings.get("busy_retry_limit", DEFAULT_BUSY_RETRY_LIMIT)
    if not isinstance(timeout, int) or timeout < 0:
        timeout = DEFAULT_BUSY_TIMEOUT_MS
    if not isinstance(retries, int) or retries < 1:
        retries = DEFAULT_BUSY_RETRY_LIMIT
    return {"busy_timeout_ms": timeout, "busy_retry_limit": retries}
