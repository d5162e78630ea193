"""
Interfaces to the external device-control collaborator.

LocalMind never interprets control commands itself: it only advertises the
available actions in the system prompt (when permitted) and hands finished
text to a `ControlHandler`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, Tuple

from core.settings_loader import SettingsLoader

# (action, parameter hint, description)
CONTROL_ACTIONS: Sequence[Tuple[str, str, str]] = (
    ("root_bluetooth_toggle", '{"state": "on/off"}', "toggle Bluetooth"),
    ("root_wifi_toggle", '{"state": "on/off"}', "toggle Wi-Fi"),
    ("root_adjust_system_volume", '{"level": 0-15}', "set the system volume"),
    ("root_set_brightness", '{"level": 0-255}', "set screen brightness"),
    ("root_reboot_device", "{}", "reboot the device"),
    ("root_force_stop_app", '{"package": "..."}', "force-stop an app"),
    ("root_drop_caches", "{}", "free cached memory"),
    ("root_input_tap", '{"x": 0, "y": 0}', "tap the screen"),
    ("root_input_swipe", '{"x1": 0, "y1": 0, "x2": 0, "y2": 0}', "swipe on the screen"),
    ("root_take_screenshot", "{}", "take a screenshot"),
)


@dataclass(frozen=True)
class ControlResult:
    action: str
    detail: str


class ControlPermission(Protocol):
    def is_local_control_enabled(self) -> bool:  # pragma: no cover - structural typing only
        ...


class ControlHandler(Protocol):
    def process_output(self, text: str, produced_locally: bool) -> Optional[ControlResult]:  # pragma: no cover
        ...


class StaticControlPermission:
    """Permission source with a fixed answer."""

    def __init__(self, enabled: bool = False) -> None:
        self._enabled = enabled

    def is_local_control_enabled(self) -> bool:
        return self._enabled


class SettingsControlPermission:
    """
    Reads the `control.local_ai_control` setting on every call.

    `LOCALMIND_LOCAL_AI_CONTROL=1` overrides the settings file.
    """

    def __init__(self, settings: SettingsLoader) -> None:
        self._settings = settings

    def is_local_control_enabled(self) -> bool:
        return self._settings.get_bool("control", "local_ai_control", env="LOCALMIND_LOCAL_AI_CONTROL", default=False)


class NullControlHandler:
    """Handler used when no device-control collaborator is attached."""

    def process_output(self, text: str, produced_locally: bool) -> Optional[ControlResult]:
        return None


def control_prompt_block() -> str:
    """Plain-text block appended to the system prompt when control is enabled."""
    lines = [
        "You have root access and can control this phone. When the user asks for a device action, "
        "reply with a JSON instruction:",
        '{"action": "<action>", "params": {...}, "timestamp": <epoch ms>, "need_root": true}',
        "",
        "Available actions:",
    ]
    lines.extend(f"- {name}: {description}, params: {params}" for name, params, description in CONTROL_ACTIONS)
    return "\n".join(lines)
