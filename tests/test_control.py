"""
Device-control permission and prompt block tests.
"""

from __future__ import annotations

import pytest

from core.control import CONTROL_ACTIONS, SettingsControlPermission, control_prompt_block
from core.settings_loader import SettingsLoader


def test_prompt_block_lists_every_action() -> None:
    block = control_prompt_block()
    assert len(CONTROL_ACTIONS) == 10
    for name, _params, _description in CONTROL_ACTIONS:
        assert f"- {name}:" in block
    assert '"need_root": true' in block


def test_settings_permission_reads_settings_each_call() -> None:
    overrides = {"control": {"local_ai_control": False}}
    settings = SettingsLoader(overrides=overrides)
    permission = SettingsControlPermission(settings)
    assert not permission.is_local_control_enabled()

    settings.load()["control"]["local_ai_control"] = True
    assert permission.is_local_control_enabled()


@pytest.mark.parametrize(("value", "expected"), [("1", True), ("on", True), ("0", False), ("no", False)])
def test_environment_overrides_settings(monkeypatch: pytest.MonkeyPatch, value: str, expected: bool) -> None:
    monkeypatch.setenv("LOCALMIND_LOCAL_AI_CONTROL", value)
    permission = SettingsControlPermission(SettingsLoader(overrides={"control": {"local_ai_control": not expected}}))
    assert permission.is_local_control_enabled() is expected
