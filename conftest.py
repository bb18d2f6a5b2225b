"""
Root conftest: config tests see field defaults, not whatever TURNPILOT_*
variables or .env file the developer's shell or CI happens to carry.
"""
import os

import pytest


@pytest.fixture(autouse=True)
def _isolate_settings_env(monkeypatch):
    import turnpilot.config.settings as settings_module

    for var in list(os.environ):
        if var.upper().startswith("TURNPILOT_"):
            monkeypatch.delenv(var, raising=False)

    without_dotenv = {**settings_module.Settings.model_config, "env_file": None}
    monkeypatch.setattr(settings_module.Settings, "model_config", without_dotenv)
    settings_module.reset_settings()
    yield
    settings_module.reset_settings()
