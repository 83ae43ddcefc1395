"""
Root conftest — isolate gateway environment variables so Settings() behaves
as if nothing is configured unless a test explicitly provides values.
Also disables .env file loading so a developer's local .env (and its real
token) never leaks into tests.
"""
import pytest

_GATEWAY_ENV_VARS = [
    "OPENCLAW_TOKEN",
    "OPENCLAW_GATEWAY_URL",
    "OPENCLAW_REMOTE_GATEWAY_URL",
    "CLAWCHAT_CONFIG",
]


@pytest.fixture(autouse=True)
def _clear_gateway_env(monkeypatch):
    for var in _GATEWAY_ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import clawchat.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
    monkeypatch.setattr(settings_module, "_singleton", None)
