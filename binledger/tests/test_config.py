import importlib

from binledger.config import Settings


class TestSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self, monkeypatch):
        for name in ("BINLEDGER_ENFORCE_CAPACITY", "BINLEDGER_LOCK_TIMEOUT",
                     "BINLEDGER_LOG_LEVEL", "BINLEDGER_CORS_ORIGINS", "BINLEDGER_SEED_DEMO"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings == Settings()

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("BINLEDGER_ENFORCE_CAPACITY", "false")
        monkeypatch.setenv("BINLEDGER_LOCK_TIMEOUT", "0.5")
        monkeypatch.setenv("BINLEDGER_LOG_LEVEL", "debug")
        monkeypatch.setenv("BINLEDGER_CORS_ORIGINS", "https://a.example, https://b.example")
        monkeypatch.setenv("BINLEDGER_SEED_DEMO", "yes")

        settings = Settings.from_env()

        assert settings.enforce_capacity is False
        assert settings.lock_timeout == 0.5
        assert settings.log_level == "DEBUG"
        assert settings.cors_origins == ("https://a.example", "https://b.example")
        assert settings.seed_demo is True


def test_serverless_entrypoint():
    """The serverless entrypoint mounts the app under /api."""
    index = importlib.import_module("api.index")
    ledger_api = importlib.import_module("binledger.api")
    # Apps are only built through the factory
    assert not hasattr(ledger_api, "app")
    assert index.app.root_path == "/api"
    assert index.handler is not None
