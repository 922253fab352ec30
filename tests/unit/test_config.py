"""Unit tests for Settings, the YAML loader and plan parsing."""

from __future__ import annotations

from pathlib import Path

import pytest

from ragdesk.config.loader import load_config
from ragdesk.config.settings import Settings
from ragdesk.main import _build_vector_store, _parse_plans
from ragdesk.models.tenant import Guardrails, PlanTier
from ragdesk.providers.vector_store.memory_store import InMemoryVectorStore
from ragdesk.utils.errors import ConfigurationError


class TestSettings:
    def test_environment_overrides_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CHAT_MODEL", "anthropic/claude-3.5-haiku")
        monkeypatch.setenv("RAG_TOP_K", "8")
        settings = Settings(_env_file=None)
        assert settings.chat_model == "anthropic/claude-3.5-haiku"
        assert settings.rag_top_k == 8
        assert settings.chars_per_token == 4

    def test_allowed_origins(self) -> None:
        settings = Settings(_env_file=None, cors_allowed_origins="https://a.test, https://b.test,")
        assert settings.get_allowed_origins() == ["https://a.test", "https://b.test"]


class TestLoadConfig:
    def test_missing_file_uses_defaults(self, settings: Settings) -> None:
        config = load_config(settings)
        assert set(config["plans"]) == {"free", "starter", "pro", "enterprise"}
        guardrails = Guardrails(**config["guardrails"])
        assert "988" in guardrails.crisis_template
        assert config["models"]["embedding"] == "fake-embed"

    def test_yaml_values_override_defaults(self, settings: Settings, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text(
            "plans:\n"
            "  free:\n"
            "    rate_limit_capacity: 3\n"
            "    rate_limit_refill_per_second: 0.1\n"
            "    message_credits: 10\n"
            "    storage_limit_kb: 50\n"
            "guardrails:\n"
            "  decline_template: Not something I can discuss.\n"
            "  hold_until_judged: true\n",
            encoding="utf-8",
        )

        config = load_config(settings, str(path))
        plans = _parse_plans(config)

        assert plans[PlanTier.FREE].rate_limit_capacity == 3
        assert plans[PlanTier.PRO].message_credits == 25000
        guardrails = Guardrails(**config["guardrails"])
        assert guardrails.decline_template == "Not something I can discuss."
        assert guardrails.hold_until_judged is True
        assert guardrails.redirect_template

    def test_non_mapping_yaml_is_rejected(self, settings: Settings, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_config(settings, str(path))

    def test_unknown_plan_is_rejected(self, settings: Settings) -> None:
        config = load_config(settings)
        config["plans"]["platinum"] = dict(config["plans"]["free"])
        with pytest.raises(ConfigurationError):
            _parse_plans(config)

    def test_shipped_config_is_valid(self, settings: Settings) -> None:
        shipped = Path(__file__).resolve().parents[2] / "config" / "config.yaml"
        config = load_config(settings, str(shipped))
        assert len(_parse_plans(config)) == 4
        Guardrails(**config["guardrails"])


class TestVectorStoreSelection:
    def test_memory_backend(self, settings: Settings) -> None:
        assert isinstance(_build_vector_store(settings), InMemoryVectorStore)

    def test_unknown_backend(self, settings: Settings) -> None:
        with pytest.raises(ConfigurationError):
            _build_vector_store(settings.model_copy(update={"vector_store_backend": "pinecone"}))
