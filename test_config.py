#!/usr/bin/env python3
"""
Test explicit configuration requirements.
"""

import copy

import pytest
import yaml

from chatrelay.config import CONFIG_ENV_VAR, Configuration


def packaged_config() -> dict:
    return copy.deepcopy(Configuration().get_config_dict())


class TestPackagedConfig:
    """The shipped config.yaml must satisfy every section validator."""

    def test_streaming_section(self):
        streaming = Configuration().get_streaming_config()
        assert streaming["proxy_base_url"].endswith("/functions/v1")
        assert streaming["idle_timeout"] > 0

    def test_fallback_section(self):
        fallback = Configuration().get_fallback_config()
        assert fallback["default_model"]
        assert fallback["last_resort_model"]

    def test_proxy_section(self):
        proxy = Configuration().get_proxy_config()
        assert set(proxy["providers"]) == {
            "openai", "anthropic", "gemini", "deepseek", "perplexity", "openrouter"
        }

    def test_models_section_defaults_to_empty(self):
        assert Configuration().get_models_config() == []


class TestExplicitConfig:
    """Missing values fail fast instead of falling back to hidden defaults."""

    @pytest.mark.parametrize(
        "key",
        ["proxy_base_url", "idle_timeout", "connect_timeout",
         "default_temperature", "default_max_tokens"],
    )
    def test_streaming_keys_required(self, key):
        data = packaged_config()
        del data["streaming"][key]
        with pytest.raises(ValueError, match=f"streaming.{key}"):
            Configuration(config_data=data).get_streaming_config()

    @pytest.mark.parametrize(
        ("key", "value"),
        [("idle_timeout", 0), ("connect_timeout", -1),
         ("default_temperature", 2.5), ("default_max_tokens", 0)],
    )
    def test_streaming_values_validated(self, key, value):
        data = packaged_config()
        data["streaming"][key] = value
        with pytest.raises(ValueError, match=key):
            Configuration(config_data=data).get_streaming_config()

    def test_idle_timeout_may_be_disabled(self):
        data = packaged_config()
        data["streaming"]["idle_timeout"] = None
        assert Configuration(config_data=data).get_streaming_config()["idle_timeout"] is None

    def test_fallback_section_required(self):
        data = packaged_config()
        del data["fallback"]
        with pytest.raises(ValueError, match="fallback must be"):
            Configuration(config_data=data).get_fallback_config()

    def test_fallback_rule_shape(self):
        data = packaged_config()
        data["fallback"]["rules"] = [{"match": "gpt-5"}]
        with pytest.raises(ValueError, match="rules"):
            Configuration(config_data=data).get_fallback_config()

    def test_invalid_port(self):
        data = packaged_config()
        data["proxy"]["port"] = 70000
        with pytest.raises(ValueError, match="proxy.port"):
            Configuration(config_data=data).get_proxy_config()

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="proxy.providers.acme"):
            Configuration().get_provider_config("acme")

    def test_provider_requires_api_key_env(self):
        data = packaged_config()
        del data["proxy"]["providers"]["openai"]["api_key_env"]
        with pytest.raises(ValueError, match="api_key_env"):
            Configuration(config_data=data).get_provider_config("openai")

    def test_root_must_be_mapping(self):
        with pytest.raises(ValueError, match="YAML dict"):
            Configuration(config_data=["not", "a", "dict"])


class TestConfigSources:

    def test_explicit_path(self, tmp_path):
        data = packaged_config()
        data["proxy"]["port"] = 9100
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(data))

        assert Configuration(config_path=str(path)).get_proxy_config()["port"] == 9100

    def test_env_var_path(self, tmp_path, monkeypatch):
        data = packaged_config()
        data["streaming"]["idle_timeout"] = 5.0
        path = tmp_path / "relay.yaml"
        path.write_text(yaml.safe_dump(data))
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))

        assert Configuration().get_streaming_config()["idle_timeout"] == 5.0

    def test_yaml_list_rejected(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="YAML dict"):
            Configuration(config_path=str(path))


class TestSecrets:

    def test_provider_api_key(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        assert Configuration().provider_api_key("openai") == "sk-test"

    def test_provider_api_key_unset(self, monkeypatch):
        monkeypatch.delenv("DEEPSEEK_API_KEY", raising=False)
        assert Configuration().provider_api_key("deepseek") is None

    def test_provider_api_key_alternate_env(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        monkeypatch.setenv("GOOGLE_API_KEY", "g-key")
        assert Configuration().provider_api_key("gemini") == "g-key"

    def test_access_token(self, monkeypatch):
        monkeypatch.setenv("CHATRELAY_ACCESS_TOKEN", "jwt-token")
        assert Configuration().access_token == "jwt-token"
