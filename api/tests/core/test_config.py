"""
Unit tests for configuration models and startup validation.
"""
import logging

import pytest
from pydantic import SecretStr, ValidationError

from portal.core.config import DEFAULT_ENTITIES, EntityConfig, Settings, _validate_secrets


class TestEntityConfig:
    def test_credential_key_defaults_to_id(self):
        assert EntityConfig(id="myte", name="MYTE", legal_name="MYTE LLC").credential_key == "myte"

    def test_credential_ref_overrides(self):
        cfg = EntityConfig(id="kfg", name="KFG", legal_name="Keystone Financial Group", credential_ref="kbg")
        assert cfg.credential_key == "kbg"

    @pytest.mark.parametrize("bad", ["MYTE", "1abc", "has space", "under_score", ""])
    def test_rejects_invalid_ids(self, bad):
        with pytest.raises(ValidationError):
            EntityConfig(id=bad, name="x", legal_name="x")

    def test_default_entities(self):
        ids = [e.id for e in DEFAULT_ENTITIES]
        assert ids == ["kbg", "kfg", "myte", "cortex", "vizion", "thryve", "summit"]
        assert {e.entity_type for e in DEFAULT_ENTITIES} == {"parent", "investment", "operating"}


class TestValidateSecrets:
    def test_development_without_keys_only_warns(self, caplog):
        s = Settings(environment="development", mercury_api_keys={})
        with caplog.at_level(logging.WARNING, logger="portal.config"):
            _validate_secrets(s)
        assert "MERCURY_API_KEYS is empty" in caplog.text

    def test_production_without_keys_exits(self):
        s = Settings(environment="production", mercury_api_keys={})
        with pytest.raises(SystemExit):
            _validate_secrets(s)

    def test_production_with_partial_keys_starts(self, caplog):
        s = Settings(environment="production", mercury_api_keys={"myte": SecretStr("secret-token:myte-1")})
        with caplog.at_level(logging.WARNING, logger="portal.config"):
            _validate_secrets(s)

    def test_unknown_credential_ref_warns(self, caplog):
        s = Settings(mercury_api_keys={"nobody": SecretStr("secret-token:x-123456")})
        with caplog.at_level(logging.WARNING, logger="portal.config"):
            _validate_secrets(s)
        assert "unknown credential_ref 'nobody'" in caplog.text
