import pytest
from pydantic import ValidationError

from authgate.config import Settings, check_rp_binding


def make(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestNormalization:
    def test_origin_is_normalized(self):
        s = make(ORIGIN="  HTTPS://Insights.Example.com:8443/ ", RP_ID="example.com")
        assert s.ORIGIN == "https://insights.example.com:8443"

    def test_origin_requires_scheme(self):
        with pytest.raises(ValidationError):
            make(ORIGIN="insights.example.com")

    def test_rp_id_accepts_full_url(self):
        assert make(RP_ID="https://Example.com/path").RP_ID == "example.com"

    def test_rp_id_rejects_port(self):
        with pytest.raises(ValidationError):
            make(RP_ID="example.com:443")

    def test_labels_from_comma_separated_env(self, monkeypatch):
        monkeypatch.setenv("ALLOWED_LABELS", "builder, patron,,explorer ")

        s = Settings(_env_file=None)

        assert s.allowed_labels == frozenset({"builder", "patron", "explorer"})

    def test_allowed_labels_are_immutable(self):
        assert isinstance(make().allowed_labels, frozenset)

    def test_urls_lose_trailing_slash(self):
        s = make(UPSTREAM_URL="http://ghost:2368/", SSO_PROVIDER_URL="https://sso.example/")
        assert s.UPSTREAM_URL == "http://ghost:2368"
        assert s.SSO_PROVIDER_URL == "https://sso.example"


class TestDerived:
    def test_production_flag(self):
        assert make(ENVIRONMENT="Production").is_production is True
        assert make(ENVIRONMENT="development").is_production is False

    def test_sso_secret_falls_back_to_session_secret(self):
        assert make(SESSION_SECRET="s1").sso_token_secret == "s1"
        assert make(SESSION_SECRET="s1", SSO_TOKEN_SECRET="s2").sso_token_secret == "s2"


class TestRpBinding:
    def test_subdomain_is_accepted(self):
        check_rp_binding(make(ORIGIN="https://insights.example.com", RP_ID="example.com"))

    def test_unrelated_host_is_rejected(self):
        with pytest.raises(ValueError):
            check_rp_binding(make(ORIGIN="https://evil-example.com", RP_ID="example.com"))

    def test_binding_check_can_be_disabled(self):
        check_rp_binding(make(ORIGIN="https://a.test", RP_ID="b.test", STRICT_RP_BINDING=False))

    def test_cors_origins_default_to_sso_provider(self):
        assert make(SSO_PROVIDER_URL="https://sso.example/").cors_origins == ["https://sso.example"]

    def test_cors_origins_from_comma_separated_env(self, monkeypatch):
        monkeypatch.setenv("CORS_ORIGINS", "https://a.example/, https://b.example")

        s = Settings(_env_file=None)

        assert s.cors_origins == ["https://a.example", "https://b.example"]


def test_module_holds_no_eager_settings_instance():
    import authgate.config

    assert not hasattr(authgate.config, "settings")
