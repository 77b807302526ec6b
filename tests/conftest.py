import pytest

ENV_KEYS = (
    "APP_ENV",
    "APP_HOST",
    "APP_PORT",
    "KEYCLOAK_ISSUER",
    "KEYCLOAK_CLIENT_ID",
    "KEYCLOAK_CLIENT_SECRET",
    "KEYCLOAK_EXPIRE_IN",
    "SESSION_COOKIE_NAME",
    "SESSION_COOKIE_SECURE",
    "OIDC_AUTO_SIGNIN",
    "REDIS_URL",
    "SESSIONGATE_DEBUG",
)


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch
