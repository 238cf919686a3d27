import base64
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from google.auth.exceptions import DefaultCredentialsError

from google_sheets_mcp.config import OAuthSettings, Settings
from google_sheets_mcp.credentials import (
    CredentialResolver,
    DelegatedCredential,
    ServiceAccountCredential,
    describe_failure,
)
from google_sheets_mcp.errors import (
    AuthorizationRequired,
    NoCredentialsConfigured,
    StartupFailed,
    UserDeniedOrProviderError,
)
from google_sheets_mcp.refresh import RefreshFailed
from google_sheets_mcp.startup import StartupResult, StartupState

from conftest import make_grant


@pytest.fixture
def sa_info(monkeypatch):
    from_info = MagicMock(return_value=MagicMock(name="sa-credentials"))
    monkeypatch.setattr("google_sheets_mcp.credentials.service_account.Credentials.from_service_account_info",
                        from_info)
    return from_info


@pytest.fixture
def sa_file(monkeypatch):
    from_file = MagicMock(return_value=MagicMock(name="sa-file-credentials"))
    monkeypatch.setattr("google_sheets_mcp.credentials.service_account.Credentials.from_service_account_file",
                        from_file)
    return from_file


@pytest.fixture
def adc(monkeypatch):
    default = MagicMock(return_value=(MagicMock(name="adc-credentials"), "my-project"))
    monkeypatch.setattr("google_sheets_mcp.credentials.google.auth.default", default)
    return default


def _orchestrator(result=None, error=None):
    orchestrator = MagicMock()
    orchestrator.run = AsyncMock(return_value=result, side_effect=error)
    return orchestrator


def _not_configured():
    return StartupResult(StartupState.CONFIGURATION_ABSENT,
                         [StartupState.CHECKING_CONFIGURATION, StartupState.CONFIGURATION_ABSENT])


# ---------------------------------------------------------------------------
# Credential source selection
# ---------------------------------------------------------------------------


class TestCredentialResolver:
    def test_base64_service_account_first(self, sa_info, adc):
        info = {"type": "service_account", "client_email": "bot@example.iam.gserviceaccount.com"}
        settings = Settings(credentials_config=base64.b64encode(json.dumps(info).encode()).decode())
        orchestrator = _orchestrator(_not_configured())

        credential = CredentialResolver(settings, orchestrator).resolve()

        assert isinstance(credential, ServiceAccountCredential)
        assert credential.source == "service_account_config"
        assert sa_info.call_args.args[0] == info
        orchestrator.run.assert_not_called()

    def test_invalid_base64_config(self):
        settings = Settings(credentials_config="not base64!!")

        with pytest.raises(NoCredentialsConfigured):
            CredentialResolver(settings, _orchestrator(_not_configured())).resolve()

    def test_service_account_file(self, tmp_path, sa_file):
        key = tmp_path / "service_account.json"
        key.write_text("{}")
        settings = Settings(service_account_path=str(key))

        credential = CredentialResolver(settings, _orchestrator(_not_configured())).resolve()

        assert credential.source == "service_account_file"
        assert sa_file.call_args.args[0] == str(key)

    def test_missing_service_account_file_skipped(self, tmp_path, sa_file, adc):
        settings = Settings(service_account_path=str(tmp_path / "absent.json"))

        credential = CredentialResolver(settings, _orchestrator(_not_configured())).resolve()

        sa_file.assert_not_called()
        assert credential.source == "application_default"

    def test_delegated_when_startup_ready(self, registration, adc):
        grant = make_grant()
        result = StartupResult(StartupState.READY, [StartupState.READY], registration, grant)
        settings = Settings(service_account_path=None, oauth=OAuthSettings(credentials_path="c", token_path="t"))

        credential = CredentialResolver(settings, _orchestrator(result)).resolve()

        assert isinstance(credential, DelegatedCredential)
        assert credential.grant == grant
        assert credential.as_auth_header() == {"Authorization": f"Bearer {grant.access_token}"}
        adc.assert_not_called()

    def test_startup_failure_propagates(self, adc):
        error = StartupFailed("OAuth authorization failed")
        error.__cause__ = UserDeniedOrProviderError("access_denied")
        resolver = CredentialResolver(Settings(service_account_path=None), _orchestrator(error=error))

        with pytest.raises(StartupFailed) as exc:
            resolver.resolve()

        assert "access_denied" in describe_failure(exc.value)
        adc.assert_not_called()

    def test_nothing_configured(self, monkeypatch):
        monkeypatch.setattr("google_sheets_mcp.credentials.google.auth.default",
                            MagicMock(side_effect=DefaultCredentialsError("no ADC")))
        resolver = CredentialResolver(Settings(service_account_path=None), _orchestrator(_not_configured()))

        with pytest.raises(NoCredentialsConfigured) as exc:
            resolver.resolve()

        for variable in ("CREDENTIALS_CONFIG", "SERVICE_ACCOUNT_PATH", "CREDENTIALS_PATH", "TOKEN_PATH"):
            assert variable in str(exc.value)

    async def test_resolved_once(self, adc):
        orchestrator = _orchestrator(_not_configured())
        resolver = CredentialResolver(Settings(service_account_path=None), orchestrator)

        first = await resolver.aresolve()
        second = await resolver.aresolve()

        assert first is second
        assert resolver.credential is first
        orchestrator.run.assert_awaited_once()
        adc.assert_called_once()


# ---------------------------------------------------------------------------
# Delegated credential
# ---------------------------------------------------------------------------


class TestDelegatedCredential:
    def test_fresh_grant_not_refreshed(self, registration):
        refresher = MagicMock()
        credential = DelegatedCredential(make_grant("A", seconds=3600), registration, refresher)

        assert credential.as_auth_header() == {"Authorization": "Bearer A"}
        refresher.refresh.assert_not_called()

    def test_refreshes_inside_margin(self, registration):
        refresher = MagicMock()
        refresher.refresh.return_value = make_grant("A2", seconds=3600)
        credential = DelegatedCredential(make_grant("A", seconds=60), registration, refresher)

        assert credential.as_auth_header() == {"Authorization": "Bearer A2"}
        assert credential.grant.access_token == "A2"
        refresher.refresh.assert_called_once()

    def test_revoked_refresh_token(self, registration):
        refresher = MagicMock()
        refresher.refresh.return_value = RefreshFailed("invalid_grant")
        credential = DelegatedCredential(make_grant("A", seconds=-60), registration, refresher)

        with pytest.raises(AuthorizationRequired) as exc:
            credential.as_auth_header()

        assert "authorize" in str(exc.value)

    def test_services_rebuilt_after_refresh(self, registration, monkeypatch):
        build = MagicMock(side_effect=lambda name, version, **kw: MagicMock(name=f"{name}-{version}"))
        monkeypatch.setattr("google_sheets_mcp.credentials.build", build)
        refresher = MagicMock()
        credential = DelegatedCredential(make_grant("A", seconds=3600), registration, refresher)

        sheets = credential.service("sheets", "v4")
        assert credential.service("sheets", "v4") is sheets
        assert build.call_count == 1
        assert build.call_args.kwargs["credentials"].token == "A"

        credential.grant = make_grant("A", seconds=60)
        refresher.refresh.return_value = make_grant("A2", seconds=3600)

        assert credential.service("sheets", "v4") is not sheets
        assert build.call_args.kwargs["credentials"].token == "A2"
