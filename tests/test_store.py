import json
import os
import stat
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from google_sheets_mcp.errors import (
    GrantMalformed,
    PersistenceError,
    RegistrationMalformed,
    RegistrationNotFound,
)
from google_sheets_mcp.models import ClientRegistration, TokenGrant
from google_sheets_mcp.store import CredentialStore, candidate_paths, first_readable

from conftest import CLIENT_SECRETS, make_grant


def _failing_replace(src, dst):
    raise OSError("disk full")


# ---------------------------------------------------------------------------
# Candidate paths
# ---------------------------------------------------------------------------


class TestCandidatePaths:
    def test_configured_path_comes_first(self, isolated_cwd):
        paths = candidate_paths("keys/client.json", ("credentials.json",))
        assert paths[0] == Path("keys/client.json")
        assert Path(os.path.abspath(paths[-1])) == isolated_cwd.resolve() / "credentials.json"

    def test_duplicates_removed(self):
        paths = candidate_paths("credentials.json", ("credentials.json",))
        assert len(paths) == 1

    def test_fallbacks_only_when_unconfigured(self):
        paths = candidate_paths(None, ("google-oauth-key.json", "credentials.json"))
        assert [p.name for p in paths] == ["google-oauth-key.json", "credentials.json"]

    def test_first_readable_skips_missing_and_unparseable(self, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text("{not json")
        good = tmp_path / "good.json"
        good.write_text('{"ok": true}')

        found = first_readable([tmp_path / "missing.json", bad, good], parse=json.loads)

        assert found == (good, {"ok": True})

    def test_first_readable_none(self, tmp_path):
        assert first_readable([tmp_path / "missing.json"]) is None


# ---------------------------------------------------------------------------
# Client registration
# ---------------------------------------------------------------------------


class TestLoadRegistration:
    def test_web_client(self, store):
        reg = store.load_registration()
        assert reg.client_id == "test-client.apps.googleusercontent.com"
        assert reg.client_type == "web"
        assert reg.callback_path == "/oauth2callback"
        assert reg.redirect_uri_for(3002) == "http://localhost:3002/oauth2callback"

    def test_installed_client(self, tmp_path):
        path = tmp_path / "installed.json"
        path.write_text(json.dumps({"installed": {
            "client_id": "cid", "client_secret": "sec", "redirect_uris": ["http://localhost"],
        }}))
        reg = CredentialStore(path, tmp_path / "token.json").load_registration()
        assert reg.client_type == "installed"
        assert reg.callback_path == "/oauth2callback"
        assert reg.client_config()["installed"]["client_id"] == "cid"

    def test_fallback_name_in_working_directory(self, isolated_cwd, tmp_path):
        (isolated_cwd / "credentials.json").write_text(json.dumps(CLIENT_SECRETS))
        reg = CredentialStore(tmp_path / "nowhere.json", tmp_path / "token.json").load_registration()
        assert reg.client_secret == "test-secret"

    def test_not_found_lists_attempted_paths(self, tmp_path):
        store = CredentialStore(tmp_path / "missing.json", tmp_path / "token.json")
        with pytest.raises(RegistrationNotFound) as exc:
            store.load_registration()
        assert "missing.json" in str(exc.value)
        assert "credentials.json" in str(exc.value)
        assert len(exc.value.attempted) >= 3

    @pytest.mark.parametrize("data", [
        {"other": {}},
        {"web": {"client_id": "cid", "redirect_uris": ["http://localhost:3000/cb"]}},
        {"web": {"client_id": "cid", "client_secret": "sec", "redirect_uris": []}},
    ])
    def test_malformed(self, tmp_path, data):
        path = tmp_path / "client.json"
        path.write_text(json.dumps(data))
        with pytest.raises(RegistrationMalformed) as exc:
            CredentialStore(path, tmp_path / "token.json").load_registration()
        assert str(path) in str(exc.value)

    def test_custom_callback_path(self):
        reg = ClientRegistration.from_client_secrets({"web": {
            "client_id": "cid", "client_secret": "sec",
            "redirect_uris": ["http://localhost:3000/auth/callback"],
        }})
        assert reg.callback_path == "/auth/callback"


# ---------------------------------------------------------------------------
# Token grant
# ---------------------------------------------------------------------------


class TestGrantPersistence:
    def test_absent(self, store):
        assert store.load_grant() is None

    def test_save_and_load_equal(self, store):
        grant = make_grant()
        store.save_grant(grant)
        assert store.load_grant() == grant

    def test_saved_layout(self, store, token_path):
        store.save_grant(make_grant("abc", refresh_token="r"))
        data = json.loads(token_path.read_text())
        assert data["token"] == "abc"
        assert data["refresh_token"] == "r"
        assert datetime.fromisoformat(data["expiry"]).tzinfo is not None

    def test_file_permissions(self, store, token_path):
        store.save_grant(make_grant())
        mode = token_path.stat().st_mode
        # Owner read+write only
        assert mode & stat.S_IRUSR
        assert mode & stat.S_IWUSR
        assert not (mode & stat.S_IRGRP)
        assert not (mode & stat.S_IROTH)

    def test_reads_node_client_layout(self, store, token_path):
        expiry = datetime(2030, 1, 1, tzinfo=timezone.utc)
        token_path.parent.mkdir(parents=True)
        token_path.write_text(json.dumps({
            "access_token": "node-token",
            "refresh_token": "node-refresh",
            "scope": "https://www.googleapis.com/auth/spreadsheets https://www.googleapis.com/auth/drive",
            "token_type": "Bearer",
            "expiry_date": int(expiry.timestamp() * 1000),
        }))
        grant = store.load_grant()
        assert grant.access_token == "node-token"
        assert grant.expiry == expiry
        assert len(grant.scopes) == 2

    @pytest.mark.parametrize("content", [
        "{broken",
        json.dumps({"refresh_token": "r", "expiry": "2030-01-01T00:00:00+00:00"}),
        json.dumps({"token": "t"}),
        json.dumps({"token": "t", "expiry": "yesterday"}),
    ])
    def test_malformed(self, store, token_path, content):
        token_path.parent.mkdir(parents=True)
        token_path.write_text(content)
        with pytest.raises(GrantMalformed):
            store.load_grant()

    def test_interrupted_write_keeps_previous_grant(self, store, token_path, monkeypatch):
        previous = make_grant("old-token")
        store.save_grant(previous)

        monkeypatch.setattr("google_sheets_mcp.store.os.replace", _failing_replace)
        with pytest.raises(PersistenceError):
            store.save_grant(make_grant("new-token"))

        assert store.load_grant() == previous
        assert [p.name for p in token_path.parent.iterdir()] == ["token.json"]

    def test_interrupted_first_write_leaves_no_grant(self, store, monkeypatch):
        monkeypatch.setattr("google_sheets_mcp.store.os.replace", _failing_replace)
        with pytest.raises(PersistenceError):
            store.save_grant(make_grant())
        assert store.load_grant() is None

    def test_save_without_token_path(self, client_secrets_file):
        with pytest.raises(PersistenceError):
            CredentialStore(client_secrets_file, None).save_grant(make_grant())


class TestTokenGrant:
    def test_expires_within_margin(self):
        now = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
        grant = TokenGrant("t", expiry=now + timedelta(minutes=4))
        assert grant.expires_within(timedelta(minutes=5), now=now)
        assert not grant.expires_within(timedelta(minutes=3), now=now)

    def test_naive_expiry_treated_as_utc(self):
        grant = TokenGrant("t", expiry=datetime(2030, 1, 1, 0, 0))
        assert grant.expiry == datetime(2030, 1, 1, tzinfo=timezone.utc)

    def test_scopes_string_split_on_whitespace(self):
        grant = TokenGrant.from_dict({
            "token": "t",
            "expiry": "2030-01-01T00:00:00+00:00",
            "scopes": "https://www.googleapis.com/auth/spreadsheets https://www.googleapis.com/auth/drive",
        })
        assert grant.scopes == ("https://www.googleapis.com/auth/spreadsheets",
                                "https://www.googleapis.com/auth/drive")

    @pytest.mark.parametrize("scopes", [42, {"a": 1}, ["ok", 3]])
    def test_invalid_scopes(self, scopes):
        with pytest.raises(GrantMalformed):
            TokenGrant.from_dict({"token": "t", "expiry": "2030-01-01T00:00:00+00:00", "scopes": scopes})
