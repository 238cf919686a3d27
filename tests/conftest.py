"""Shared fixtures: an OAuth client file, an isolated store, and fake Google endpoints."""

import asyncio
import json
import socket
from urllib.parse import parse_qs, urlencode, urlsplit

import pytest

from google_sheets_mcp.config import SCOPES
from google_sheets_mcp.models import ClientRegistration, TokenGrant
from google_sheets_mcp.store import CredentialStore

CLIENT_SECRETS = {
    "web": {
        "client_id": "test-client.apps.googleusercontent.com",
        "client_secret": "test-secret",
        "redirect_uris": ["http://localhost:3000/oauth2callback"],
        "auth_uri": "https://accounts.google.com/o/oauth2/auth",
        "token_uri": "https://oauth2.googleapis.com/token",
    }
}


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path_factory, monkeypatch):
    """Run every test from an empty directory so fallback paths never find real files."""
    cwd = tmp_path_factory.mktemp("cwd")
    monkeypatch.chdir(cwd)
    return cwd


@pytest.fixture
def client_secrets_file(tmp_path):
    path = tmp_path / "google-oauth-key.json"
    path.write_text(json.dumps(CLIENT_SECRETS))
    return path


@pytest.fixture
def token_path(tmp_path):
    return tmp_path / "tokens" / "token.json"


@pytest.fixture
def store(client_secrets_file, token_path):
    return CredentialStore(client_secrets_file, token_path)


@pytest.fixture
def registration():
    return ClientRegistration.from_client_secrets(CLIENT_SECRETS)


@pytest.fixture
def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def make_grant(access_token="access-1", seconds=3600, refresh_token="refresh-1"):
    return TokenGrant.expiring_in(access_token, seconds, refresh_token=refresh_token, scopes=SCOPES)


class FakeOAuthClient:
    """Stands in for GoogleOAuthClient; records every call it receives."""

    def __init__(self, grant=None, exchange_error=None, refreshed=None, refresh_error=None):
        self.grant = grant or make_grant()
        self.exchange_error = exchange_error
        self.refreshed = refreshed
        self.refresh_error = refresh_error
        self.consent_requests = []
        self.exchanged = []
        self.refreshes = []

    def consent_url(self, redirect_uri):
        self.consent_requests.append(redirect_uri)
        query = urlencode({"redirect_uri": redirect_uri, "state": "state-1", "prompt": "consent"})
        return f"https://accounts.google.com/o/oauth2/auth?{query}", "state-1"

    def exchange_code(self, code, redirect_uri):
        self.exchanged.append((code, redirect_uri))
        if self.exchange_error is not None:
            raise self.exchange_error
        return self.grant

    def refresh(self, grant):
        self.refreshes.append(grant)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.refreshed


async def http_get(port, target, host="127.0.0.1"):
    """Minimal HTTP/1.1 GET returning (status, body text)."""
    reader, writer = await asyncio.open_connection(host, port)
    writer.write(f"GET {target} HTTP/1.1\r\nHost: localhost:{port}\r\n\r\n".encode("ascii"))
    await writer.drain()
    raw = await reader.read()
    writer.close()
    head, _, body = raw.partition(b"\r\n\r\n")
    status = int(head.split(b"\r\n", 1)[0].split()[1])
    return status, body.decode("utf-8", "replace")


class FakeBrowser:
    """
    Plays the user's browser: when handed the consent URL it requests the
    redirect URI with the query built by ``respond(state)``.
    """

    def __init__(self, respond=None):
        self.respond = respond or (lambda state: {"code": "auth-code", "state": state})
        self.urls = []
        self.task = None

    def __call__(self, url):
        self.urls.append(url)
        params = parse_qs(urlsplit(url).query)
        redirect = urlsplit(params["redirect_uri"][0])
        query = urlencode(self.respond(params["state"][0]))
        self.task = asyncio.get_running_loop().create_task(
            http_get(redirect.port, f"{redirect.path}?{query}")
        )
        return True
