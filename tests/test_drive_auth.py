# tests/test_drive_auth.py
import os
import threading
from typing import Any, Callable, List, Optional
from urllib.parse import parse_qs, urlparse

import pytest
import requests
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from oauthlib.oauth2.rfc6749.errors import InvalidGrantError
from requests.exceptions import ConnectionError as RequestsConnectionError

import drive_auth
from backup_errors import AuthFailed, InvalidAccount, ProviderError, UserCancelled
from drive_auth import (
    CredentialExchanger,
    IdentityAssertion,
    IdentityBroker,
    LoopbackReceiver,
    Scope,
    SessionCredential,
    load_flow,
    requested_scopes,
)
from drive_backup import BackupConfig
from tests.stubs import CLIENT_CONFIG, make_id_token

DRIVE_FILE = Scope.DRIVE_FILE.value


class _ReceiverStub:
    """Replaces the loopback listener: answers the consent URL with a canned redirect."""

    redirect_uri = "http://localhost:8765/"

    def __init__(self, respond: Callable[[dict], Optional[str]], **kwargs: Any):
        self._respond = respond
        self.kwargs = kwargs
        self.auth_urls: List[str] = []
        self.closed = False

    def wait(self, auth_url: str) -> Optional[str]:
        self.auth_urls.append(auth_url)
        return self._respond(parse_qs(urlparse(auth_url).query))

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True


def _broker(respond, **kwargs) -> tuple:
    receivers: List[_ReceiverStub] = []

    def factory(**factory_kwargs):
        receiver = _ReceiverStub(respond, **factory_kwargs)
        receivers.append(receiver)
        return receiver

    flow = InstalledAppFlow.from_client_config(CLIENT_CONFIG, scopes=requested_scopes())
    return IdentityBroker(flow, receiver_factory=factory, **kwargs), flow, receivers


def test_request_identity_returns_code_from_redirect():
    broker, flow, receivers = _broker(
        lambda q: f"http://localhost:8765/?code=tok123&state={q['state'][0]}",
        login_hint="a@example.com",
        timeout=30,
        open_browser=False,
    )

    assertion = broker.request_identity()

    assert assertion.token == "tok123"
    assert assertion.email == "a@example.com"
    assert flow.redirect_uri == _ReceiverStub.redirect_uri
    receiver = receivers[0]
    assert receiver.closed
    assert receiver.kwargs == {"port": 0, "timeout": 30, "open_browser": False}
    query = parse_qs(urlparse(receiver.auth_urls[0]).query)
    assert query["prompt"] == ["consent"]
    assert query["login_hint"] == ["a@example.com"]
    assert set(query["scope"][0].split()) == set(requested_scopes())


def test_declined_consent_is_user_cancelled():
    broker, _, _ = _broker(lambda q: f"http://localhost:8765/?error=access_denied&state={q['state'][0]}")

    with pytest.raises(UserCancelled):
        broker.request_identity()


def test_no_redirect_before_timeout_is_user_cancelled():
    broker, _, _ = _broker(lambda q: None, timeout=1)

    with pytest.raises(UserCancelled):
        broker.request_identity()


def test_interrupt_while_waiting_is_user_cancelled():
    def respond(_q):
        raise KeyboardInterrupt

    broker, _, receivers = _broker(respond)

    with pytest.raises(UserCancelled):
        broker.request_identity()
    assert receivers[0].closed


def test_provider_error_redirect():
    broker, _, _ = _broker(lambda q: f"http://localhost:8765/?error=server_error&state={q['state'][0]}")

    with pytest.raises(ProviderError):
        broker.request_identity()


def test_redirect_without_code_is_provider_error():
    broker, _, _ = _broker(lambda q: f"http://localhost:8765/?state={q['state'][0]}")

    with pytest.raises(ProviderError):
        broker.request_identity()


def test_state_mismatch_is_provider_error():
    broker, _, _ = _broker(lambda q: "http://localhost:8765/?code=tok123&state=forged")

    with pytest.raises(ProviderError):
        broker.request_identity()


def test_listener_that_cannot_bind_is_provider_error():
    def factory(**_kwargs):
        raise OSError(98, "Address already in use")

    flow = InstalledAppFlow.from_client_config(CLIENT_CONFIG, scopes=requested_scopes())
    broker = IdentityBroker(flow, receiver_factory=factory)

    with pytest.raises(ProviderError):
        broker.request_identity()


def test_load_flow_reads_client_secrets(client_secrets):
    flow = load_flow(BackupConfig(client_secrets_file=str(client_secrets)))

    assert isinstance(flow, InstalledAppFlow)
    assert flow.client_config["client_id"] == CLIENT_CONFIG["installed"]["client_id"]


def test_load_flow_without_client_secrets(tmp_path):
    with pytest.raises(ProviderError):
        load_flow(BackupConfig(client_secrets_file=str(tmp_path / "missing.json")))


class _FlowStub:
    """Token endpoint stand-in for CredentialExchanger."""

    def __init__(self, token: Optional[dict] = None, error: Optional[Exception] = None):
        self._token = token
        self._error = error
        self.calls: List[dict] = []
        self.credentials = Credentials(token="access-token", scopes=[DRIVE_FILE])

    def fetch_token(self, **kwargs: Any) -> dict:
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error
        return self._token


def test_exchange_makes_one_token_request():
    flow = _FlowStub(
        token={
            "access_token": "access-token",
            "id_token": make_id_token({"email": "a@example.com", "sub": "42"}),
            "scope": ["openid", DRIVE_FILE],
        }
    )

    session = CredentialExchanger(flow).exchange(IdentityAssertion(token="tok123"))

    assert flow.calls == [{"code": "tok123"}]
    assert session.email == "a@example.com"
    assert session.credentials is flow.credentials
    assert session.granted_scopes == frozenset({"openid", DRIVE_FILE})


def test_exchange_reads_space_separated_scopes():
    flow = _FlowStub(token={"access_token": "x", "scope": f"openid {DRIVE_FILE}"})

    session = CredentialExchanger(flow).exchange(IdentityAssertion(token="tok123", email="a@example.com"))

    assert session.granted_scopes == frozenset({"openid", DRIVE_FILE})
    assert session.email == "a@example.com"


def test_exchange_with_malformed_id_token_keeps_assertion_email():
    flow = _FlowStub(token={"access_token": "x", "id_token": "not-a-jwt"})

    session = CredentialExchanger(flow).exchange(IdentityAssertion(token="tok123", email="a@example.com"))

    assert session.email == "a@example.com"


def test_rejected_assertion_is_auth_failed_without_retry():
    flow = _FlowStub(error=InvalidGrantError(description="Bad Request"))

    with pytest.raises(AuthFailed) as excinfo:
        CredentialExchanger(flow).exchange(IdentityAssertion(token="expired"))

    assert "invalid_grant" in str(excinfo.value)
    assert len(flow.calls) == 1


def test_unreachable_token_endpoint_is_auth_failed():
    flow = _FlowStub(error=RequestsConnectionError("connection refused"))

    with pytest.raises(AuthFailed):
        CredentialExchanger(flow).exchange(IdentityAssertion(token="tok123"))
    assert len(flow.calls) == 1


def test_empty_assertion_is_auth_failed_without_request():
    flow = _FlowStub(token={"access_token": "x"})

    with pytest.raises(AuthFailed):
        CredentialExchanger(flow).exchange(IdentityAssertion(token=""))
    assert flow.calls == []


def test_relaxed_token_scope_is_set_on_import_only(monkeypatch):
    assert os.environ.get("OAUTHLIB_RELAX_TOKEN_SCOPE") == "1"
    monkeypatch.delenv("OAUTHLIB_RELAX_TOKEN_SCOPE")
    flow = _FlowStub(token={"access_token": "x", "scope": DRIVE_FILE})

    CredentialExchanger(flow).exchange(IdentityAssertion(token="tok123", email="a@example.com"))

    assert "OAUTHLIB_RELAX_TOKEN_SCOPE" not in os.environ


@pytest.fixture
def build_calls(monkeypatch):
    calls: List[tuple] = []

    def fake_build(*args, **kwargs):
        calls.append((args, kwargs))
        return "drive-service"

    monkeypatch.setattr(drive_auth, "build", fake_build)
    return calls


def _session(email="a@example.com", scopes=(DRIVE_FILE,)) -> SessionCredential:
    return SessionCredential(
        credentials=Credentials(token="access-token"),
        email=email,
        granted_scopes=frozenset(scopes),
    )


def test_authorize_binds_account_and_scope(build_calls):
    client = CredentialExchanger(_FlowStub()).authorize(_session(), Scope.DRIVE_FILE)

    assert client.account == "a@example.com"
    assert client.scope is Scope.DRIVE_FILE
    assert client.service == "drive-service"
    args, kwargs = build_calls[0]
    assert args == ("drive", "v3")
    assert kwargs["static_discovery"] is True


def test_authorize_accepts_unknown_granted_scopes(build_calls):
    client = CredentialExchanger(_FlowStub()).authorize(_session(scopes=()), Scope.DRIVE_FILE)

    assert client.account == "a@example.com"


@pytest.mark.parametrize("email", [None, "", "not-an-email", "a@b", "two@@example.com"])
def test_authorize_rejects_malformed_account(build_calls, email):
    with pytest.raises(InvalidAccount):
        CredentialExchanger(_FlowStub()).authorize(_session(email=email), Scope.DRIVE_FILE)
    assert build_calls == []


def test_authorize_rejects_missing_credentials(build_calls):
    account = SessionCredential(credentials=None, email="a@example.com")

    with pytest.raises(InvalidAccount):
        CredentialExchanger(_FlowStub()).authorize(account, Scope.DRIVE_FILE)
    assert build_calls == []


def test_authorize_rejects_scope_the_user_did_not_grant(build_calls):
    with pytest.raises(InvalidAccount):
        CredentialExchanger(_FlowStub()).authorize(_session(scopes=("openid",)), Scope.DRIVE_FILE)
    assert build_calls == []


def test_authorize_rejects_free_form_scope(build_calls):
    with pytest.raises(TypeError):
        CredentialExchanger(_FlowStub()).authorize(_session(), "https://www.googleapis.com/auth/drive")
    assert build_calls == []


def test_loopback_receiver_returns_redirect():
    with LoopbackReceiver(port=0, timeout=5, open_browser=False) as receiver:
        redirect = f"{receiver.redirect_uri}?code=abc&state=s1"
        responses = []
        browser = threading.Thread(target=lambda: responses.append(requests.get(redirect, timeout=5)))
        browser.start()

        response_uri = receiver.wait("https://accounts.example.com/consent")
        browser.join(timeout=5)

    query = parse_qs(urlparse(response_uri).query)
    assert query == {"code": ["abc"], "state": ["s1"]}
    assert responses[0].status_code == 200
    assert "Sign-in complete" in responses[0].text


def test_loopback_receiver_times_out_without_redirect():
    with LoopbackReceiver(port=0, timeout=1, open_browser=False) as receiver:
        assert receiver.redirect_uri.startswith("http://localhost:")
        assert receiver.wait("https://accounts.example.com/consent") is None
