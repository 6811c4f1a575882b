"""
Google sign-in for the Drive Backup Tool.

Two steps, always in this order:

* ``IdentityBroker`` runs the browser consent screen and hands back the
  one-time authorization code Google redirects to a loopback listener.
* ``CredentialExchanger`` trades that code for user credentials at Google's
  token endpoint and binds them, together with a single Drive scope, into an
  ``AuthorizedClient`` for the storage layer.

Credentials are never written to disk: every run signs in again.
"""

import logging
import os
import re
import webbrowser
import wsgiref.simple_server
import wsgiref.util
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Optional
from urllib.parse import parse_qs, urlparse

from google.auth import jwt
from google.auth.exceptions import GoogleAuthError
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from oauthlib.oauth2.rfc6749.errors import OAuth2Error
from requests.exceptions import RequestException

from backup_errors import AuthFailed, InvalidAccount, ProviderError, UserCancelled
from verify_credentials import load_client_config

logger = logging.getLogger(__name__)

IDENTITY_SCOPES = ['openid', 'https://www.googleapis.com/auth/userinfo.email']
SUCCESS_MESSAGE = 'Sign-in complete. You may close this window and return to the terminal.'
EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

# Users may untick scopes on the consent screen; authorize() checks what was granted
os.environ.setdefault('OAUTHLIB_RELAX_TOKEN_SCOPE', '1')


class Scope(Enum):
    """Drive capabilities the tool may ask for."""
    DRIVE_FILE = 'https://www.googleapis.com/auth/drive.file'


@dataclass(frozen=True)
class IdentityAssertion:
    """Authorization code returned by the consent screen."""
    token: str
    email: Optional[str] = None
    state: Optional[str] = None


@dataclass(frozen=True)
class SessionCredential:
    """User credentials issued by the token endpoint."""
    credentials: object
    email: Optional[str]
    granted_scopes: FrozenSet[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class AuthorizedClient:
    """Drive v3 resource bound to one account and one scope."""
    account: str
    scope: Scope
    service: object


def requested_scopes(scope: Scope = Scope.DRIVE_FILE):
    """Scopes shown on the consent screen for the given storage capability."""
    return IDENTITY_SCOPES + [scope.value]


def load_flow(config, scope: Scope = Scope.DRIVE_FILE) -> InstalledAppFlow:
    """Build the OAuth flow shared by the broker and the exchanger."""
    client_config = load_client_config(config.client_secrets_file)
    return InstalledAppFlow.from_client_config(client_config, scopes=requested_scopes(scope))


class _RedirectApp:
    """WSGI app that remembers the consent redirect."""

    def __init__(self, message):
        self.last_request_uri = None
        self._message = message

    def __call__(self, environ, start_response):
        start_response('200 OK', [('Content-type', 'text/plain; charset=utf-8')])
        self.last_request_uri = wsgiref.util.request_uri(environ)
        return [self._message.encode('utf-8')]


class _QuietRequestHandler(wsgiref.simple_server.WSGIRequestHandler):
    def log_message(self, format, *args):
        logger.debug("consent receiver: " + format, *args)


class LoopbackReceiver:
    """One-shot HTTP listener on localhost that catches the consent redirect."""

    def __init__(self, host: str = 'localhost', port: int = 0, timeout: int = 300, open_browser: bool = True):
        self._app = _RedirectApp(SUCCESS_MESSAGE)
        self._server = wsgiref.simple_server.make_server(
            host, port, self._app, handler_class=_QuietRequestHandler
        )
        self._server.timeout = timeout
        self.open_browser = open_browser
        self.redirect_uri = f"http://{host}:{self._server.server_port}/"

    def wait(self, auth_url: str) -> Optional[str]:
        """Show the consent page and block until the redirect arrives or the timeout expires."""
        if self.open_browser:
            webbrowser.open(auth_url, new=1, autoraise=True)
        print("🌐 Sign in with your Google account to continue:")
        print(f"   {auth_url}")
        self._server.handle_request()
        return self._app.last_request_uri

    def close(self):
        self._server.server_close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class IdentityBroker:
    """Runs the interactive consent flow."""

    def __init__(self, flow, login_hint: Optional[str] = None, timeout: int = 300, port: int = 0,
                 open_browser: bool = True, receiver_factory=LoopbackReceiver):
        self.flow = flow
        self.login_hint = login_hint
        self.timeout = timeout
        self.port = port
        self.open_browser = open_browser
        self._receiver_factory = receiver_factory

    def request_identity(self) -> IdentityAssertion:
        """Obtain an identity assertion from the user, or raise UserCancelled/ProviderError."""
        try:
            with self._receiver_factory(port=self.port, timeout=self.timeout,
                                        open_browser=self.open_browser) as receiver:
                self.flow.redirect_uri = receiver.redirect_uri
                auth_url, state = self.flow.authorization_url(**self._authorization_params())
                logger.debug("Waiting for consent redirect on %s", receiver.redirect_uri)
                response_uri = receiver.wait(auth_url)
        except KeyboardInterrupt as e:
            raise UserCancelled("Sign-in interrupted by the user") from e
        except OSError as e:
            raise ProviderError(f"Could not start the local sign-in listener: {e}") from e

        if not response_uri:
            raise UserCancelled(f"No sign-in response within {self.timeout}s")

        return self._parse_response(response_uri, state)

    def _authorization_params(self):
        params = {'prompt': 'consent', 'access_type': 'online'}
        if self.login_hint:
            params['login_hint'] = self.login_hint
        return params

    def _parse_response(self, response_uri: str, state: Optional[str]) -> IdentityAssertion:
        params = parse_qs(urlparse(response_uri).query)

        error = params.get('error', [None])[0]
        if error == 'access_denied':
            raise UserCancelled("The consent screen was declined")
        if error:
            raise ProviderError(f"Identity provider returned an error: {error}")

        if params.get('state', [None])[0] != state:
            raise ProviderError("Sign-in response does not match this request (state mismatch)")

        code = params.get('code', [None])[0]
        if not code:
            raise ProviderError("Sign-in finished without an authorization code")

        return IdentityAssertion(token=code, email=self.login_hint, state=state)


def _email_from_id_token(id_token) -> Optional[str]:
    if not id_token:
        return None
    try:
        # Token came straight from the token endpoint over TLS
        claims = jwt.decode(id_token, verify=False)
    except (ValueError, GoogleAuthError) as e:
        logger.warning("Could not read id_token claims: %s", e)
        return None
    return claims.get('email')


def _granted_scopes(token) -> FrozenSet[str]:
    scope = token.get('scope') or []
    if isinstance(scope, str):
        scope = scope.split()
    return frozenset(scope)


class CredentialExchanger:
    """Exchanges assertions for session credentials and builds authorized clients."""

    def __init__(self, flow):
        self.flow = flow

    def exchange(self, assertion: IdentityAssertion) -> SessionCredential:
        """Make exactly one token-endpoint request for the assertion."""
        if assertion is None or not assertion.token:
            raise AuthFailed("No identity assertion to exchange")

        try:
            token = self.flow.fetch_token(code=assertion.token)
        except OAuth2Error as e:
            raise AuthFailed(f"Token endpoint rejected the assertion: {e}") from e
        except RequestException as e:
            raise AuthFailed(f"Could not reach the token endpoint: {e}") from e

        email = _email_from_id_token(token.get('id_token')) or assertion.email
        session = SessionCredential(
            credentials=self.flow.credentials,
            email=email,
            granted_scopes=_granted_scopes(token),
        )
        logger.info("Signed in as %s", email or "<unknown account>")
        return session

    def authorize(self, account: SessionCredential, scope: Scope) -> AuthorizedClient:
        """Bind an account and one Drive scope into a client. No network call."""
        if not isinstance(scope, Scope):
            raise TypeError(f"scope must be a Scope member, not {scope!r}")
        if account is None or account.credentials is None:
            raise InvalidAccount("No credentials for this account")
        if not account.email or not EMAIL_PATTERN.match(account.email):
            raise InvalidAccount(f"Malformed account email: {account.email!r}")
        if account.granted_scopes and scope.value not in account.granted_scopes:
            raise InvalidAccount(f"{account.email} did not grant {scope.name} access")

        service = build('drive', 'v3', credentials=account.credentials,
                        cache_discovery=False, static_discovery=True)
        return AuthorizedClient(account=account.email, scope=scope, service=service)
