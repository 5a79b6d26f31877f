"""Browser login for the server's default Google credential.

Runs a one-shot loopback OAuth flow against Google and yields a refresh
token suitable for GOOGLE_REFRESH_TOKEN. Sessions that arrive without a
bearer token (or every session, with OAuth disabled) use that credential.
"""
import logging
import secrets
import socket
import webbrowser
from http.server import HTTPServer, BaseHTTPRequestHandler
from pathlib import Path
from urllib.parse import urlparse, parse_qs

import requests
from dotenv import set_key

from oauth.upstream import GOOGLE_TOKEN_URL, GoogleOAuthProvider

logger = logging.getLogger(__name__)

LOGIN_TIMEOUT_SECONDS = 300


class LoginError(Exception):
    """The browser login did not produce a refresh token."""


class CallbackHandler(BaseHTTPRequestHandler):
    """Receives Google's redirect on the loopback port."""

    def log_message(self, format, *args):
        pass

    def do_GET(self):
        parsed = urlparse(self.path)
        if parsed.path != "/callback":
            self.send_error(404)
            return

        params = parse_qs(parsed.query)
        error = params.get("error", [None])[0]
        code = params.get("code", [None])[0]
        state = params.get("state", [None])[0]

        if error:
            self.server.login_error = error
            self._send_response("Login failed. You can close this window.")
        elif not code or state != self.server.expected_state:
            self.server.login_error = "Missing code or state mismatch"
            self._send_response("Login failed. Please try again.")
        else:
            self.server.login_code = code
            self._send_response("Login successful! You can close this window.")

    def _send_response(self, message: str):
        body = message.encode()
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


class LoginServer(HTTPServer):
    """Loopback server that stops waiting after its timeout."""

    def handle_timeout(self):
        self.login_error = "Timed out waiting for the browser"


def find_free_port() -> int:
    """Find an available port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def open_browser(url: str) -> None:
    """Open URL in browser; the URL is printed as well in case this fails."""
    try:
        webbrowser.open(url)
    except webbrowser.Error as e:
        logger.debug(f"[LOGIN] Could not open browser: {e}")


def login_provider(client_id: str, client_secret: str, redirect_uri: str,
                   scopes: list[str]) -> GoogleOAuthProvider:
    """Google provider bound to the loopback redirect URI."""
    return GoogleOAuthProvider(client_id, client_secret, redirect_uri, scopes)


def exchange_code(client_id: str, client_secret: str, code: str, redirect_uri: str,
                  token_url: str = GOOGLE_TOKEN_URL) -> dict:
    """Trade the authorization code for Google tokens."""
    try:
        response = requests.post(
            token_url,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": client_id,
                "client_secret": client_secret,
            },
            timeout=30,
        )
    except requests.RequestException as e:
        raise LoginError(f"Network error: {e}") from e

    try:
        data = response.json()
    except ValueError:
        data = {}
    if response.status_code != 200:
        raise LoginError(data.get("error_description") or data.get("error") or f"HTTP {response.status_code}")
    if not data.get("refresh_token"):
        raise LoginError("Google returned no refresh token")
    return data


def save_refresh_token(refresh_token: str, env_file: Path = Path(".env")) -> None:
    """Write GOOGLE_REFRESH_TOKEN into the .env file, replacing any previous value."""
    env_file.touch(mode=0o600, exist_ok=True)
    set_key(str(env_file), "GOOGLE_REFRESH_TOKEN", refresh_token)


def run_login_flow(client_id: str, client_secret: str, scopes: list[str],
                   timeout: float = LOGIN_TIMEOUT_SECONDS) -> str:
    """Run the browser flow and return the refresh token."""
    port = find_free_port()
    redirect_uri = f"http://127.0.0.1:{port}/callback"
    state = secrets.token_urlsafe(16)

    server = LoginServer(("127.0.0.1", port), CallbackHandler)
    server.expected_state = state
    server.login_code = None
    server.login_error = None
    server.timeout = timeout

    provider = login_provider(client_id, client_secret, redirect_uri, scopes)
    url = provider.authorization_url(state)
    print("\nOpening browser for Google login...")
    print(f"If the browser doesn't open, visit:\n  {url}\n")
    open_browser(url)

    print("Waiting for login...", flush=True)
    try:
        while server.login_code is None and server.login_error is None:
            server.handle_request()
    finally:
        server.server_close()

    if server.login_error:
        raise LoginError(server.login_error)

    tokens = exchange_code(client_id, client_secret, server.login_code, redirect_uri,
                           token_url=provider.token_url)
    return tokens["refresh_token"]

