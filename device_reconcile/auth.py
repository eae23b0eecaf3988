"""
Bearer token providers for Microsoft Graph.

The interactive delegated login is not handled here; an operator who used it
can hand the resulting token over through GRAPH_ACCESS_TOKEN.
"""

import logging
import threading
import time

import requests

from .errors import AuthenticationError, ConfigurationError

logger = logging.getLogger(__name__)

GRAPH_SCOPE = 'https://graph.microsoft.com/.default'
# Refresh this many seconds before the advertised expiry
EXPIRY_SKEW = 300


class TokenProvider:
    def get_token(self):
        raise NotImplementedError

    def headers(self):
        """Get headers for Graph API requests"""
        return {
            'Authorization': f'Bearer {self.get_token()}',
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        }


class StaticTokenProvider(TokenProvider):
    def __init__(self, token):
        if not token:
            raise ConfigurationError('An access token is required')
        self.token = token

    def get_token(self):
        return self.token


class ClientCredentialsTokenProvider(TokenProvider):
    """App-only token via the OAuth client credentials grant, cached until near expiry"""

    def __init__(self, tenant_id, client_id, client_secret, session=None,
                 authority='https://login.microsoftonline.com', timeout=30, clock=time.time):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.session = session or requests.Session()
        self.authority = authority.rstrip('/')
        self.timeout = timeout
        self.clock = clock
        self._token = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    @property
    def token_url(self):
        return f"{self.authority}/{self.tenant_id}/oauth2/v2.0/token"

    def get_token(self):
        with self._lock:
            if self._token and self.clock() < self._expires_at:
                return self._token
            self._token, self._expires_at = self._request_token()
            return self._token

    def _request_token(self):
        data = {
            'grant_type': 'client_credentials',
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'scope': GRAPH_SCOPE,
        }
        headers = {
            'Accept': 'application/json',
            'Content-Type': 'application/x-www-form-urlencoded',
        }
        logger.debug(f"Requesting token from {self.token_url}")

        try:
            resp = self.session.post(self.token_url, data=data, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise AuthenticationError(f"Token request failed: {str(e)}") from e

        logger.debug(f"Token request status code: {resp.status_code}")
        if resp.status_code != 200:
            try:
                detail = resp.json().get('error_description') or resp.text
            except ValueError:
                detail = resp.text
            raise AuthenticationError(f"Failed to get token: {resp.status_code} {detail}")

        payload = resp.json()
        token = payload.get('access_token')
        if not token:
            raise AuthenticationError('Token response did not contain an access_token')

        expires_in = float(payload.get('expires_in', 3600))
        logger.info(f"Obtained Graph token (expires in {int(expires_in)}s)")
        return token, self.clock() + max(expires_in - EXPIRY_SKEW, 0)


def token_provider_from_settings(settings, session=None):
    """Prefer a pre-issued token, fall back to client credentials"""
    if settings.access_token:
        return StaticTokenProvider(settings.access_token)
    if settings.has_client_credentials:
        return ClientCredentialsTokenProvider(
            settings.tenant_id,
            settings.client_id,
            settings.client_secret,
            session=session,
            authority=settings.authority,
            timeout=settings.timeout,
        )
    raise ConfigurationError('No Graph credentials configured')
