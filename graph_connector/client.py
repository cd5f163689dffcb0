"""
HTTP transport for Microsoft Graph.

This module owns everything below the processors: TLS context setup, OAuth2
client-credentials token handling, JSON request/response handling, retries
of transient failures and following @odata.nextLink pages.
"""

import json
import ssl
import time
import logging
import threading
from typing import Any, Dict, Iterator, List, Optional, Union
from urllib.parse import quote, urlencode, urlparse
from http.client import HTTPConnection, HTTPSConnection

from cryptography.hazmat.primitives.serialization import Encoding, pkcs12

from graph_connector.exceptions import (
    GraphAPIError,
    GraphAuthenticationError,
    GraphObjectNotFoundError,
)
from graph_connector.retry import (
    create_retry_callback,
    is_replayable_error,
    is_retryable_error,
    retry_call,
    retry_settings,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = 'https://graph.microsoft.com/v1.0'
DEFAULT_SCOPE = 'https://graph.microsoft.com/.default'
TOKEN_URL_TEMPLATE = 'https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token'
DEFAULT_TIMEOUT = 30
TOKEN_EXPIRY_BUFFER_SECONDS = 60


class GraphClient:
    """
    Thread-safe Microsoft Graph client.

    Each thread gets its own HTTP connection; the access token is shared and
    refreshed under a lock when it is about to expire or Graph returns 401.
    """

    def __init__(self, config: Dict[str, Any], error_handling: Optional[Dict[str, Any]] = None):
        """
        Initialize Graph client.

        Args:
            config: The 'graph' configuration section
            error_handling: The 'error_handling' configuration section
        """
        self.config = config
        self.tenant_id = config['tenant_id']
        self.client_id = config['client_id']
        self.client_secret = config['client_secret']
        self.base_url = config.get('base_url', DEFAULT_BASE_URL).rstrip('/')
        self.token_url = config.get('token_url') or TOKEN_URL_TEMPLATE.format(tenant_id=self.tenant_id)
        self.scope = config.get('scope', DEFAULT_SCOPE)
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', DEFAULT_TIMEOUT)
        self.retry_options = retry_settings(error_handling)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.ssl_context = self._build_ssl_context()

        self._local = threading.local()
        self._connections: List[Union[HTTPSConnection, HTTPConnection]] = []
        self._connections_lock = threading.Lock()

        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def _build_ssl_context(self) -> ssl.SSLContext:
        """TLS context for Graph and the token endpoint, honouring verify_ssl and truststore_file."""
        if not self.verify_ssl:
            logger.warning(f"Certificate verification disabled for {self.host}")
            return ssl._create_unverified_context()

        context = ssl.create_default_context()
        truststore = self.config.get('truststore_file')
        if not truststore:
            return context

        kind = str(self.config.get('truststore_type', 'PEM')).upper()
        try:
            if kind == 'PEM':
                context.load_verify_locations(cafile=truststore)
            elif kind == 'PKCS12':
                context.load_verify_locations(cadata=self._pkcs12_ca_bundle(truststore))
            else:
                raise GraphAPIError(f"Unsupported truststore type: {kind}")
        except GraphAPIError:
            raise
        except (OSError, ValueError, ssl.SSLError) as e:
            logger.error(f"Cannot load {kind} truststore {truststore}: {e}")
            raise GraphAPIError(f"Truststore loading failed: {e}")

        logger.info(f"Trusting CA certificates from {truststore} ({kind})")
        return context

    def _pkcs12_ca_bundle(self, path: str) -> str:
        """Concatenate every certificate of a PKCS12 store into one PEM string."""
        password = self.config.get('truststore_password')
        with open(path, 'rb') as store:
            _, leaf, chain = pkcs12.load_key_and_certificates(
                store.read(), password.encode() if password else None
            )

        certificates = ([leaf] if leaf else []) + list(chain or [])
        if not certificates:
            raise GraphAPIError(f"No certificates found in {path}")
        return '\n'.join(cert.public_bytes(Encoding.PEM).decode('ascii') for cert in certificates)

    # Authentication

    def authenticate(self, force: bool = False) -> str:
        """
        Return a valid access token, requesting a new one when needed.

        Args:
            force: Request a new token even if the cached one is still valid

        Raises:
            GraphAuthenticationError: If the token endpoint rejects the request
        """
        with self._token_lock:
            if not force and self._token and time.time() < self._token_expires_at:
                return self._token

            self._token, expires_in = self._request_token()
            self._token_expires_at = time.time() + int(expires_in) - TOKEN_EXPIRY_BUFFER_SECONDS
            logger.info(f"Obtained Graph access token for tenant {self.tenant_id}")
            return self._token

    def _request_token(self):
        """Run the OAuth2 client credentials flow against the token endpoint."""
        parsed_token_url = urlparse(self.token_url)
        token_conn = self._new_connection(parsed_token_url.scheme, parsed_token_url.netloc)

        token_body = urlencode({
            'grant_type': 'client_credentials',
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'scope': self.scope,
        })
        token_headers = {
            'Content-Type': 'application/x-www-form-urlencoded',
            'Accept': 'application/json'
        }

        try:
            logger.debug(f"Requesting OAuth2 token from {parsed_token_url.netloc}")
            token_conn.request('POST', parsed_token_url.path or '/', token_body, token_headers)
            response = token_conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (ConnectionError, OSError) as e:
            raise GraphAuthenticationError(f"Token request failed: {e}")
        finally:
            token_conn.close()

        if response.status != 200:
            raise GraphAuthenticationError(
                self._error_message(response_data) or response.reason,
                response.status, parsed_token_url.path
            )

        try:
            token_response = json.loads(response_data)
        except json.JSONDecodeError as e:
            raise GraphAuthenticationError(f"Invalid JSON in token response: {e}")

        access_token = token_response.get('access_token')
        if not access_token:
            raise GraphAuthenticationError("Token response missing access_token")
        return access_token, token_response.get('expires_in', 3600)

    # Connections

    def _new_connection(self, scheme: str, netloc: str) -> Union[HTTPSConnection, HTTPConnection]:
        if scheme == 'https':
            return HTTPSConnection(netloc, context=self.ssl_context, timeout=self.timeout)
        return HTTPConnection(netloc, timeout=self.timeout)

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create the calling thread's HTTP connection."""
        connection = getattr(self._local, 'connection', None)
        if connection is not None:
            return connection

        connection = self._new_connection(self.parsed_url.scheme, self.host)
        self._local.connection = connection
        with self._connections_lock:
            self._connections.append(connection)
        return connection

    def _drop_connection(self):
        connection = getattr(self._local, 'connection', None)
        if connection is None:
            return
        self._local.connection = None
        with self._connections_lock:
            if connection in self._connections:
                self._connections.remove(connection)
        try:
            connection.close()
        except Exception as e:
            logger.warning(f"Error closing connection to {self.host}: {e}")

    def close(self):
        """Close every HTTP connection opened by this client."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for connection in connections:
            try:
                connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection to {self.host}: {e}")
        self._local = threading.local()

    # Requests

    def build_path(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        """Build a request path below the API base path, with OData-safe query encoding."""
        full_path = f"{self.base_path}/{path.lstrip('/')}"
        if params:
            full_path += '?' + urlencode(params, quote_via=quote, safe="$,'()/")
        return full_path

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                params: Optional[Dict[str, Any]] = None,
                headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        Make a request to Microsoft Graph.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE)
            path: API path relative to base_url
            body: JSON request body
            params: Query parameters
            headers: Additional headers

        Returns:
            Parsed JSON response ({} for empty bodies)

        Raises:
            GraphAPIError: If the request fails after retries
        """
        return self._request_full_path(method, self.build_path(path, params), body, headers)

    def _request_full_path(self, method: str, full_path: str, body: Optional[Dict] = None,
                           headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        return retry_call(
            self._send, (method, full_path, body, headers),
            exceptions=(GraphAPIError,),
            should_retry=is_replayable_error if method.upper() == 'POST' else is_retryable_error,
            on_retry=create_retry_callback(f"{method} {full_path}"),
            **self.retry_options
        )

    def _send(self, method: str, full_path: str, body: Optional[Dict],
              headers: Optional[Dict[str, str]]) -> Dict[str, Any]:
        request_body = json.dumps(body) if body is not None else None

        for auth_attempt in range(2):
            request_headers = {
                'Authorization': f"Bearer {self.authenticate(force=auth_attempt > 0)}",
                'Accept': 'application/json',
            }
            if request_body is not None:
                request_headers['Content-Type'] = 'application/json'
            if headers:
                request_headers.update(headers)

            logger.debug(f"{method} {self.host}{full_path}")
            sent = False
            try:
                conn = self._get_connection()
                conn.request(method, full_path, request_body, request_headers)
                sent = True
                response = conn.getresponse()
                response_data = response.read().decode('utf-8')
            except (ConnectionError, OSError) as e:
                self._drop_connection()
                raise GraphAPIError(f"Connection error to {self.host}: {e}", endpoint=full_path,
                                    request_sent=sent)
            except Exception as e:
                self._drop_connection()
                raise GraphAPIError(f"Request failed for {self.host}: {e}", endpoint=full_path,
                                    request_sent=sent)

            logger.debug(f"Response status: {response.status} {response.reason}")

            if response.status == 401 and auth_attempt == 0:
                logger.info("401 received from Graph, refreshing access token")
                continue

            if response.status >= 400:
                message = self._error_message(response_data) or response.reason
                if response.status == 401:
                    raise GraphAuthenticationError(message, response.status, full_path)
                if response.status == 404:
                    raise GraphObjectNotFoundError(message, response.status, full_path)
                raise GraphAPIError(message, response.status, full_path)

            if not response_data:
                return {}
            try:
                return json.loads(response_data)
            except json.JSONDecodeError as e:
                raise GraphAPIError(f"Invalid JSON response from {self.host}: {e}", response.status, full_path)

        raise GraphAuthenticationError("Authentication failed after token refresh", 401, full_path)

    @staticmethod
    def _error_message(response_data: str) -> str:
        """Extract the message from a Graph or token-endpoint error body."""
        try:
            payload = json.loads(response_data)
        except (json.JSONDecodeError, TypeError):
            return response_data or ''
        if not isinstance(payload, dict):
            return response_data
        error = payload.get('error')
        if isinstance(error, dict):
            return f"{error.get('code', '')}: {error.get('message', '')}".strip(': ')
        return payload.get('error_description') or str(error or response_data)

    def iter_collection(self, path: str, params: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
        """
        Yield every item of a Graph collection, fetching pages lazily.

        The next page is only requested once the consumer has taken every item
        of the current one, so closing the generator stops further fetches.
        """
        response = self.request('GET', path, params=params)
        while True:
            for item in response.get('value', []):
                yield item

            next_link = response.get('@odata.nextLink')
            if not next_link:
                return
            parsed = urlparse(next_link)
            next_path = parsed.path + (f"?{parsed.query}" if parsed.query else '')
            logger.debug(f"Fetching next page {next_path}")
            response = self._request_full_path('GET', next_path)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
