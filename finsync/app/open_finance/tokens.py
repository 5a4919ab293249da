"""
Token Lifecycle Manager

The provider uses two short-lived credentials:
- API key: obtained from client id/secret via POST /auth, used for every data pull
- Connect token: obtained with the API key via POST /connect_token, handed to
  the client-side linking widget only

Both are cached on the manager instance with their expiry. One manager belongs
to one provider instance, which is built per user, so cached tokens never
cross tenants.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import ValidationError

from .exceptions import AuthenticationError, InvalidCredentialsError, ParseError, ProviderError
from .providers.payloads import (
    AuthResponse, ConnectTokenOptions, ConnectTokenResponse, ProviderCredentials
)
from .transport import USER_AGENT, SlidingWindowRateLimiter, parse_response_body

logger = logging.getLogger(__name__)


@dataclass
class CachedToken:
    value: str
    expires_at: float
    cache_key: Optional[str] = None


class TokenManager:
    """
    Exchange long-lived credentials for short-lived tokens and keep them fresh.

    A cached token is reused while more than ``refresh_buffer`` seconds of its
    lifetime remain; past that point the next call re-authenticates before
    returning.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        api_key_ttl: int = 7200,
        connect_token_ttl: int = 1800,
        refresh_buffer: int = 300,
        clock: Callable[[], float] = time.time
    ):
        """
        Validate credentials and prepare an empty token cache.

        Args:
            client_id: Provider client id (UUID)
            client_secret: Provider client secret
            http_client: Client bound to the provider base URL
            limiter: Shared request limiter, if any
            api_key_ttl: Fallback API key lifetime when the provider omits expiresIn
            connect_token_ttl: Fallback connect token lifetime
            refresh_buffer: Seconds before expiry at which a token counts as stale
            clock: Wall-clock source (seconds)

        Raises:
            InvalidCredentialsError: Malformed client id or empty secret
        """
        try:
            self.credentials = ProviderCredentials(client_id=client_id or "", client_secret=client_secret or "")
        except ValidationError as e:
            messages = ", ".join(err["msg"] for err in e.errors())
            raise InvalidCredentialsError(f"Invalid provider credentials: {messages}") from e

        self.http_client = http_client
        self.limiter = limiter
        self.api_key_ttl = api_key_ttl
        self.connect_token_ttl = connect_token_ttl
        self.refresh_buffer = refresh_buffer
        self._clock = clock

        self._api_key: Optional[CachedToken] = None
        self._connect_token: Optional[CachedToken] = None
        self._auth_lock = asyncio.Lock()
        self.authentication_count = 0

    def _is_fresh(self, token: Optional[CachedToken]) -> bool:
        return token is not None and token.expires_at - self.refresh_buffer > self._clock()

    async def _post(self, endpoint: str, payload: Dict[str, Any], api_key: Optional[str] = None) -> httpx.Response:
        if self.limiter:
            self.limiter.acquire()

        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if api_key:
            headers["X-API-KEY"] = api_key

        try:
            return await self.http_client.post(endpoint, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ProviderError(f"Could not reach provider {endpoint}: {e}") from e

    async def get_api_key(self) -> str:
        """
        Return a valid API key, authenticating if the cached one is stale.

        Raises:
            AuthenticationError: Provider rejected the credentials
            ParseError: Unusable /auth response
            ProviderError: /auth could not be reached
        """
        if self._is_fresh(self._api_key):
            return self._api_key.value

        async with self._auth_lock:
            if self._is_fresh(self._api_key):
                return self._api_key.value
            return await self._authenticate()

    async def _authenticate(self) -> str:
        logger.info("Authenticating with provider using client credentials")
        response = await self._post(
            "/auth",
            {"clientId": self.credentials.client_id, "clientSecret": self.credentials.client_secret}
        )
        body = parse_response_body(response.text, "/auth")

        if not response.is_success:
            message = body.get("message") if isinstance(body, dict) else None
            logger.error(f"Provider authentication failed: {response.status_code} {message}")
            raise AuthenticationError(
                f"Authentication failed: {message or 'Unknown error'}",
                status_code=response.status_code
            )

        try:
            auth = AuthResponse.model_validate(body)
        except ValidationError as e:
            raise ParseError(f"Invalid /auth response format: {e}") from e

        expires_in = auth.expires_in or self.api_key_ttl
        self._api_key = CachedToken(auth.api_key, self._clock() + expires_in)
        self.authentication_count += 1
        logger.info(f"Obtained provider API key (expires in {expires_in} seconds)")
        return auth.api_key

    async def get_connect_token(self, options: Optional[ConnectTokenOptions] = None) -> str:
        """
        Return a connect token for the client-side linking widget.

        A cached token is reused only for identical options.

        Args:
            options: Connect token options (client user id, webhook URL, ...)

        Returns:
            Connect token string

        Raises:
            AuthenticationError: Credentials rejected, or 401 twice in a row
        """
        options = options or ConnectTokenOptions()
        body_payload = options.to_request_body()
        cache_key = repr(sorted(body_payload.items()))

        if self._is_fresh(self._connect_token) and self._connect_token.cache_key == cache_key:
            return self._connect_token.value

        for attempt in range(2):
            api_key = await self.get_api_key()
            response = await self._post("/connect_token", body_payload, api_key=api_key)

            if response.status_code == 401 and attempt == 0:
                logger.info("Connect token request got 401, refreshing tokens and retrying once")
                self.invalidate()
                continue

            body = parse_response_body(response.text, "/connect_token")
            if not response.is_success:
                message = body.get("message") if isinstance(body, dict) else None
                raise AuthenticationError(
                    f"Connect token creation failed: {message or 'Unknown error'}",
                    status_code=response.status_code
                )

            try:
                token = ConnectTokenResponse.model_validate(body)
            except ValidationError as e:
                raise ParseError(f"Invalid /connect_token response format: {e}") from e

            expires_in = token.expires_in or self.connect_token_ttl
            self._connect_token = CachedToken(token.token, self._clock() + expires_in, cache_key)
            logger.info(f"Created connect token (expires in {expires_in} seconds)")
            return token.token

        raise AuthenticationError("Connect token creation failed after token refresh", status_code=401)

    def invalidate(self) -> None:
        """Drop both cached tokens."""
        self._api_key = None
        self._connect_token = None

    def status(self) -> Dict[str, Any]:
        return {
            "has_api_key": self._api_key is not None,
            "has_connect_token": self._connect_token is not None,
            "api_key_expires_at": self._api_key.expires_at if self._api_key else None,
            "connect_token_expires_at": self._connect_token.expires_at if self._connect_token else None,
        }
