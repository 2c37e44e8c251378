"""Authorization code flow orchestration.

Produces the authorization URL handed to the login collaborator and turns
the redirect it captures back into an authorization code.
"""

from __future__ import annotations

import logging
import secrets
from urllib.parse import parse_qs, urlparse

from oidc_client.models.errors import (
    AuthorizationCallbackError,
    AuthorizationCancelled,
    AuthorizationError,
    StateValidationError,
)
from oidc_client.models.flow import AuthorizationResponse
from oidc_client.models.options import ClientOptions
from oidc_client.services.protocol import OIDCProtocolClient

logger = logging.getLogger(__name__)

# Provider error codes meaning the user backed out rather than something broke
_CANCELLATION_ERRORS = {"access_denied", "login_required", "consent_required"}

# 24 random bytes encode to 32 URL-safe characters
_STATE_BYTES = 24


class AuthorizationFlow:
    """Runs the front-channel half of the authorization code flow.

    Handles:
    - State parameter generation (CSRF protection)
    - Authorization URL construction
    - Callback URL parsing and validation
    """

    def __init__(self, protocol_client: OIDCProtocolClient):
        self._protocol = protocol_client

    def start(
        self,
        options: ClientOptions,
        extra_params: dict[str, str] | None = None,
    ) -> tuple[str, str]:
        """Start an authorization flow.

        Returns:
            Tuple of (authorization_url, state); keep the state for
            handle_callback
        """
        state = secrets.token_urlsafe(_STATE_BYTES)
        authorization_url = self._protocol.build_authorization_url(
            options, state=state, extra_params=extra_params
        )

        logger.info(f"Generated authorization URL for client {options.client_id}")
        return authorization_url, state

    def handle_callback(self, callback_url: str, expected_state: str) -> str:
        """Validate the redirect captured by the login collaborator.

        Args:
            callback_url: Full redirect URL, query string included
            expected_state: State returned by start()

        Returns:
            The authorization code

        Raises:
            StateValidationError: If the state is missing or does not match
            AuthorizationCancelled: If the user denied or abandoned the login
            AuthorizationError: If the provider reported another error
            AuthorizationCallbackError: If the callback carries no code
        """
        logger.debug("Processing authorization callback")

        auth_response = self._parse_callback_url(callback_url)

        self._check_state(expected_state, auth_response.state)

        if auth_response.is_error():
            message = (
                f"Authorization failed: {auth_response.error} "
                f"({auth_response.error_description or ''})"
            )
            logger.warning(message)
            if auth_response.error in _CANCELLATION_ERRORS:
                raise AuthorizationCancelled(message)
            raise AuthorizationError(message)

        if not auth_response.is_success():
            raise AuthorizationCallbackError("Missing authorization code")

        logger.info("Authorization callback successful - received authorization code")
        return auth_response.code

    @staticmethod
    def _check_state(expected: str, received: str | None) -> None:
        if received is None:
            raise StateValidationError(
                "Authorization server callback missing required state parameter"
            )
        if not secrets.compare_digest(expected.encode(), received.encode()):
            raise StateValidationError("State parameter mismatch, possible CSRF attack")

    def _parse_callback_url(self, callback_url: str) -> AuthorizationResponse:
        try:
            parsed = urlparse(callback_url)
            query_params = parse_qs(parsed.query)
        except ValueError as e:
            raise AuthorizationCallbackError(
                f"Failed to parse callback URL: {e}"
            ) from e

        def get_single_param(key: str) -> str | None:
            values = query_params.get(key, [])
            return values[0] if values else None

        return AuthorizationResponse(
            code=get_single_param("code"),
            state=get_single_param("state"),
            error=get_single_param("error"),
            error_description=get_single_param("error_description"),
            error_uri=get_single_param("error_uri"),
        )
