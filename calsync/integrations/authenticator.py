"""OAuth credential lifecycle for one provider.

The authenticator builds authorization URLs, turns callback codes into
stored integrations, and keeps access tokens fresh. It holds a provider
adapter for the wire calls and a session for persistence.
"""
import logging
import uuid
from datetime import timedelta
from urllib.parse import urlencode

from sqlmodel import Session, col, select

from calsync.core.timeutil import Clock, to_utc, utcnow
from calsync.errors import AuthError, ErrorReason, IntegrationError
from calsync.integrations.base import ProviderAdapter
from calsync.integrations.cache import ResponseCache
from calsync.models import Integration, IntegrationStatus

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600


def _token_error(payload: dict) -> str | None:
    """Error message from a token endpoint payload, if it is an error."""
    if not payload.get("error"):
        return None
    return payload.get("error_description") or str(payload["error"])


class Authenticator:
    def __init__(
        self,
        session: Session,
        adapter: ProviderAdapter,
        cache: ResponseCache | None = None,
        refresh_buffer: timedelta = timedelta(minutes=5),
        now: Clock = utcnow,
    ):
        self.session = session
        self.adapter = adapter
        self.cache = cache
        self.refresh_buffer = refresh_buffer
        self.now = now

    @property
    def provider(self) -> str:
        return self.adapter.provider

    def get_auth_url(self, state: str | None = None) -> str:
        """Authorization URL the user is sent to. No I/O."""
        oauth = self.adapter.oauth_config
        params = {
            "client_id": oauth.client_id,
            "redirect_uri": oauth.redirect_uri,
            "response_type": "code",
            "scope": oauth.scope,
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{oauth.authorize_url}?{urlencode(params)}"

    def handle_auth_callback(self, user_id: int, code: str) -> Integration:
        """Exchange an authorization code and store the resulting integration.

        Reuses the user's active integration for this provider when there is
        one, so re-authorizing replaces tokens instead of adding a row.

        Raises:
            AuthError: The provider rejected the code or returned no token.
        """
        if not code:
            raise AuthError("Missing authorization code", provider=self.provider)

        try:
            payload = self.adapter.exchange_code(code)
        except IntegrationError as e:
            raise AuthError(
                f"Authorization code exchange failed: {e.message}",
                reason=ErrorReason.AUTH_FAILED,
                provider=self.provider,
            ) from e

        error = _token_error(payload)
        if error or not payload.get("access_token"):
            logger.warning(f"OAuth callback rejected for user {user_id} ({self.provider}): {error}")
            raise AuthError(
                f"Authorization failed: {error or 'no access token returned'}",
                provider=self.provider,
            )

        user_info = self._fetch_user_info(payload["access_token"])
        integration = self._create_or_update_integration(user_id, payload, user_info)

        if self.cache:
            self.cache.clear_by_prefix(self.cache.make_key(self.provider, integration.id, ""))

        logger.info(
            f"Stored {self.provider} integration {integration.id} for user {user_id}"
        )
        return integration

    def _fetch_user_info(self, access_token: str) -> dict:
        try:
            return self.adapter.get_user_info(access_token) or {}
        except IntegrationError as e:
            logger.warning(f"Could not fetch {self.provider} user info: {e}")
            return {}

    def _create_or_update_integration(self, user_id: int, payload: dict, user_info: dict) -> Integration:
        now = self.now()
        expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        email = user_info.get("email")
        name = f"{self.provider} ({email})" if email else self.provider

        integration = self.get_user_integration(user_id)
        if integration is None:
            integration = Integration(
                user_id=user_id,
                provider=self.provider,
                external_id=str(user_info.get("id") or f"{self.provider}_{uuid.uuid4().hex}"),
                name=name,
                access_token=payload["access_token"],
                created=now,
            )
        else:
            integration.access_token = payload["access_token"]
            integration.name = name

        if payload.get("refresh_token"):
            integration.refresh_token = payload["refresh_token"]
        integration.token_expiry = now + timedelta(seconds=expires_in)
        integration.scopes = payload.get("scope") or self.adapter.oauth_config.scope
        if email:
            integration.update_config(email=email)
        integration.status = IntegrationStatus.ACTIVE.value
        integration.updated = now

        self.session.add(integration)
        self.session.commit()
        self.session.refresh(integration)
        return integration

    def get_user_integration(self, user_id: int, integration_id: int | None = None) -> Integration | None:
        """Active integration for the user and this provider.

        With an explicit id the row must also belong to the user; otherwise
        the most recently created active row is returned.
        """
        if integration_id is not None:
            integration = self.session.get(Integration, integration_id)
            if (
                integration is None
                or integration.user_id != user_id
                or integration.provider != self.provider
                or not integration.is_active
            ):
                return None
            return integration

        return self.session.exec(
            select(Integration)
            .where(Integration.user_id == user_id)
            .where(Integration.provider == self.provider)
            .where(Integration.status == IntegrationStatus.ACTIVE.value)
            .order_by(col(Integration.created).desc(), col(Integration.id).desc())
        ).first()

    def needs_refresh(self, integration: Integration) -> bool:
        if integration.token_expiry is None:
            return True
        return to_utc(integration.token_expiry) <= self.now() + self.refresh_buffer

    def ensure_valid_token(self, integration: Integration) -> bool:
        """Refresh the access token if it expires within the buffer.

        Returns True when a refresh happened. The refresh is attempted once;
        on failure the integration's status is left as it was and the caller
        decides what to do.

        Raises:
            AuthError: No refresh token is stored, or the refresh failed.
        """
        if not self.needs_refresh(integration):
            return False
        self.refresh_access_token(integration)
        return True

    def refresh_access_token(self, integration: Integration) -> None:
        """Refresh unconditionally, exactly once. See :meth:`ensure_valid_token`."""
        context = {"integration_id": integration.id, "provider": integration.provider}
        if not integration.refresh_token:
            raise AuthError(
                "Access token expired and no refresh token is stored",
                reason=ErrorReason.NO_REFRESH_TOKEN,
                **context,
            )

        try:
            payload = self.adapter.refresh_token(integration)
        except IntegrationError as e:
            logger.error(f"Token refresh failed for integration {integration.id}: {e}")
            raise AuthError(
                f"Token refresh failed: {e.message}",
                provider_error=getattr(e, "provider_error", None),
                reason=ErrorReason.REFRESH_FAILED,
                **context,
            ) from e

        error = _token_error(payload)
        if error or not payload.get("access_token"):
            logger.error(f"Token refresh rejected for integration {integration.id}: {error}")
            raise AuthError(
                f"Token refresh rejected: {error or 'no access token returned'}",
                provider_error=payload.get("error"),
                reason=ErrorReason.REFRESH_FAILED,
                **context,
            )

        now = self.now()
        integration.access_token = payload["access_token"]
        integration.token_expiry = now + timedelta(seconds=int(payload.get("expires_in") or DEFAULT_EXPIRES_IN))
        if payload.get("refresh_token"):
            integration.refresh_token = payload["refresh_token"]
        integration.updated = now

        self.session.add(integration)
        self.session.commit()
        logger.info(f"Refreshed access token for integration {integration.id} ({integration.provider})")
