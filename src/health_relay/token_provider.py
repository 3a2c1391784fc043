"""Device token acquisition from the relay API."""

import httpx
import structlog
from opentelemetry import trace
from opentelemetry.trace import SpanKind
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from .circuit_breaker import CircuitBreaker, CircuitOpenError
from .config import RelaySettings
from .errors import TokenError
from .metrics import TOKEN_REQUESTS
from .models import Credential

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


class TransientTokenError(TokenError):
    """Token request failure worth retrying (network, timeout, 5xx)."""


class TokenProvider:
    """Exchanges a user/device identity pair for a connection credential."""

    def __init__(
        self,
        settings: RelaySettings,
        client: httpx.AsyncClient | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ) -> None:
        """Initialize the token provider.

        Args:
            settings: Relay settings with API URL, timeouts and retry policy.
            client: Optional shared HTTP client. When omitted a client is
                created per request.
            circuit_breaker: Optional breaker; one is created if omitted.
        """
        self._settings = settings
        self._client = client
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            "token_api", failure_threshold=5, recovery_timeout=60.0
        )

    async def get_device_token(self, user_id: str, device_type: str) -> Credential | None:
        """Request a credential for the given identity.

        Returns:
            The issued credential, or None when no credential could be
            obtained (network error, rejection, timeout or bad response).
        """
        try:
            self.circuit_breaker.guard()
        except CircuitOpenError:
            logger.warning("token_circuit_open", user_id=user_id)
            TOKEN_REQUESTS.labels(status="circuit_open").inc()
            return None

        with tracer.start_as_current_span("token.request", kind=SpanKind.CLIENT) as span:
            span.set_attribute("relay.device_type", device_type)
            try:
                credential = await self._request_with_retries(user_id, device_type)
            except TokenError as e:
                self.circuit_breaker.record_failure()
                TOKEN_REQUESTS.labels(status="failed").inc()
                logger.error(
                    "token_request_failed",
                    user_id=user_id,
                    device_type=device_type,
                    error=str(e),
                )
                span.set_attribute("relay.token.success", False)
                return None

            self.circuit_breaker.record_success()
            TOKEN_REQUESTS.labels(status="success").inc()
            span.set_attribute("relay.token.success", True)
            logger.info("token_issued", user_id=user_id, device_type=device_type)
            return credential

    async def _request_with_retries(self, user_id: str, device_type: str) -> Credential:
        """Request with tenacity-managed retries on transient failures."""
        async for attempt_state in AsyncRetrying(
            stop=stop_after_attempt(self._settings.token_max_retries),
            wait=wait_exponential_jitter(
                initial=self._settings.token_retry_delay_seconds,
                max=10.0,
                jitter=self._settings.token_retry_delay_seconds,
            ),
            retry=retry_if_exception_type(TransientTokenError),
            reraise=True,
        ):
            with attempt_state:
                return await self._attempt_request(
                    user_id,
                    device_type,
                    attempt_state.retry_state.attempt_number,
                )
        raise TokenError("Retries exhausted")

    async def _attempt_request(self, user_id: str, device_type: str, attempt: int) -> Credential:
        """Perform a single token request.

        Raises:
            TransientTokenError: On network errors, timeouts and 5xx.
            TokenError: On rejection or malformed responses.
        """
        url = f"{self._settings.api_base_url}{self._settings.token_path}"
        payload = {"userId": user_id, "deviceType": device_type}

        try:
            if self._client is not None:
                response = await self._client.post(
                    url, json=payload, timeout=self._settings.request_timeout
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        url, json=payload, timeout=self._settings.request_timeout
                    )
        except httpx.TimeoutException as e:
            logger.warning("token_request_timeout", attempt=attempt)
            raise TransientTokenError(f"Token request timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.warning("token_request_network_error", attempt=attempt, error=str(e))
            raise TransientTokenError(f"Token request failed: {e}") from e

        if response.status_code in (401, 403):
            raise TokenError(f"Token request rejected: HTTP {response.status_code}")
        if response.status_code >= 500:
            logger.warning("token_request_server_error", status=response.status_code, attempt=attempt)
            raise TransientTokenError(f"HTTP {response.status_code}")
        if response.status_code not in (200, 201):
            raise TokenError(f"HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise TokenError("Token response is not valid JSON") from e

        token = body.get("token") if isinstance(body, dict) else None
        if not isinstance(token, str) or not token.strip():
            raise TokenError("Token response has no token")

        expires_in = body.get("expiresIn")
        if not isinstance(expires_in, (int, float)) or expires_in <= 0:
            expires_in = self._settings.token_ttl_seconds
        return Credential.issue(token, ttl_seconds=expires_in)
