"""
Common HTTP plumbing for the external system adapters.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple, Type

import httpx

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import ExternalServiceError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, retry_on_exception


RETRYABLE_STATUS_CODES = {502, 503, 504}


class UpstreamStatusError(Exception):
    """Gateway-style status from the upstream that is worth another attempt."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"Upstream returned {status_code}")
        self.status_code = status_code
        self.body = body


# Reads and status writes are safe to repeat. Creates and task completions
# are only retried when the request never reached the server.
IDEMPOTENT_RETRY_ON: Tuple[Type[Exception], ...] = (httpx.TransportError, UpstreamStatusError)
WRITE_RETRY_ON: Tuple[Type[Exception], ...] = (httpx.ConnectError, httpx.ConnectTimeout)


class BaseHTTPClient(ABC):
    """Thin async HTTP adapter with timeout, retry and circuit breaker."""

    system = "external"

    def __init__(self,
                 base_url: str,
                 timeout: float = 10.0,
                 retry_config: Optional[RetryConfig] = None,
                 circuit_breaker: Optional[CircuitBreaker] = None,
                 metrics: Optional[MetricsCollector] = None,
                 logger_name: Optional[str] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)
        self.circuit_breaker = circuit_breaker or self.build_breaker()
        self.metrics = metrics
        self.logger = get_logger(logger_name or f"approvals.{self.system}_client")

    @classmethod
    def build_breaker(cls, failure_threshold: int = 5, recovery_timeout: float = 30.0) -> CircuitBreaker:
        """Breaker that trips on transport failures, never on 404s or domain errors."""
        return CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            expected_exception=(RetryError, httpx.HTTPError, UpstreamStatusError),
            name=cls.system
        )

    @abstractmethod
    def _unavailable(self, message: str, details: Optional[Dict[str, Any]] = None) -> ExternalServiceError:
        """Error raised when this system cannot give a usable answer."""

    async def _request(self,
                       method: str,
                       path: str,
                       *,
                       operation: str,
                       idempotent: bool = True,
                       allow_not_found: bool = False,
                       **kwargs) -> Optional[httpx.Response]:
        """Send one logical request.

        Returns ``None`` for a 404 when ``allow_not_found`` is set. Any other
        non-2xx status, exhausted retries or an open breaker raise the
        adapter's unavailable error.
        """
        url = f"{self.base_url}{path}"

        async def _send() -> httpx.Response:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, **kwargs)
            if response.status_code in RETRYABLE_STATUS_CODES:
                raise UpstreamStatusError(response.status_code, response.text)
            return response

        retry_on = IDEMPOTENT_RETRY_ON if idempotent else WRITE_RETRY_ON
        attempt = retry_on_exception(retry_on, self.retry_config)(_send)

        try:
            if self.metrics:
                with self.metrics.time_operation(
                    "external_call_duration_seconds", system=self.system, operation=operation
                ):
                    response = await self.circuit_breaker.call(attempt)
            else:
                response = await self.circuit_breaker.call(attempt)
        except RetryError as e:
            self.logger.error(
                "External call failed after retries",
                operation=operation,
                url=url,
                attempts=e.attempts,
                error=str(e.last_exception)
            )
            raise self._unavailable(
                f"{operation} failed after {e.attempts} attempts",
                {"operation": operation, "error": str(e.last_exception), "attempts": e.attempts}
            )
        except CircuitBreakerOpenException as e:
            self.logger.warning("Circuit breaker open", operation=operation, url=url)
            raise self._unavailable(str(e), {
                "operation": operation, "circuit_breaker": "open", "retry_after": round(e.retry_after, 1)
            })
        except (httpx.HTTPError, UpstreamStatusError) as e:
            # not retried: the request may have been applied upstream
            self.logger.error("External call failed", operation=operation, url=url, error=str(e))
            raise self._unavailable(
                f"{operation} failed: {e}",
                {"operation": operation, "error": str(e), "outcome_unknown": not idempotent}
            )

        if response.status_code == 404 and allow_not_found:
            self.logger.info("External resource not found", operation=operation, url=url)
            return None

        if not response.is_success:
            self.logger.error(
                "External call returned unexpected status",
                operation=operation,
                url=url,
                status_code=response.status_code,
                response=response.text
            )
            raise self._unavailable(
                f"Unexpected status {response.status_code} from {operation}",
                {"operation": operation, "status_code": response.status_code, "body": response.text}
            )

        self.logger.debug("External call succeeded", operation=operation, url=url, status_code=response.status_code)
        return response

    def _decode(self,
                response: httpx.Response,
                operation: str,
                parse: Optional[Callable[[Any], Any]] = None) -> Any:
        """JSON body of a successful response, optionally run through ``parse``.

        A body that is not JSON, or lacks the fields ``parse`` expects, is
        reported as the adapter's unavailable error.
        """
        try:
            data = response.json()
            return parse(data) if parse else data
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            self.logger.error(
                "External call returned a malformed body",
                operation=operation,
                status_code=response.status_code,
                error=repr(e)
            )
            raise self._unavailable(
                f"Malformed response from {operation}",
                {"operation": operation, "status_code": response.status_code,
                 "error": repr(e), "body": response.text[:500]}
            )
