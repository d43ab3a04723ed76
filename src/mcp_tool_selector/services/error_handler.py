"""Error taxonomy and retry helpers for the tool selection pipeline."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

from ..models.pipeline import PipelineError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SelectorError(Exception):
    """Base exception class for pipeline errors."""
    def __init__(self, message: str, error_code: str = "SELECTOR_ERROR", details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_pipeline_error(self) -> PipelineError:
        return PipelineError(code=self.error_code, message=self.message, details=self.details)


class OracleUnavailable(SelectorError):
    """The ranking oracle could not be reached or timed out."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "ORACLE_UNAVAILABLE", details)


class OracleMalformedResponse(SelectorError):
    """The oracle answered with something that cannot be interpreted."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "ORACLE_MALFORMED_RESPONSE", details)


class SelectionFailed(SelectorError):
    """No usable selection could be produced."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SELECTION_FAILED", details)


class ValidationRejected(SelectorError):
    """Proposed parameters do not satisfy the tool schema."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_REJECTED", details)


class RecoveryExhausted(SelectorError):
    """Repair was attempted but the parameters are still unusable."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "RECOVERY_EXHAUSTED", details)


class CacheUnavailable(SelectorError):
    """The selection cache could not serve the request."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CACHE_UNAVAILABLE", details)


class ToolNotFound(SelectorError):
    """A tool id does not exist in the registry snapshot."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "TOOL_NOT_FOUND", details)


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    retry_on: Tuple[Type[BaseException], ...] = (OracleUnavailable,),
    max_attempts: int = 3,
    base_delay: float = 0.5,
    **kwargs: Any,
) -> T:
    """Await ``func`` and retry failures listed in ``retry_on`` with exponential backoff.

    Anything not in ``retry_on`` propagates immediately. The last failure is
    re-raised once ``max_attempts`` calls have been made.
    """
    attempts = max(1, max_attempts)
    for attempt in range(attempts):
        try:
            return await func(*args, **kwargs)
        except retry_on as e:
            if attempt == attempts - 1:
                logger.error(f"Max retries exceeded for {func.__name__}: {e}")
                raise

            delay = base_delay * (2 ** attempt)  # Exponential backoff
            logger.warning(f"Attempt {attempt + 1} failed for {func.__name__}, retrying in {delay}s: {e}")
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
