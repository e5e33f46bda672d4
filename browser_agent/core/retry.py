"""
LLM Retry Layer — bounded exponential backoff around the model transport.

``LlmRetryController.request_with_retry`` makes ``retry_max_attempts + 1``
attempts, each under its own timeout.  Between attempts it waits
``min(4000, 500 * 2**(attempt-1))`` ms, or the endpoint's retry-after hint
when that is within the route's cap.  Per-session ``RetryState`` is updated
and mirrored as ``auto_retry_start`` / ``auto_retry_end`` events.

On exhaustion it raises ``LlmTerminalError`` carrying a failure signature
and whether the same failure repeated; ``escalate`` then asks the router
for the next profile in the route's chain.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import Counter
from typing import Any, Awaitable, Callable, Optional

from .errors import LlmTerminalError, TransportError
from .event_bus import EventBus, EventType
from .model_router import LlmRoute, ModelRouter
from .models import RetryState
from .providers.base import LlmProviderRegistry
from .transport import AssembledMessage, DeltaCallback, ModelTransport, is_retryable_status

logger = logging.getLogger(__name__)

BASE_DELAY_MS = 500
MAX_DELAY_MS = 4000

_RETRYABLE_MESSAGE_RE = re.compile(r"timeout|network|temporar|unavailable|rate limit", re.IGNORECASE)


# ── Pure helpers ────────────────────────────────────────────────────

def compute_retry_delay_ms(attempt: int, base_ms: int = BASE_DELAY_MS, cap_ms: int = MAX_DELAY_MS) -> int:
    """Backoff for the wait after failed attempt ``attempt`` (1-based)."""
    exponent = max(0, attempt - 1)
    # Past this exponent the product is always above any sane cap
    if exponent > 30:
        return cap_ms
    return min(cap_ms, base_ms * (2 ** exponent))


def is_retryable_failure(error: BaseException) -> bool:
    if getattr(error, "hint_exceeded", False):
        return False
    if getattr(error, "retryable", False):
        return True
    if is_retryable_status(getattr(error, "status", None)):
        return True
    message = getattr(error, "message", None) or str(error)
    return bool(_RETRYABLE_MESSAGE_RE.search(message))


def _normalize_message(text: str, limit: int = 80) -> str:
    text = re.sub(r"\d+", "#", text.lower())
    text = re.sub(r"\s+", " ", text).strip()
    return text[:limit]


def failure_signature(error: BaseException) -> str:
    """``{errorCode}|{httpStatus}|{normalized message prefix}``."""
    code = getattr(error, "code", None) or type(error).__name__
    status = getattr(error, "status", None) or ""
    message = getattr(error, "message", None) or str(error)
    return f"{code}|{status}|{_normalize_message(message)}"


# ── Controller ──────────────────────────────────────────────────────

class LlmRetryController:
    """Wraps ``ModelTransport`` with retry, timeouts and route escalation."""

    def __init__(
        self,
        transport: ModelTransport,
        providers: LlmProviderRegistry,
        router: ModelRouter,
        events: Optional[EventBus] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._transport = transport
        self._providers = providers
        self._router = router
        self._events = events or EventBus()
        self._sleep = sleep

    async def request_with_retry(
        self,
        session_id: str,
        route: LlmRoute,
        messages: list[dict],
        tools: list[dict],
        retry_state: RetryState,
        on_delta: Optional[DeltaCallback] = None,
        step: int = 0,
    ) -> AssembledMessage:
        provider = self._providers.get(route.provider)
        if provider is None:
            raise LlmTerminalError(
                f"LLM provider not registered: {route.provider}",
                code="E_LLM_PROVIDER",
            )

        max_retries = max(0, route.retry_max_attempts)
        retry_state.max_attempts = max_retries
        signatures: Counter[str] = Counter()
        attempt = 0

        while True:
            attempt += 1
            request = provider.build_request(route, messages, tools, stream=True)
            self._events.emit(
                EventType.LLM_REQUEST, session_id,
                step=step, attempt=attempt, url=request.url,
                model=route.model, profile=route.profile, message_count=len(messages),
            )
            try:
                message = await asyncio.wait_for(
                    self._transport.send(request, on_delta=on_delta),
                    timeout=request.timeout_ms / 1000,
                )
            except asyncio.TimeoutError:
                error: BaseException = TransportError(
                    f"LLM request timeout after {request.timeout_ms}ms (llm-timeout)",
                    code="E_LLM_TIMEOUT",
                    retryable=True,
                )
            except TransportError as e:
                error = e
            else:
                if retry_state.active:
                    self._events.emit(
                        EventType.AUTO_RETRY_END, session_id,
                        success=True, attempt=attempt - 1, max_attempts=max_retries,
                    )
                retry_state.reset()
                return message

            signatures[failure_signature(error)] += 1
            if not (is_retryable_failure(error) and attempt <= max_retries):
                break

            delay_ms = self._delay_for(error, attempt, route)
            retry_state.update(attempt, max_retries, delay_ms)
            self._events.emit(
                EventType.AUTO_RETRY_START, session_id,
                attempt=attempt, max_attempts=max_retries, delay_ms=delay_ms,
                status=getattr(error, "status", None), reason=str(error),
            )
            logger.info(f"LLM retry {attempt}/{max_retries} after {delay_ms}ms: {error}")
            await self._sleep(delay_ms / 1000)

        last_error = error
        if retry_state.active:
            self._events.emit(
                EventType.AUTO_RETRY_END, session_id,
                success=False, attempt=retry_state.attempt,
                max_attempts=max_retries, final_error=str(last_error),
            )
        retry_state.reset()

        attempts = sum(signatures.values())
        repeated = (
            any(count > 1 for count in signatures.values())
            or getattr(last_error, "attempts", 1) > 1
        )
        raise LlmTerminalError(
            f"LLM request failed after {attempts} attempt(s): "
            f"{getattr(last_error, 'message', None) or last_error}",
            code=getattr(last_error, "code", None) or "E_LLM_FAILED",
            status=getattr(last_error, "status", None),
            attempts=attempts,
            signature=failure_signature(last_error),
            repeated_failure=repeated,
            details=getattr(last_error, "details", None),
        ) from last_error

    def escalate(self, session_id: str, route: LlmRoute, error: LlmTerminalError) -> Optional[LlmRoute]:
        """Next route for a terminal failure, or None (reason on the router)."""
        next_route = self._router.escalate(route, repeated_failure=error.repeated_failure)
        decision = self._router.last_decision
        if next_route is None:
            self._events.emit(
                EventType.LLM_ROUTE_BLOCKED, session_id,
                profile=route.profile,
                reason=decision.reason if decision else "unknown",
                signature=error.signature,
            )
            return None
        self._events.emit(
            EventType.LLM_ROUTE_ESCALATED, session_id,
            from_profile=route.profile, to_profile=next_route.profile,
            signature=error.signature,
        )
        return next_route

    @staticmethod
    def _delay_for(error: BaseException, attempt: int, route: LlmRoute) -> int:
        hint = getattr(error, "retry_after_ms", None)
        if hint is not None and 0 <= hint <= route.max_retry_delay_ms:
            return int(hint)
        return compute_retry_delay_ms(attempt)
