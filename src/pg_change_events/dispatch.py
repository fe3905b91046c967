"""Event dispatchers receiving materialized change-event groups."""

from __future__ import annotations

import json
import logging
import random
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import httpx

from .entities import EventModelsGroup

logger = logging.getLogger(__name__)


class DispatchError(RuntimeError):
    """Raised when an event group could not be delivered."""


def _full_jitter(ceiling: float) -> float:
    return random.uniform(0, ceiling)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff for delivering one event group.

    The wait before retry ``n`` (1-based) is drawn by ``jitter`` from
    ``[0, ceiling(n)]``, where the ceiling doubles from ``base_delay`` and is
    capped at ``max_delay``.
    """

    retries: int = 3
    base_delay: float = 0.2
    max_delay: float = 5.0
    jitter: Callable[[float], float] = field(default=_full_jitter, compare=False)

    def __post_init__(self) -> None:
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        if self.base_delay <= 0 or self.max_delay <= 0:
            raise ValueError("delays must be positive")

    @property
    def max_attempts(self) -> int:
        return self.retries + 1

    def ceiling(self, retry: int) -> float:
        if retry < 1:
            return 0.0
        return min(self.base_delay * 2 ** (retry - 1), self.max_delay)

    def ceilings(self) -> List[float]:
        return [self.ceiling(retry) for retry in range(1, self.retries + 1)]

    def delay(self, retry: int) -> float:
        """Seconds to wait before retry ``retry``; 0 for the first attempt."""
        ceiling = self.ceiling(retry)
        if ceiling == 0.0:
            return 0.0
        return max(0.0, self.jitter(ceiling))


@dataclass
class DispatchMetrics:
    """Minimal delivery counters used for in-process assertions."""

    requests_total: int = 0
    success_total: int = 0
    retry_total: int = 0
    failure_total: int = 0
    dead_letter_total: int = 0

    def snapshot(self) -> dict[str, int]:
        return {
            "requests_total": self.requests_total,
            "success_total": self.success_total,
            "retry_total": self.retry_total,
            "failure_total": self.failure_total,
            "dead_letter_total": self.dead_letter_total,
        }


class LoggingDispatcher:
    """Logs every group and optionally appends it to a JSONL file."""

    def __init__(self, *, jsonl_path: Optional[Path | str] = None) -> None:
        self._jsonl_path = Path(jsonl_path) if jsonl_path else None

    def dispatch(self, group: EventModelsGroup) -> None:
        payload = group.to_dict()
        if self._jsonl_path is not None:
            try:
                with self._jsonl_path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(payload) + "\n")
            except OSError as exc:
                logger.error("failed to write change event JSONL: %s", exc)
        logger.info(
            "change event %s %s -> %s (%d entities)",
            group.operation.label,
            group.entity_kind,
            group.entity_type,
            len(group),
        )


@dataclass
class CollectingDispatcher:
    """Keeps dispatched groups in memory, in dispatch order."""

    groups: List[EventModelsGroup] = field(default_factory=list)

    def dispatch(self, group: EventModelsGroup) -> None:
        self.groups.append(group)


class FanoutDispatcher:
    """Hands each group to several dispatchers in order."""

    def __init__(self, dispatchers: Sequence[object]) -> None:
        self._dispatchers = list(dispatchers)

    def dispatch(self, group: EventModelsGroup) -> None:
        for dispatcher in self._dispatchers:
            dispatcher.dispatch(group)  # type: ignore[attr-defined]


class HttpEventDispatcher:
    """Posts each event group as JSON to a webhook with retries."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 10.0,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[httpx.Client] = None,
        dead_letter_handler: Optional[
            Callable[[EventModelsGroup, Exception], None]
        ] = None,
        metrics: Optional[DispatchMetrics] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not url:
            raise ValueError("url must not be empty")
        self._url = url
        self._retry_policy = retry_policy or RetryPolicy()
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=timeout_seconds,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        self._dead_letter_handler = dead_letter_handler
        self._metrics = metrics or DispatchMetrics()
        self._sleep = sleep

    @property
    def metrics(self) -> DispatchMetrics:
        return self._metrics

    def dispatch(self, group: EventModelsGroup) -> None:
        # ASCII-escaped so lone surrogates from the capture stream still encode
        body = json.dumps(group.to_dict()).encode("ascii")
        self._metrics.requests_total += 1
        policy = self._retry_policy
        for attempt in range(1, policy.max_attempts + 1):
            try:
                response = self._client.post(
                    self._url,
                    content=body,
                    headers={"Content-Type": "application/json"},
                )
                response.raise_for_status()
            except Exception as exc:  # noqa: BLE001
                if attempt == policy.max_attempts or not self._is_retriable(exc):
                    self._metrics.failure_total += 1
                    self._emit_dead_letter(group, exc)
                    raise DispatchError(
                        f"delivery of {group.operation.label} {group.entity_kind} "
                        f"failed after {attempt} attempt(s): {exc}"
                    ) from exc
                self._metrics.retry_total += 1
                delay = policy.delay(attempt)
                logger.warning(
                    "event delivery attempt %d failed (%s); retrying in %.2fs",
                    attempt,
                    exc,
                    delay,
                )
                if delay > 0:
                    self._sleep(delay)
            else:
                self._metrics.success_total += 1
                return

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    @staticmethod
    def _is_retriable(error: Exception) -> bool:
        if isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code
            return status >= 500 or status == 429
        if isinstance(error, httpx.RequestError):
            return True
        return False

    def _emit_dead_letter(self, group: EventModelsGroup, error: Exception) -> None:
        self._metrics.dead_letter_total += len(group)
        if not self._dead_letter_handler:
            return
        try:
            self._dead_letter_handler(group, error)
        except Exception:  # noqa: BLE001 - best effort
            logger.exception("dead-letter handler raised an error")


__all__ = [
    "CollectingDispatcher",
    "DispatchError",
    "DispatchMetrics",
    "FanoutDispatcher",
    "HttpEventDispatcher",
    "LoggingDispatcher",
    "RetryPolicy",
]
