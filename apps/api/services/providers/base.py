"""Backend abstraction, bounded retry and ordered fallback."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Sequence, TypeVar

from services.providers.types import ProviderError, ProviderOutput, StepInput

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BaseBackend(ABC):
    name: str

    @property
    def configured(self) -> bool:
        return True

    @abstractmethod
    async def run(self, step_input: StepInput) -> ProviderOutput:
        raise NotImplementedError


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    delay_seconds: float,
    label: str,
) -> T:
    """Retry transient provider errors with a fixed delay. Permanent errors raise at once."""
    max_attempts = max(int(attempts), 1)
    for attempt in range(1, max_attempts + 1):
        try:
            return await call()
        except ProviderError as exc:
            if not exc.transient or attempt >= max_attempts:
                raise
            logger.warning("%s attempt %s/%s failed: %s", label, attempt, max_attempts, exc)
            await asyncio.sleep(max(float(delay_seconds), 0.0))
    raise ProviderError(f"{label} exhausted retries", provider=label)


class StepAdapter:
    """One pipeline capability backed by an ordered list of backends.

    The first configured backend that succeeds wins; callers only ever see a
    ProviderOutput or a single terminal ProviderError.
    """

    def __init__(
        self,
        step: str,
        backends: Sequence[BaseBackend],
        *,
        max_attempts: int = 1,
        retry_delay_seconds: float = 0.0,
    ) -> None:
        self.step = step
        self.backends: List[BaseBackend] = list(backends)
        self.max_attempts = max(int(max_attempts), 1)
        self.retry_delay_seconds = max(float(retry_delay_seconds), 0.0)

    async def execute(self, step_input: StepInput) -> ProviderOutput:
        errors: List[ProviderError] = []
        for backend in self.backends:
            if not backend.configured:
                logger.info("Skipping unconfigured %s backend %s", self.step, backend.name)
                continue
            try:
                return await call_with_retry(
                    lambda: backend.run(step_input),
                    attempts=self.max_attempts,
                    delay_seconds=self.retry_delay_seconds,
                    label=f"{self.step}:{backend.name}",
                )
            except ProviderError as exc:
                logger.warning("%s backend %s failed: %s", self.step, backend.name, exc)
                errors.append(exc)

        if not errors:
            raise ProviderError(f"No backend configured for {self.step}", provider=self.step)
        detail = "; ".join(f"{err.provider}: {err}" for err in errors)
        raise ProviderError(
            f"All {self.step} backends failed ({detail})",
            provider=errors[-1].provider,
            transient=all(err.transient for err in errors),
        )
