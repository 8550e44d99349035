"""Per-model token, budget and concurrency limits."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, time as clock_time, timedelta
from types import TracebackType
from typing import Mapping, Optional

_MINUTE = 60.0


class LimiterError(Exception):
    """Base class for limiter failures."""


class RateLimitError(LimiterError):
    """Not enough tokens remain in the current minute."""

    def __init__(self) -> None:
        super().__init__("rate limit exceeded")


class BudgetExceededError(LimiterError):
    """The daily budget would be exceeded."""

    def __init__(self) -> None:
        super().__init__("daily budget exceeded")


class AgentLimitError(LimiterError):
    """All agent slots for the model are in use."""

    def __init__(self) -> None:
        super().__init__("agent limit exceeded")


class UnknownModelError(LimiterError):
    """The model has no configured limits."""

    def __init__(self, model: str) -> None:
        super().__init__(f"model {model} not configured")
        self.model = model


@dataclass(frozen=True)
class ModelLimits:
    """Configured limits of one model."""

    max_tokens_per_minute: int
    max_budget_per_day_usd: float
    max_agents: int


@dataclass(frozen=True)
class ModelStatus:
    """Current usage of one model."""

    tokens: int
    budget_usd: float
    agents: int


class ModelLimiter:
    """Token bucket, daily budget and agent slots for a single model."""

    def __init__(self, name: str, limits: ModelLimits) -> None:
        self.name = name
        self.limits = limits
        self._lock = threading.Lock()
        self._tokens = limits.max_tokens_per_minute
        self._budget_usd = 0.0
        self._agents = 0
        self._last_refill = time.monotonic()

    def _refill(self) -> None:
        elapsed = time.monotonic() - self._last_refill
        if elapsed >= _MINUTE:
            minutes = int(elapsed // _MINUTE)
            self._tokens = min(
                self._tokens + minutes * self.limits.max_tokens_per_minute,
                self.limits.max_tokens_per_minute,
            )
            self._last_refill += minutes * _MINUTE

    def reserve(self, tokens: int) -> None:
        with self._lock:
            self._refill()
            if self._tokens < tokens:
                raise RateLimitError()
            self._tokens -= tokens

    def reserve_budget(self, cost_usd: float) -> None:
        with self._lock:
            if self._budget_usd + cost_usd > self.limits.max_budget_per_day_usd:
                raise BudgetExceededError()
            self._budget_usd += cost_usd

    def reserve_agent(self) -> None:
        with self._lock:
            if self._agents >= self.limits.max_agents:
                raise AgentLimitError()
            self._agents += 1

    def release_agent(self) -> None:
        with self._lock:
            if self._agents <= 0:
                raise LimiterError(f"no agents to release for model {self.name}")
            self._agents -= 1

    def status(self) -> ModelStatus:
        with self._lock:
            self._refill()
            return ModelStatus(self._tokens, self._budget_usd, self._agents)

    def reset_daily(self) -> None:
        with self._lock:
            self._budget_usd = 0.0
            self._tokens = self.limits.max_tokens_per_minute
            self._agents = 0
            self._last_refill = time.monotonic()


class Limiter:
    """Limits for every configured model, reset daily at local midnight."""

    def __init__(self, models: Mapping[str, ModelLimits], schedule_reset: bool = True) -> None:
        self._models = {name: ModelLimiter(name, limits) for name, limits in models.items()}
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._closed = False
        if schedule_reset:
            self._schedule_daily_reset()

    def _model(self, model: str) -> ModelLimiter:
        try:
            return self._models[model]
        except KeyError:
            raise UnknownModelError(model) from None

    def reserve(self, model: str, tokens: int) -> None:
        self._model(model).reserve(tokens)

    def reserve_budget(self, model: str, cost_usd: float) -> None:
        self._model(model).reserve_budget(cost_usd)

    def reserve_agent(self, model: str) -> None:
        self._model(model).reserve_agent()

    def release_agent(self, model: str) -> None:
        self._model(model).release_agent()

    def status(self, model: str) -> ModelStatus:
        return self._model(model).status()

    def reset_daily(self) -> None:
        with self._lock:
            for model_limiter in self._models.values():
                model_limiter.reset_daily()

    def close(self) -> None:
        with self._lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def __enter__(self) -> "Limiter":
        return self

    def __exit__(
        self,
        *args: object,
    ) -> None:
        self.close()

    def _schedule_daily_reset(self) -> None:
        now = datetime.now()
        midnight = datetime.combine(now.date() + timedelta(days=1), clock_time.min)
        delay = max((midnight - now).total_seconds(), 0.0)
        with self._lock:
            if self._closed:
                return
            timer = threading.Timer(delay, self._on_midnight)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _on_midnight(self) -> None:
        self.reset_daily()
        self._schedule_daily_reset()


__all__ = [
    "AgentLimitError",
    "BudgetExceededError",
    "Limiter",
    "LimiterError",
    "ModelLimiter",
    "ModelLimits",
    "ModelStatus",
    "RateLimitError",
    "UnknownModelError",
]

_ = TracebackType  # kept for type checkers reading __exit__ signatures