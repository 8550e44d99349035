"""Message routing between agents through pull-based work queues."""

from __future__ import annotations

import copy
import json
import queue
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional, Protocol

from .eventlog import EventLogError, EventLogWriter
from .limiter import Limiter, LimiterError
from .logx import Logger

_INPUT_CAPACITY = 100
_IDLE_CAPACITY = 10
_DEFAULT_TOKEN_RESERVATION = 100
_POLL_INTERVAL = 0.05
_COMPLETION_STATUSES = frozenset(
    {"completed", "done", "error", "failed", "timeout", "cancelled", "aborted"}
)
_LOGICAL_NAMES = frozenset({"architect", "coder"})


class MsgType(str, Enum):
    """Kinds of messages exchanged between agents."""

    TASK = "TASK"
    RESULT = "RESULT"
    ERROR = "ERROR"
    QUESTION = "QUESTION"
    ANSWER = "ANSWER"
    REQUEST = "REQUEST"
    SHUTDOWN = "SHUTDOWN"

    def __str__(self) -> str:
        return self.value


def _new_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AgentMsg:
    """A message from one agent to another."""

    type: MsgType
    from_agent: str
    to_agent: str
    payload: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, str] = field(default_factory=dict)
    parent_msg_id: str = ""
    retry_count: int = 0
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=_now)

    def clone(self) -> "AgentMsg":
        """Return a deep copy with the same id."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "from_agent": self.from_agent,
            "to_agent": self.to_agent,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
            "metadata": self.metadata,
            "retry_count": self.retry_count,
            "parent_msg_id": self.parent_msg_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentMsg":
        timestamp = data.get("timestamp")
        return cls(
            type=MsgType(data["type"]),
            from_agent=data.get("from_agent", ""),
            to_agent=data.get("to_agent", ""),
            payload=dict(data.get("payload") or {}),
            metadata=dict(data.get("metadata") or {}),
            parent_msg_id=data.get("parent_msg_id", ""),
            retry_count=int(data.get("retry_count", 0)),
            id=data.get("id") or _new_id(),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else _now(),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str | bytes) -> "AgentMsg":
        return cls.from_dict(json.loads(text))


@dataclass
class DispatchResult:
    """Outcome of handing a message to an agent."""

    message: Optional[AgentMsg] = None
    error: Optional[BaseException] = None


class DispatcherError(Exception):
    """Raised for dispatcher misuse and failed deliveries."""


class _Agent(Protocol):
    agent_id: str

    def process_message(self, msg: AgentMsg) -> Optional[AgentMsg]: ...

    def shutdown(self) -> None: ...


class Dispatcher:
    """Routes messages to agents and keeps queues agents pull work from.

    TASK messages go to a shared work queue; QUESTION and REQUEST messages to
    the architect queue; RESULT and ANSWER messages to the coder queue. Other
    messages are delivered to their target agent immediately, with retries.

    ``roster`` is an ordered iterable of ``(agent_type, agent_id)`` pairs used
    to resolve the logical names ``architect`` and ``coder``.
    """

    def __init__(
        self,
        rate_limiter: Limiter,
        event_log: EventLogWriter,
        max_retry_attempts: int = 3,
        retry_backoff_multiplier: float = 2.0,
        roster: Iterable[tuple[str, str]] = (),
    ) -> None:
        self.rate_limiter = rate_limiter
        self.event_log = event_log
        self.max_retry_attempts = max_retry_attempts
        self.retry_backoff_multiplier = retry_backoff_multiplier
        self.roster = list(roster)
        self.logger = Logger("dispatcher")

        self._agents: dict[str, _Agent] = {}
        self._lock = threading.RLock()
        self._running = False
        self._inbox: queue.Queue[AgentMsg] = queue.Queue(maxsize=_INPUT_CAPACITY)
        self._shutdown = threading.Event()
        self._worker: Optional[threading.Thread] = None

        self._queue_lock = threading.RLock()
        self._architect_queue: deque[AgentMsg] = deque()
        self._coder_queue: list[AgentMsg] = []
        self._shared_work_queue: deque[AgentMsg] = deque()

        self._notify_lock = threading.Lock()
        self._idle_channel: queue.Queue[Optional[str]] = queue.Queue()
        self._idle_closed = False
        self._architect_id = ""
        self._busy_lock = threading.Lock()
        self._busy_agents: set[str] = set()

    # Registration -----------------------------------------------------

    def register_agent(self, agent: _Agent) -> None:
        with self._lock:
            agent_id = agent.agent_id
            if agent_id in self._agents:
                raise DispatcherError(f"agent {agent_id} already registered")
            self._agents[agent_id] = agent
        self.logger.info("Registered agent: %s", agent_id)

    def unregister_agent(self, agent_id: str) -> None:
        with self._lock:
            if agent_id not in self._agents:
                raise DispatcherError(f"agent {agent_id} not found")
            del self._agents[agent_id]
        self.logger.info("Unregistered agent: %s", agent_id)

    # Lifecycle --------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self._running:
                raise DispatcherError("dispatcher is already running")
            self._running = True
            self._shutdown = threading.Event()
            self._worker = threading.Thread(
                target=self._message_processor, args=(self._shutdown,), daemon=True
            )
        self.logger.info("Starting dispatcher")
        self._worker.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the worker; raise TimeoutError if it does not finish in time."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            worker = self._worker
        self.logger.info("Stopping dispatcher")
        self._shutdown.set()
        self.close_idle_channel()
        if worker is not None:
            worker.join(timeout)
            if worker.is_alive():
                self.logger.warn("Dispatcher stop timed out")
                raise TimeoutError("dispatcher stop timed out")
        self.logger.info("Dispatcher stopped successfully")

    def dispatch_message(self, msg: AgentMsg) -> None:
        """Queue a message for the worker."""
        with self._lock:
            running = self._running
        if not running:
            raise DispatcherError("dispatcher is not running")
        try:
            self._inbox.put_nowait(msg)
        except queue.Full:
            raise DispatcherError("message queue is full") from None
        self.logger.debug("Queued message %s: %s → %s", msg.id, msg.from_agent, msg.to_agent)

    def _message_processor(self, shutdown: threading.Event) -> None:
        while not shutdown.is_set():
            try:
                msg = self._inbox.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                self.process_message(msg)
            except Exception as exc:  # keep the worker alive
                self.logger.error("Unexpected failure processing %s: %s", msg.id, exc)
        self.logger.info("Message processor stopped by shutdown signal")

    # Routing ----------------------------------------------------------

    def _log_message(self, msg: AgentMsg, what: str) -> None:
        try:
            self.event_log.write_message(msg)
        except EventLogError as exc:
            self.logger.error("Failed to log %s: %s", what, exc)

    def process_message(self, msg: AgentMsg) -> None:
        """Log a message and route it to a queue or deliver it at once."""
        self.logger.debug(
            "Processing message %s: %s → %s (%s)", msg.id, msg.from_agent, msg.to_agent, msg.type
        )
        self._log_message(msg, "incoming message")

        if msg.type is MsgType.TASK:
            with self._queue_lock:
                self._shared_work_queue.append(msg)
            return
        if msg.type in (MsgType.QUESTION, MsgType.REQUEST):
            with self._queue_lock:
                self._architect_queue.append(msg)
            return
        if msg.type is MsgType.RESULT:
            self.notify_architect_on_result(msg)
            with self._queue_lock:
                self._coder_queue.append(msg)
            return
        if msg.type is MsgType.ANSWER:
            with self._queue_lock:
                self._coder_queue.append(msg)
            return

        resolved = self.resolve_agent_name(msg.to_agent)
        if resolved != msg.to_agent:
            self.logger.debug("Resolved logical name %s to %s", msg.to_agent, resolved)
            msg.to_agent = resolved

        with self._lock:
            target = self._agents.get(msg.to_agent)
        if target is None:
            self._send_error_response(msg, DispatcherError(f"target agent {msg.to_agent} not found"))
            return

        result = self._process_with_retry(msg, target)
        if result.message is not None:
            self.send_response(result.message)
        elif result.error is not None:
            self._send_error_response(msg, result.error)

    def _process_with_retry(self, msg: AgentMsg, agent: _Agent) -> DispatchResult:
        max_retries = self.max_retry_attempts
        model_name = msg.to_agent.split(":")[0] if ":" in msg.to_agent else msg.to_agent
        last_error: Optional[BaseException] = None

        for attempt in range(max_retries + 1):
            try:
                self._check_rate_limit(model_name)
            except LimiterError as exc:
                self.logger.warn("Rate limit exceeded for %s (model %s): %s", msg.to_agent, model_name, exc)
                return DispatchResult(error=exc)

            retry_msg = msg.clone()
            retry_msg.retry_count = attempt
            self.logger.debug("Attempt %d/%d for message %s", attempt + 1, max_retries + 1, msg.id)
            try:
                response = agent.process_message(retry_msg)
            except Exception as exc:
                last_error = exc
                self.logger.warn("Attempt %d failed for message %s: %s", attempt + 1, msg.id, exc)
            else:
                return DispatchResult(message=response)
            finally:
                try:
                    self.rate_limiter.release_agent(model_name)
                except LimiterError:
                    pass

            if attempt < max_retries:
                backoff = int(self.retry_backoff_multiplier**attempt)
                self.logger.debug("Waiting %ds before retry", backoff)
                if self._shutdown.wait(backoff):
                    return DispatchResult(error=DispatcherError("dispatcher stopped"))

        self.logger.error("All retry attempts failed for message %s: %s", msg.id, last_error)
        error = DispatcherError(f"failed after {max_retries + 1} attempts: {last_error}")
        error.__cause__ = last_error
        return DispatchResult(error=error)

    def _check_rate_limit(self, model: str) -> None:
        self.rate_limiter.reserve_agent(model)
        try:
            self.rate_limiter.reserve(model, _DEFAULT_TOKEN_RESERVATION)
        except LimiterError:
            self.rate_limiter.release_agent(model)
            raise

    def send_response(self, response: AgentMsg) -> None:
        """Log a response and put it in the queue its type belongs to."""
        self.logger.info(
            "Routing response %s: %s → %s (%s)",
            response.id, response.from_agent, response.to_agent, response.type,
        )
        self._log_message(response, "response message")
        self.notify_architect_on_result(response)

        resolved = self.resolve_agent_name(response.to_agent)
        if resolved != response.to_agent:
            self.logger.debug("Resolved logical name %s to %s", response.to_agent, resolved)
            response.to_agent = resolved

        with self._queue_lock:
            if response.type in (MsgType.QUESTION, MsgType.REQUEST):
                self._architect_queue.append(response)
            elif response.type in (MsgType.RESULT, MsgType.ANSWER):
                self._coder_queue.append(response)
            else:
                self.logger.debug("Response message %s of type %s logged only", response.id, response.type)

    def _send_error_response(self, original: AgentMsg, error: BaseException) -> None:
        error_msg = AgentMsg(MsgType.ERROR, "dispatcher", original.from_agent)
        error_msg.parent_msg_id = original.id
        error_msg.payload["error"] = str(error)
        error_msg.payload["original_message_id"] = original.id
        error_msg.metadata["error_type"] = "processing_error"
        self.logger.error("Sending error response for message %s: %s", original.id, error)
        self._log_message(error_msg, "error message")

    def resolve_agent_name(self, logical_name: str) -> str:
        """Map ``architect`` or ``coder`` to the first registered agent of that type."""
        with self._lock:
            if logical_name in self._agents:
                return logical_name
            if logical_name not in _LOGICAL_NAMES:
                return logical_name
            for agent_type, agent_id in self.roster:
                if agent_type == logical_name and agent_id in self._agents:
                    return agent_id
        return logical_name

    def stats(self) -> dict[str, Any]:
        with self._lock, self._queue_lock:
            return {
                "running": self._running,
                "agents": list(self._agents),
                "queue_length": self._inbox.qsize(),
                "queue_capacity": _INPUT_CAPACITY,
                "architect_queue_size": len(self._architect_queue),
                "coder_queue_size": len(self._coder_queue),
                "shared_work_queue_size": len(self._shared_work_queue),
            }

    # Pull queues ------------------------------------------------------

    def pull_architect_work(self) -> Optional[AgentMsg]:
        with self._queue_lock:
            if not self._architect_queue:
                return None
            return self._architect_queue.popleft()

    def pull_coder_feedback(self, agent_id: str) -> Optional[AgentMsg]:
        with self._queue_lock:
            for index, msg in enumerate(self._coder_queue):
                if msg.to_agent == agent_id:
                    return self._coder_queue.pop(index)
        return None

    def pull_shared_work(self) -> Optional[AgentMsg]:
        """Take the oldest task and mark its target agent busy."""
        with self._queue_lock:
            if not self._shared_work_queue:
                return None
            msg = self._shared_work_queue.popleft()
        with self._busy_lock:
            self._busy_agents.add(msg.to_agent)
        self.logger.debug("Pulled TASK %s, marked agent %s as busy", msg.id, msg.to_agent)
        return msg

    # Idle notifications -----------------------------------------------

    def subscribe_idle_agents(self, architect_id: str) -> "queue.Queue[Optional[str]]":
        """Return the queue of idle agent ids; ``None`` is put once it closes."""
        with self._notify_lock:
            self._architect_id = architect_id
        self.logger.info("Architect %s subscribed to idle agent notifications", architect_id)
        return self._idle_channel

    def notify_idle_agent(self, agent_id: str) -> None:
        with self._notify_lock:
            if not self._architect_id:
                return
            if self._idle_closed or self._idle_channel.qsize() >= _IDLE_CAPACITY:
                self.logger.warn("Idle agent notification dropped - channel full")
                return
            self._idle_channel.put(agent_id)
        self.logger.debug("Notified architect that agent %s is idle", agent_id)

    def notify_architect_on_result(self, msg: AgentMsg) -> None:
        """Report a busy agent as idle once it sends a completion RESULT."""
        if msg.type is not MsgType.RESULT:
            return
        status = msg.payload.get("status")
        if not isinstance(status, str) or status not in _COMPLETION_STATUSES:
            return
        with self._busy_lock:
            was_busy = msg.from_agent in self._busy_agents
            self._busy_agents.discard(msg.from_agent)
        if was_busy:
            self.notify_idle_agent(msg.from_agent)
        else:
            self.logger.debug("Agent %s was not marked as busy, skipping idle notification", msg.from_agent)

    def close_idle_channel(self) -> None:
        with self._notify_lock:
            if self._idle_closed:
                return
            self._idle_closed = True
            self._idle_channel.put(None)
        self.logger.info("Closed idle agent notification channel")