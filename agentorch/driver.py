"""State machine that drives a coding agent from task to reviewed code."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol

from .contextmgr import ContextManager, ModelConfig

_PLAN_APPROVAL_RESULT = "plan_approval_result"
_CODE_APPROVAL_RESULT = "code_approval_result"
_ARCHITECT_ANSWER = "architect_answer"
_TASK_CONTENT = "task_content"
_STARTED_AT = "started_at"

_HELP_KEYWORDS = ("help", "question", "clarify", "guidance", "not sure", "unclear")
_PLANNING_MAX_TOKENS = 4096
_MAX_STEPS = 1000


class State(str, Enum):
    """States of the coding agent."""

    WAITING = "WAITING"
    PLANNING = "PLANNING"
    PLAN_REVIEW = "PLAN_REVIEW"
    CODING = "CODING"
    TESTING = "TESTING"
    FIXING = "FIXING"
    CODE_REVIEW = "CODE_REVIEW"
    QUESTION = "QUESTION"
    DONE = "DONE"
    ERROR = "ERROR"

    def __str__(self) -> str:
        return self.value


class DriverError(Exception):
    """Raised when the state machine cannot proceed."""


@dataclass
class ApprovalRequest:
    """A request waiting for the architect's approval."""

    content: str
    reason: str
    type: str


@dataclass
class ApprovalResult:
    """The architect's verdict on a plan or on code."""

    type: str
    status: str
    time: datetime


@dataclass
class Question:
    """A question waiting for the architect's answer."""

    content: str
    reason: str
    origin: str


class _LLMClient(Protocol):
    def complete(self, messages: list[dict[str, str]], max_tokens: int) -> Any: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "<nil>"
    return str(value)


class CoderDriver:
    """Runs the plan → review → code → test → review cycle for one task.

    Without an LLM client the driver works in mock mode and approves its own
    plans and code. With a client, reviews stop and wait for the architect.
    """

    def __init__(
        self,
        agent_id: str,
        model_config: Optional[ModelConfig] = None,
        llm_client: Optional[_LLMClient] = None,
        work_dir: str = "",
    ) -> None:
        self.agent_id = agent_id
        self.model_config = model_config
        self.llm_client = llm_client
        self.work_dir = work_dir
        self.context = ContextManager(model_config)
        self._state = State.WAITING
        self._data: dict[str, Any] = {}
        self._initialized = False
        self._pending_approval: Optional[ApprovalRequest] = None
        self._pending_question: Optional[Question] = None

    # State access -----------------------------------------------------

    def current_state(self) -> State:
        return self._state

    def state_data(self) -> dict[str, Any]:
        """Return a copy of the state data."""
        return dict(self._data)

    def set_state_data(self, key: str, value: Any) -> None:
        self._data[key] = value

    def transition_to(self, state: State) -> None:
        self._data["previous_state"] = self._state.value
        self._state = State(state)

    def initialize(self) -> None:
        """Prepare the driver; calling it again does nothing."""
        self._initialized = True

    # Main loop --------------------------------------------------------

    def process_state(self) -> tuple[State, bool]:
        """Handle the current state; return the next state and whether done."""
        handler = {
            State.WAITING: self._handle_waiting,
            State.PLANNING: self._handle_planning,
            State.PLAN_REVIEW: self._handle_plan_review,
            State.CODING: self._handle_coding,
            State.TESTING: self._handle_testing,
            State.FIXING: self._handle_fixing,
            State.CODE_REVIEW: self._handle_code_review,
            State.QUESTION: self._handle_question,
        }.get(self._state)
        if handler is not None:
            return handler()
        if self._state in (State.DONE, State.ERROR):
            return self._state, True
        raise DriverError(f"unknown state: {self._state}")

    def process_task(self, task_content: str) -> None:
        """Start a task and run until done or waiting for the architect."""
        self._data[_TASK_CONTENT] = task_content
        self._data[_STARTED_AT] = _now()
        self.context.add_message("user", task_content)
        self.initialize()
        self._drive()

    def run(self) -> None:
        """Continue until done or waiting for outside input."""
        self.initialize()
        self._drive()

    def step(self) -> bool:
        """Handle one state and move on; return whether the machine is done."""
        next_state, done = self.process_state()
        if next_state != self._state:
            self.transition_to(next_state)
        return done

    def _drive(self) -> None:
        for _ in range(_MAX_STEPS):
            current = self._state
            next_state, done = self.process_state()
            if next_state != current:
                self.transition_to(next_state)
            if done or next_state == current:
                return
        raise DriverError(
            f"state machine did not settle after {_MAX_STEPS} steps (state {self._state})"
        )

    # State handlers ---------------------------------------------------

    def _handle_waiting(self) -> tuple[State, bool]:
        self.context.add_message("assistant", "Waiting for task assignment")
        if self._data.get(_TASK_CONTENT):
            return State.PLANNING, False
        return State.WAITING, False

    def _handle_planning(self) -> tuple[State, bool]:
        self.context.add_message("assistant", "Planning phase: analyzing requirements")
        task = _text(self._data.get(_TASK_CONTENT))

        if not self._data.get("question_answered") and self._detect_help_request(task):
            self._data["question_reason"] = "Help requested during planning"
            self._data["question_content"] = task
            self._data["question_origin"] = State.PLANNING.value
            return State.QUESTION, False

        if self.llm_client is not None:
            return self._plan_with_llm(task)

        self._data["plan"] = "Mock plan: Analyzed requirements, ready to proceed"
        self._data["planning_completed_at"] = _now()
        return State.PLAN_REVIEW, False

    def _plan_with_llm(self, task: str) -> tuple[State, bool]:
        prompt = (
            f"Task:\n{task}\n\n"
            f"Context:\n{self._format_context()}\n\n"
            "Write an implementation plan for this task."
        )
        assert self.llm_client is not None
        try:
            response = self.llm_client.complete(
                [{"role": "user", "content": prompt}], _PLANNING_MAX_TOKENS
            )
        except Exception as exc:
            raise DriverError(f"failed to get LLM planning response: {exc}") from exc
        plan = _text(getattr(response, "content", response))
        self._data["plan"] = plan
        self._data["planning_completed_at"] = _now()
        self.context.add_message("assistant", plan)
        return State.PLAN_REVIEW, False

    def _review(
        self,
        key: str,
        review_type: str,
        completed_key: str,
        approved_state: State,
        rejected_state: State,
        request: ApprovalRequest,
    ) -> tuple[State, bool]:
        done_when_approved = approved_state is State.DONE
        result = self._data.get(key)
        if isinstance(result, ApprovalResult):
            del self._data[key]
            self._data[completed_key] = _now()
            if result.status == "APPROVED":
                return approved_state, done_when_approved
            if result.status in ("REJECTED", "NEEDS_CHANGES"):
                return rejected_state, False
            raise DriverError(f"unknown approval status: {result.status}")

        if self.llm_client is None:
            approved = self._simulate_approval(_text(self._data.get(_TASK_CONTENT)))
            self._data[key] = ApprovalResult(
                review_type, "APPROVED" if approved else "REJECTED", _now()
            )
            self._data[completed_key] = _now()
            if approved:
                return approved_state, done_when_approved
            return rejected_state, False

        self._pending_approval = request
        return self._state, False

    def _handle_plan_review(self) -> tuple[State, bool]:
        self.context.add_message(
            "assistant", "Plan review phase: requesting architect approval"
        )
        request = ApprovalRequest(
            content=_text(self._data.get("plan")),
            reason="Plan requires architect approval before proceeding to coding",
            type="plan",
        )
        return self._review(
            _PLAN_APPROVAL_RESULT, "plan", "plan_review_completed_at",
            State.CODING, State.PLANNING, request,
        )

    def _handle_coding(self) -> tuple[State, bool]:
        self.context.add_message("assistant", "Coding phase: implementing solution")
        self._data["code_generated"] = True
        self._data["coding_completed_at"] = _now()
        return State.TESTING, False

    def _handle_testing(self) -> tuple[State, bool]:
        self.context.add_message("assistant", "Testing phase: running tests")
        task = _text(self._data.get(_TASK_CONTENT)).lower()
        should_fail = "test fail" in task or "simulate fail" in task
        tests_passed = not should_fail or "fixes_applied" in self._data
        self._data["tests_passed"] = tests_passed
        self._data["testing_completed_at"] = _now()
        return (State.CODE_REVIEW if tests_passed else State.FIXING), False

    def _handle_fixing(self) -> tuple[State, bool]:
        self.context.add_message("assistant", "Fixing phase: addressing issues")
        self._data["fixes_applied"] = True
        self._data["fixing_completed_at"] = _now()
        return State.CODING, False

    def _handle_code_review(self) -> tuple[State, bool]:
        self.context.add_message(
            "assistant", "Code review phase: requesting architect approval"
        )
        generated = self._data.get("code_generated")
        request = ApprovalRequest(
            content=f"Code implementation completed: {_format_value(generated)}",
            reason="Code requires architect approval before completion",
            type="code",
        )
        return self._review(
            _CODE_APPROVAL_RESULT, "code", "code_review_completed_at",
            State.DONE, State.FIXING, request,
        )

    def _handle_question(self) -> tuple[State, bool]:
        self.context.add_message("assistant", "Question phase: awaiting clarification")
        answer = self._data.pop(_ARCHITECT_ANSWER, None)
        if answer:
            self._data["question_answered"] = True
            self._data["architect_response"] = _text(answer)
            self._data["question_completed_at"] = _now()
            origin = _text(self._data.get("question_origin"))
            return {
                "CODING": State.CODING,
                "FIXING": State.FIXING,
            }.get(origin, State.PLANNING), False

        if self._pending_question is None:
            self._pending_question = Question(
                content=_text(self._data.get("question_content")),
                reason=_text(self._data.get("question_reason")),
                origin=_text(self._data.get("question_origin")),
            )
        return State.QUESTION, False

    # Helpers ----------------------------------------------------------

    @staticmethod
    def _detect_help_request(task: str) -> bool:
        lower = task.lower()
        return any(keyword in lower for keyword in _HELP_KEYWORDS)

    @staticmethod
    def _simulate_approval(task: str) -> bool:
        lower = task.lower()
        if "approve" in lower or "looks good" in lower:
            return True
        return not any(word in lower for word in ("change", "fix", "modify"))

    def _format_context(self) -> str:
        messages = self.context.messages()
        if not messages:
            return "No previous context"
        return "\n".join(f"{m.role}: {m.content}" for m in messages)

    # Architect interaction --------------------------------------------

    def pending_approval_request(self) -> Optional[ApprovalRequest]:
        return self._pending_approval

    def clear_pending_approval_request(self) -> None:
        self._pending_approval = None

    def pending_question(self) -> Optional[Question]:
        return self._pending_question

    def clear_pending_question(self) -> None:
        self._pending_question = None

    def process_approval_result(self, approval_status: str, approval_type: str) -> None:
        """Record the architect's verdict on the plan or the code."""
        keys = {"plan": _PLAN_APPROVAL_RESULT, "code": _CODE_APPROVAL_RESULT}
        if approval_type not in keys:
            raise DriverError(f"unknown approval type: {approval_type}")
        self._data[keys[approval_type]] = ApprovalResult(
            approval_type, approval_status, _now()
        )

    def process_answer(self, answer: str) -> None:
        self._data[_ARCHITECT_ANSWER] = answer

    def context_summary(self) -> str:
        messages = self.context.messages()
        if not messages:
            return "No context available"
        last = messages[-1]
        return f"Context summary: {len(messages)} messages, last: {last.role}: {last.content}"