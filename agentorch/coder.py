"""Coding agent that answers dispatcher messages by driving its state machine."""

from __future__ import annotations

from typing import Any, Callable, Optional

from .contextmgr import ModelConfig
from .dispatcher import AgentMsg, MsgType
from .driver import CoderDriver, DriverError, State
from .logx import Logger


class CoderError(Exception):
    """Raised when a message cannot be handled by the coder."""


def _require_text(msg: AgentMsg, key: str, missing: str) -> str:
    if key not in msg.payload:
        raise CoderError(missing)
    value = msg.payload[key]
    if not isinstance(value, str):
        raise CoderError(f"{key} must be a string")
    return value


class Coder:
    """A coding agent: turns incoming messages into driver work and replies.

    Without an LLM client the driver runs in mock mode and approves its own
    plans and code; with one, reviews are sent to the architect.
    """

    def __init__(
        self,
        agent_id: str,
        name: str = "",
        work_dir: str = "",
        model_config: Optional[ModelConfig] = None,
        llm_client: Any = None,
    ) -> None:
        self.agent_id = agent_id
        self.name = name
        self.work_dir = work_dir
        self.logger = Logger(agent_id)
        self.driver = CoderDriver(agent_id, model_config, llm_client, work_dir)

    def process_message(self, msg: AgentMsg) -> AgentMsg:
        """Handle one message and return the reply to send."""
        self.logger.info("Processing message %s from %s", msg.id, msg.from_agent)
        handlers: dict[MsgType, Callable[[AgentMsg], AgentMsg]] = {
            MsgType.TASK: self._handle_task,
            MsgType.QUESTION: self._handle_question,
            MsgType.ANSWER: self._handle_answer,
            MsgType.REQUEST: self._handle_request,
            MsgType.RESULT: self._handle_result,
            MsgType.SHUTDOWN: self._handle_shutdown,
        }
        handler = handlers.get(msg.type)
        if handler is None:
            raise CoderError(f"unsupported message type: {msg.type}")
        return handler(msg)

    def shutdown(self) -> None:
        """Stop the agent; driver state needs no extra cleanup."""
        self.logger.info("Coder agent shutting down")

    # Helpers ------------------------------------------------------------

    def _reply(self, kind: MsgType, to_agent: str, parent: AgentMsg) -> AgentMsg:
        reply = AgentMsg(kind, self.agent_id, to_agent)
        reply.parent_msg_id = parent.id
        return reply

    def _current_state(self) -> str:
        return self.driver.current_state().value

    def _continue(self) -> None:
        try:
            self.driver.run()
        except DriverError as exc:
            self.logger.error("Failed to continue state machine processing: %s", exc)

    # Handlers -----------------------------------------------------------

    def _handle_task(self, msg: AgentMsg) -> AgentMsg:
        self.driver.initialize()
        content = _require_text(msg, "content", "missing content in task message")
        self.logger.info("Processing coding task with state machine: %s", content)

        try:
            self.driver.process_task(content)
        except DriverError as exc:
            error = self._reply(MsgType.ERROR, msg.from_agent, msg)
            error.payload["error"] = str(exc)
            error.payload["original_message_id"] = msg.id
            error.metadata["error_type"] = "processing_error"
            return error

        question = self.driver.pending_question()
        if question is not None:
            self.logger.info("Sending QUESTION message to architect: %s", question.reason)
            reply = self._reply(MsgType.QUESTION, "architect", msg)
            reply.payload["question"] = question.content
            reply.payload["reason"] = question.reason
            reply.payload["current_state"] = self._current_state()
            reply.metadata["original_sender"] = msg.from_agent
            reply.metadata["question_type"] = "state_machine_help"
            self.driver.clear_pending_question()
            return reply

        request = self.driver.pending_approval_request()
        if request is not None:
            self.logger.info(
                "Sending REQUEST message to architect for approval: %s", request.reason
            )
            approval_type = (
                "code" if self.driver.current_state() is State.CODE_REVIEW else "plan"
            )
            reply = self._reply(MsgType.REQUEST, "architect", msg)
            reply.payload["request"] = request.content
            reply.payload["reason"] = request.reason
            reply.payload["current_state"] = self._current_state()
            reply.payload["request_type"] = "approval"
            reply.payload["approval_type"] = approval_type
            reply.metadata["original_sender"] = msg.from_agent
            reply.metadata["request_type"] = "approval_request"
            self.driver.clear_pending_approval_request()
            return reply

        result = self._reply(MsgType.RESULT, msg.from_agent, msg)
        result.payload["status"] = "completed"
        result.payload["final_state"] = self._current_state()
        result.payload.update(self.driver.state_data())
        result.payload["context_summary"] = self.driver.context_summary()
        result.metadata["processing_agent"] = "coder"
        result.metadata["task_type"] = "state_machine"
        story_id = msg.payload.get("story_id")
        if isinstance(story_id, str):
            result.metadata["story_id"] = story_id

        self.logger.info("Completed task %s in state %s", msg.id, self._current_state())
        return result

    def _handle_question(self, msg: AgentMsg) -> AgentMsg:
        question = _require_text(msg, "question", "missing question in message")
        self.logger.info("Received question: %s", question)
        reply = self._reply(MsgType.QUESTION, "architect", msg)
        reply.payload["question"] = question
        reply.payload["context"] = "State machine driver question"
        reply.payload["current_state"] = self._current_state()
        reply.metadata["original_sender"] = msg.from_agent
        return reply

    def _handle_answer(self, msg: AgentMsg) -> AgentMsg:
        answer = _require_text(msg, "answer", "missing answer in message")
        self.logger.info("Received answer from architect: %s", answer)
        self.driver.initialize()
        self.driver.process_answer(answer)
        self._continue()

        reply = self._reply(MsgType.RESULT, msg.from_agent, msg)
        reply.payload["status"] = "answer_received"
        reply.payload["answer"] = answer
        return reply

    def _handle_request(self, msg: AgentMsg) -> AgentMsg:
        request = _require_text(msg, "request", "missing request in message")
        self.logger.info("Received request: %s", request)
        reply = self._reply(MsgType.REQUEST, "architect", msg)
        reply.payload["request"] = request
        reply.payload["context"] = "Code approval request"
        reply.payload["current_state"] = self._current_state()
        reply.metadata["original_sender"] = msg.from_agent
        return reply

    def _handle_result(self, msg: AgentMsg) -> AgentMsg:
        status = _require_text(msg, "status", "missing status in result message")
        self.logger.info("Received approval result with status: %s", status)
        self.driver.initialize()

        if "request_type" in msg.payload:
            if msg.payload["request_type"] == "approval":
                approval_type = msg.payload.get("approval_type")
                if not isinstance(approval_type, str):
                    approval_type = ""
                try:
                    self.driver.process_approval_result(status, approval_type)
                except DriverError as exc:
                    raise CoderError(f"failed to process approval result: {exc}") from exc
        elif "answer" in msg.payload:
            answer = msg.payload["answer"]
            self.driver.process_answer(answer if isinstance(answer, str) else "")

        self._continue()

        reply = self._reply(MsgType.RESULT, msg.from_agent, msg)
        reply.payload["status"] = "result_processed"
        reply.payload["original_status"] = status
        return reply

    def _handle_shutdown(self, msg: AgentMsg) -> AgentMsg:
        self.logger.info("Received shutdown request")
        reply = self._reply(MsgType.RESULT, msg.from_agent, msg)
        reply.payload["status"] = "shutdown_acknowledged"
        reply.payload["final_state"] = self._current_state()
        reply.metadata["agent_type"] = "coder"
        return reply