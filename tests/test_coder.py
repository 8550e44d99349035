from types import SimpleNamespace

import pytest

from agentorch.coder import Coder, CoderError
from agentorch.contextmgr import ModelConfig
from agentorch.dispatcher import AgentMsg, MsgType
from agentorch.driver import State

HEALTH_TASK = "Create a /health endpoint that returns JSON with status:ok and timestamp"
MODEL = ModelConfig(max_context_tokens=4096, max_reply_tokens=1024, compaction_buffer=512)


class FakeLLM:
    def __init__(self, content="Plan: build it", fail=False):
        self.content = content
        self.fail = fail
        self.calls = []

    def complete(self, messages, max_tokens):
        self.calls.append((messages, max_tokens))
        if self.fail:
            raise RuntimeError("llm down")
        return SimpleNamespace(content=self.content)


def make_coder(llm=None):
    return Coder("test-coder", "Test Coder", "", MODEL, llm)


def task_msg(content, **extra):
    msg = AgentMsg(MsgType.TASK, "architect", "test-coder")
    msg.payload["content"] = content
    msg.payload.update(extra)
    return msg


def test_task_in_mock_mode_completes():
    coder = make_coder()
    msg = task_msg(HEALTH_TASK, story_id="001")
    reply = coder.process_message(msg)
    assert reply.type is MsgType.RESULT
    assert reply.from_agent == "test-coder"
    assert reply.to_agent == "architect"
    assert reply.parent_msg_id == msg.id
    assert reply.payload["status"] == "completed"
    assert reply.payload["final_state"] == "DONE"
    assert reply.payload["task_content"] == HEALTH_TASK
    assert "coding_completed_at" in reply.payload
    assert reply.payload["context_summary"].startswith("Context summary:")
    assert reply.metadata["processing_agent"] == "coder"
    assert reply.metadata["task_type"] == "state_machine"
    assert reply.metadata["story_id"] == "001"


def test_task_without_string_story_id_has_no_story_metadata():
    coder = make_coder()
    reply = coder.process_message(task_msg(HEALTH_TASK, story_id=7))
    assert "story_id" not in reply.metadata


def test_task_missing_content_raises():
    coder = make_coder()
    msg = AgentMsg(MsgType.TASK, "architect", "test-coder")
    with pytest.raises(CoderError, match="missing content"):
        coder.process_message(msg)


def test_task_non_string_content_raises():
    coder = make_coder()
    with pytest.raises(CoderError, match="content must be a string"):
        coder.process_message(task_msg(42))


def test_help_task_sends_question_then_answer_resumes():
    coder = make_coder()
    task = "I need help understanding this unclear requirement"
    msg = task_msg(task)
    reply = coder.process_message(msg)
    assert reply.type is MsgType.QUESTION
    assert reply.to_agent == "architect"
    assert reply.payload["question"] == task
    assert reply.payload["reason"] == "Help requested during planning"
    assert reply.payload["current_state"] == "QUESTION"
    assert reply.metadata["original_sender"] == "architect"
    assert reply.metadata["question_type"] == "state_machine_help"
    assert coder.driver.pending_question() is None

    answer = AgentMsg(MsgType.ANSWER, "architect", "test-coder")
    answer.payload["answer"] = "Here's the clarification you need..."
    ack = coder.process_message(answer)
    assert ack.type is MsgType.RESULT
    assert ack.payload["status"] == "answer_received"
    assert ack.payload["answer"] == "Here's the clarification you need..."
    assert coder.driver.current_state() is State.DONE


def test_llm_mode_requests_plan_then_code_approval():
    llm = FakeLLM(content="Mock plan: Create REST API with proper error handling")
    coder = make_coder(llm)
    reply = coder.process_message(task_msg("Create API endpoint"))
    assert reply.type is MsgType.REQUEST
    assert reply.to_agent == "architect"
    assert reply.payload["request"] == "Mock plan: Create REST API with proper error handling"
    assert reply.payload["request_type"] == "approval"
    assert reply.payload["approval_type"] == "plan"
    assert reply.payload["current_state"] == "PLAN_REVIEW"
    assert reply.metadata["request_type"] == "approval_request"
    assert coder.driver.pending_approval_request() is None
    assert len(llm.calls) == 1

    approval = AgentMsg(MsgType.RESULT, "architect", "test-coder")
    approval.payload.update(status="APPROVED", request_type="approval", approval_type="plan")
    ack = coder.process_message(approval)
    assert ack.payload["status"] == "result_processed"
    assert ack.payload["original_status"] == "APPROVED"
    assert coder.driver.current_state() is State.CODE_REVIEW

    code_approval = AgentMsg(MsgType.RESULT, "architect", "test-coder")
    code_approval.payload.update(status="APPROVED", request_type="approval", approval_type="code")
    coder.process_message(code_approval)
    assert coder.driver.current_state() is State.DONE


def test_llm_failure_returns_error_message():
    coder = make_coder(FakeLLM(fail=True))
    msg = task_msg("Create API endpoint")
    reply = coder.process_message(msg)
    assert reply.type is MsgType.ERROR
    assert reply.to_agent == "architect"
    assert reply.payload["original_message_id"] == msg.id
    assert "failed to get LLM planning response" in reply.payload["error"]
    assert reply.metadata["error_type"] == "processing_error"


def test_result_with_unknown_approval_type_raises():
    coder = make_coder()
    msg = AgentMsg(MsgType.RESULT, "architect", "test-coder")
    msg.payload.update(status="APPROVED", request_type="approval", approval_type="design")
    with pytest.raises(CoderError, match="unknown approval type"):
        coder.process_message(msg)


def test_result_missing_status_raises():
    coder = make_coder()
    msg = AgentMsg(MsgType.RESULT, "architect", "test-coder")
    with pytest.raises(CoderError, match="missing status"):
        coder.process_message(msg)


def test_answer_missing_answer_raises():
    coder = make_coder()
    msg = AgentMsg(MsgType.ANSWER, "architect", "test-coder")
    with pytest.raises(CoderError, match="missing answer"):
        coder.process_message(msg)


def test_question_is_forwarded_to_architect():
    coder = make_coder()
    msg = AgentMsg(MsgType.QUESTION, "coder-002", "test-coder")
    msg.payload["question"] = "How should I implement this?"
    reply = coder.process_message(msg)
    assert reply.type is MsgType.QUESTION
    assert reply.to_agent == "architect"
    assert reply.parent_msg_id == msg.id
    assert reply.payload["question"] == "How should I implement this?"
    assert reply.payload["context"] == "State machine driver question"
    assert reply.payload["current_state"] == "WAITING"
    assert reply.metadata["original_sender"] == "coder-002"


def test_request_is_forwarded_to_architect():
    coder = make_coder()
    msg = AgentMsg(MsgType.REQUEST, "coder-002", "test-coder")
    msg.payload["request"] = "Please review"
    reply = coder.process_message(msg)
    assert reply.type is MsgType.REQUEST
    assert reply.payload["request"] == "Please review"
    assert reply.payload["context"] == "Code approval request"
    assert reply.metadata["original_sender"] == "coder-002"


def test_request_non_string_raises():
    coder = make_coder()
    msg = AgentMsg(MsgType.REQUEST, "coder-002", "test-coder")
    msg.payload["request"] = ["not", "text"]
    with pytest.raises(CoderError, match="request must be a string"):
        coder.process_message(msg)


def test_shutdown_message_is_acknowledged():
    coder = make_coder()
    msg = AgentMsg(MsgType.SHUTDOWN, "orchestrator", "test-coder")
    reply = coder.process_message(msg)
    assert reply.type is MsgType.RESULT
    assert reply.to_agent == "orchestrator"
    assert reply.payload["status"] == "shutdown_acknowledged"
    assert reply.payload["final_state"] == "WAITING"
    assert reply.metadata["agent_type"] == "coder"


def test_unsupported_message_type_raises():
    coder = make_coder()
    msg = AgentMsg(MsgType.ERROR, "architect", "test-coder")
    with pytest.raises(CoderError, match="unsupported message type"):
        coder.process_message(msg)


def test_agent_id_and_name_are_kept():
    coder = make_coder()
    assert coder.agent_id == "test-coder"
    assert coder.name == "Test Coder"
    assert coder.driver.agent_id == "test-coder"