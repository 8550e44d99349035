# agentorch

This package provides building blocks for a system in which an architect agent hands
coding tasks to coder agents and reviews their work. It uses only the standard library.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `agentorch.logx`
  - `Logger(agent_id, stream=None)` writes lines of the form
    `[2024-01-01T12:00:00.000Z] [agent-id] INFO: message`. The default stream is standard error.
  - The methods are `debug`, `info`, `warn` and `error`. They take printf-style arguments, and `%v` is accepted as well.
  - `with_agent_id` returns a logger that shares the same stream.
  - `Level` lists the four severities.
- `agentorch.limiter`
  - `Limiter(models, schedule_reset=True)` takes a mapping from model name to `ModelLimits(max_tokens_per_minute, max_budget_per_day_usd, max_agents)`.
  - Each model gets a `ModelLimiter` with:
    - a token bucket that refills once per whole minute,
    - a daily budget in USD,
    - a cap on concurrent agents.
  - The methods are `reserve`, `reserve_budget`, `reserve_agent`, `release_agent` and `status`. `status` returns a `ModelStatus`.
  - When a limit is hit, they raise `RateLimitError`, `BudgetExceededError` or `AgentLimitError`. An unknown model raises `UnknownModelError`. All of these are subclasses of `LimiterError`.
  - `reset_daily` clears all counters. Unless `schedule_reset=False`, a timer calls it at local midnight.
  - `close()` (or a `with` block) cancels the timer.
- `agentorch.contextmgr`
  - `ContextManager(model_config=None)` holds `Message(role, content)` entries.
  - It counts tokens as the UTF-8 byte length of roles and contents.
  - `compact_if_needed` drops the oldest messages, keeping the first, once the count passes the `ModelConfig` threshold. That threshold is `max_context_tokens - max_reply_tokens - compaction_buffer`. Without a config, the threshold is 10,000.
  - `summary`, `should_compact` and `compaction_info` report on the current state.
- `agentorch.eventlog`
  - `EventLogWriter(log_dir)` appends one JSON record per line to `events-YYYY-MM-DD.jsonl`. It switches files when the date changes and syncs each write.
  - It accepts any object with `to_json()` or any JSON-serialisable value.
  - `read_messages(path)` returns the records as dicts.
  - `list_log_files(log_dir)` returns the log files, sorted.
  - Failures raise `EventLogError`.
- `agentorch.dispatcher`
  - `AgentMsg` and `MsgType` define the message format. `AgentMsg` has `to_json`/`from_json` and `to_dict`/`from_dict`.
  - `Dispatcher(rate_limiter, event_log, max_retry_attempts=3, retry_backoff_multiplier=2.0, roster=())` logs every message and routes it:
    - TASK goes to the shared work queue.
    - QUESTION and REQUEST go to the architect queue.
    - RESULT and ANSWER go to the coder queue.
  - Any other type is delivered straight to its target agent. The dispatcher retries with exponential backoff and reserves a rate-limiter slot for each attempt.
  - Agents pull work with `pull_shared_work`, `pull_architect_work` and `pull_coder_feedback(agent_id)`.
  - `resolve_agent_name` maps `architect` and `coder` to the first registered agent of that type in `roster`. The roster is a sequence of `(agent_type, agent_id)` pairs.
  - `subscribe_idle_agents` returns a `queue.Queue`. It receives the id of every busy agent that reports a completion RESULT, and receives `None` once the dispatcher stops.
  - `start()` runs a background worker that drains messages queued by `dispatch_message`. `stop(timeout)` raises `TimeoutError` if the worker does not finish in time.
- `agentorch.driver`
  - `CoderDriver(agent_id, model_config=None, llm_client=None, work_dir="")` is a state machine over `State`: WAITING → PLANNING → PLAN_REVIEW → CODING → TESTING → CODE_REVIEW → DONE. FIXING and QUESTION are detours.
  - A task that asks for help moves the machine to QUESTION and leaves a pending `Question`.
  - With an LLM client, plan and code reviews leave a pending `ApprovalRequest`.
  - Feed replies back with `process_answer` and `process_approval_result`, then call `run()`.
- `agentorch.coder`
  - `Coder(agent_id, name="", work_dir="", model_config=None, llm_client=None)` is an agent for the dispatcher.
  - `process_message` turns an `AgentMsg` into driver actions and returns the reply: a RESULT, a QUESTION or REQUEST for the architect, or an ERROR.
  - It raises `CoderError` for malformed messages.

## Example

```python
from agentorch.contextmgr import ModelConfig
from agentorch.driver import CoderDriver, State
from agentorch.limiter import Limiter, ModelLimits

config = ModelConfig(max_context_tokens=4096, max_reply_tokens=1024, compaction_buffer=512)
driver = CoderDriver("coder-001", config)
driver.process_task("Create a /health endpoint that returns JSON")
assert driver.current_state() is State.DONE

with Limiter({"claude": ModelLimits(1000, 25.0, 3)}, schedule_reset=False) as limiter:
    limiter.reserve("claude", 300)
    assert limiter.status("claude").tokens == 700
```

## What it does not do

- There is no command-line program or server. The pieces are meant to be wired together by your own code.
- No LLM client is included. Pass any object with `complete(messages, max_tokens)` to the driver. The response's `content` attribute, or the response itself, is used as the plan.
- The CODING, TESTING and FIXING phases write no code and run no tests. They only record flags and timestamps in the driver's state data.
- Without a client, the driver approves its own plans and code.
- Driver state lives in memory and is not persisted.