"""Message dispatch, rate limiting, event logging, context management and a coder state machine for agent orchestration."""

__version__ = "0.1.0"

__all__ = ["coder", "contextmgr", "dispatcher", "driver", "eventlog", "limiter", "logx"]