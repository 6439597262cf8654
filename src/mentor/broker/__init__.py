"""Serialized broker for backend conversations."""

from mentor.broker.circuit import CircuitBreaker, CircuitState
from mentor.broker.core import Broker, ChatRequest, ChatResponse
from mentor.broker.executor import DISALLOWED_TOOLS, BackendExecutor, Invocation, ProcessHandle
from mentor.broker.retry import RetryPolicy, is_retryable
from mentor.broker.session import SessionPlan, SessionTracker
from mentor.broker.stream import AssistantRecord, InitRecord, ResultRecord, StreamOutput, decode_record, parse_stream

__all__ = [
    "DISALLOWED_TOOLS",
    "AssistantRecord",
    "BackendExecutor",
    "Broker",
    "ChatRequest",
    "ChatResponse",
    "CircuitBreaker",
    "CircuitState",
    "InitRecord",
    "Invocation",
    "ProcessHandle",
    "ResultRecord",
    "RetryPolicy",
    "SessionPlan",
    "SessionTracker",
    "StreamOutput",
    "decode_record",
    "is_retryable",
    "parse_stream",
]
