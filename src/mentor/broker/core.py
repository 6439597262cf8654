"""Single-flight request broker in front of the backend executor."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeAlias

from loguru import logger

from mentor.broker.circuit import CircuitBreaker, CircuitState
from mentor.broker.executor import Invocation
from mentor.broker.retry import RetryPolicy
from mentor.broker.session import SessionPlan, SessionTracker
from mentor.broker.stream import StreamOutput
from mentor.config import DEFAULT_DEGRADED_TEXT, DEFAULT_RESUME_HINT
from mentor.errors import BackendError, BrokerClosedError, BrokerOverloadedError
from mentor.memory.directives import DirectiveExtractor, MarkerExtractor, MemoryUpdate

DEFAULT_TOPIC = "math"
DEFAULT_COMPACTION_TIMEOUT_SECONDS = 30.0


class Executor(Protocol):
    async def run(self, invocation: Invocation) -> StreamOutput: ...


class InstructionSource(Protocol):
    def compose(self, topic: str, memory_context: str) -> str: ...


class MemoryBackend(Protocol):
    def context_section(self) -> str: ...

    def apply_updates(self, updates: list[MemoryUpdate]) -> int: ...

    def needs_compaction(self) -> bool: ...

    def compaction_prompt(self) -> str: ...

    def apply_compacted(self, raw: str) -> bool: ...


@dataclass(frozen=True)
class ChatResponse:
    text: str
    session_id: str
    is_error: bool = False


@dataclass(frozen=True)
class ChatRequest:
    """One queued chat turn and the future its caller awaits."""

    message: str
    resume_session_id: str | None
    topic: str | None
    future: asyncio.Future[ChatResponse] = field(repr=False, compare=False)


@dataclass(frozen=True)
class CompactionRequest:
    """A session-less memory compaction run sharing the chat queue."""

    prompt: str
    future: asyncio.Future[str | None] = field(repr=False, compare=False)


QueuedJob: TypeAlias = ChatRequest | CompactionRequest


class Broker:
    """Serialize backend conversations through one FIFO queue and one worker.

    The worker is the only code that touches session and circuit state, so
    neither needs a lock. Callers only append to the queue and await their
    own future.
    """

    def __init__(
        self,
        executor: Executor,
        *,
        instructions: InstructionSource | None = None,
        memory: MemoryBackend | None = None,
        directives: DirectiveExtractor | None = None,
        breaker: CircuitBreaker | None = None,
        retry: RetryPolicy | None = None,
        tracker: SessionTracker | None = None,
        degraded_text: str = DEFAULT_DEGRADED_TEXT,
        resume_hint: str = DEFAULT_RESUME_HINT,
        max_queue_depth: int | None = None,
        compaction_timeout: float = DEFAULT_COMPACTION_TIMEOUT_SECONDS,
    ) -> None:
        self._executor = executor
        self._instructions = instructions
        self._memory = memory
        self._directives = directives or MarkerExtractor()
        self._breaker = breaker or CircuitBreaker()
        self._retry = retry or RetryPolicy()
        self._tracker = tracker or SessionTracker(DEFAULT_TOPIC)
        self._degraded_text = degraded_text
        self._resume_hint = resume_hint
        self._max_queue_depth = max_queue_depth
        self._compaction_timeout = compaction_timeout
        self._queue: asyncio.Queue[QueuedJob] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._closed = False

    async def __aenter__(self) -> Broker:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    @property
    def circuit_state(self) -> CircuitState:
        return self._breaker.state

    @property
    def session_id(self) -> str | None:
        return self._tracker.session_id

    @property
    def topic(self) -> str:
        return self._tracker.topic

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(
        self,
        message: str,
        resume_session_id: str | None = None,
        topic: str | None = None,
    ) -> asyncio.Future[ChatResponse]:
        """Queue one chat turn and return the future that will carry its response."""
        future: asyncio.Future[ChatResponse] = asyncio.get_running_loop().create_future()
        self._enqueue(ChatRequest(message=message, resume_session_id=resume_session_id, topic=topic, future=future))
        return future

    async def chat(
        self,
        message: str,
        resume_session_id: str | None = None,
        topic: str | None = None,
    ) -> ChatResponse:
        return await self.submit(message, resume_session_id, topic)

    def reset_session(self) -> None:
        self._tracker.reset()

    async def compact_memory(self) -> bool:
        """Ask the backend to tidy learner memory when it has grown too large."""
        if self._memory is None or not self._memory.needs_compaction():
            return False
        logger.info("broker.compaction.start")
        future: asyncio.Future[str | None] = asyncio.get_running_loop().create_future()
        self._enqueue(CompactionRequest(prompt=self._memory.compaction_prompt(), future=future))
        raw = await future
        if not raw:
            logger.warning("broker.compaction.failed reason=no_output")
            return False
        return await asyncio.to_thread(self._memory.apply_compacted, raw)

    async def aclose(self) -> None:
        """Stop the worker and fail everything still waiting."""
        self._closed = True
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
        while not self._queue.empty():
            _fail(self._queue.get_nowait(), BrokerClosedError("broker closed before request ran"))
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def _enqueue(self, job: QueuedJob) -> None:
        if self._closed:
            raise BrokerClosedError("broker is closed")
        if self._max_queue_depth is not None and self._queue.qsize() >= self._max_queue_depth:
            logger.warning("broker.overloaded depth={}", self._queue.qsize())
            raise BrokerOverloadedError(f"request queue is full ({self._max_queue_depth} waiting)")
        self._queue.put_nowait(job)
        logger.debug("broker.enqueue kind={} depth={}", type(job).__name__, self._queue.qsize())
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain(), name="mentor-broker-worker")

    async def _drain(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                match job:
                    case ChatRequest():
                        await self._process_chat(job)
                    case CompactionRequest():
                        await self._process_compaction(job)
            except asyncio.CancelledError:
                _fail(job, BrokerClosedError("broker closed during request"))
                raise
            finally:
                self._queue.task_done()

    async def _process_chat(self, request: ChatRequest) -> None:
        if request.future.done():
            logger.info("broker.skip reason=caller_gone")
            return
        try:
            response = await self._execute(request)
        except Exception as exc:
            logger.error("broker.request.failed error={}", exc)
            _settle(request.future, error=exc)
        else:
            _settle(request.future, result=response)

    async def _execute(self, request: ChatRequest) -> ChatResponse:
        if not self._breaker.can_execute():
            logger.warning("broker.circuit_open action=degraded")
            return ChatResponse(
                text=self._degraded_text,
                session_id=request.resume_session_id or self._tracker.session_id or "",
                is_error=True,
            )

        plan = self._tracker.prepare(resume_session_id=request.resume_session_id, topic=request.topic)
        invocation = self._build_invocation(request.message, plan)
        output = await self._retry.run(lambda: self._executor.run(invocation), self._breaker)
        self._tracker.record(output.session_id)
        return ChatResponse(
            text=self._consume_directives(output.text),
            session_id=self._tracker.session_id or "",
            is_error=False,
        )

    def _build_invocation(self, message: str, plan: SessionPlan) -> Invocation:
        if plan.is_new_session:
            return Invocation(message=message, instructions=self._compose_instructions(plan.topic))
        if self._resume_hint:
            message = f"{message}\n\n{self._resume_hint}"
        return Invocation(message=message, resume_session_id=plan.resume_session_id)

    def _compose_instructions(self, topic: str) -> str | None:
        if self._instructions is None:
            return None
        memory_context = self._memory.context_section() if self._memory is not None else ""
        return self._instructions.compose(topic, memory_context)

    def _consume_directives(self, text: str) -> str:
        updates = self._directives.extract(text)
        compaction = self._directives.extract_compaction(text)
        if self._memory is not None and (updates or compaction):
            logger.info("broker.directives updates={} compaction={}", len(updates), compaction is not None)
            self._spawn_background(self._apply_memory(self._memory, updates, compaction), name="memory.apply")
        return self._directives.strip(text)

    async def _apply_memory(self, memory: MemoryBackend, updates: list[MemoryUpdate], compaction: str | None) -> None:
        if updates:
            await asyncio.to_thread(memory.apply_updates, updates)
        if compaction:
            await asyncio.to_thread(memory.apply_compacted, compaction)

    async def _process_compaction(self, request: CompactionRequest) -> None:
        if request.future.done():
            logger.info("broker.compaction.skip reason=caller_gone")
            return
        invocation = Invocation(message=request.prompt, ephemeral=True, timeout=self._compaction_timeout)
        try:
            output = await self._executor.run(invocation)
        except BackendError as exc:
            logger.warning("broker.compaction.error error={}", exc)
            _settle(request.future, result=None)
            return
        except Exception:
            logger.exception("broker.compaction.error")
            _settle(request.future, result=None)
            return
        _settle(request.future, result=output.text or None)

    def _spawn_background(self, coro: Any, *, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        if (exc := task.exception()) is not None:
            logger.opt(exception=exc).error("broker.background.failed task={}", task.get_name())


def _settle(future: asyncio.Future[Any], *, result: Any = None, error: BaseException | None = None) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


def _fail(job: QueuedJob, error: BaseException) -> None:
    _settle(job.future, error=error)
