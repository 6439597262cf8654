import asyncio
from collections.abc import Awaitable, Callable

import pytest

from mentor.broker.circuit import CircuitBreaker, CircuitState
from mentor.broker.core import Broker
from mentor.broker.executor import Invocation
from mentor.broker.retry import RetryPolicy
from mentor.broker.stream import StreamOutput
from mentor.errors import BackendExitError, BrokerClosedError, BrokerOverloadedError, SpawnError
from mentor.memory.directives import MemoryUpdate

Handler = Callable[[Invocation], Awaitable[StreamOutput]]


async def _echo(invocation: Invocation) -> StreamOutput:
    return StreamOutput(text=f"re: {invocation.message}", session_id="s1")


class FakeExecutor:
    def __init__(self, handler: Handler = _echo) -> None:
        self.handler = handler
        self.invocations: list[Invocation] = []
        self.active = 0
        self.max_active = 0

    async def run(self, invocation: Invocation) -> StreamOutput:
        self.invocations.append(invocation)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.005)
            return await self.handler(invocation)
        finally:
            self.active -= 1


class GatedExecutor(FakeExecutor):
    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def run(self, invocation: Invocation) -> StreamOutput:
        self.invocations.append(invocation)
        self.started.set()
        await self.release.wait()
        return await _echo(invocation)


class FakeInstructions:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    def compose(self, topic: str, memory_context: str) -> str:
        self.calls.append((topic, memory_context))
        return f"instructions for {topic}"


class FakeMemory:
    def __init__(self, *, needs_compaction: bool = False) -> None:
        self.updates: list[MemoryUpdate] = []
        self.compacted: list[str] = []
        self._needs_compaction = needs_compaction

    def context_section(self) -> str:
        return "likes soccer"

    def apply_updates(self, updates: list[MemoryUpdate]) -> int:
        self.updates.extend(updates)
        return len(updates)

    def needs_compaction(self) -> bool:
        return self._needs_compaction

    def compaction_prompt(self) -> str:
        return "please compact"

    def apply_compacted(self, raw: str) -> bool:
        self.compacted.append(raw)
        return True


async def _no_sleep(_delay: float) -> None:
    return None


def _broker(executor: FakeExecutor, **kwargs: object) -> Broker:
    kwargs.setdefault("retry", RetryPolicy(sleep=_no_sleep))
    kwargs.setdefault("resume_hint", "")
    return Broker(executor, **kwargs)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_concurrent_requests_are_served_in_fifo_order_without_overlap() -> None:
    executor = FakeExecutor()
    broker = _broker(executor)

    responses = await asyncio.gather(*(broker.chat(f"m{index}", "s1", "math") for index in range(6)))

    assert [response.text for response in responses] == [f"re: m{index}" for index in range(6)]
    assert [invocation.message for invocation in executor.invocations] == [f"m{index}" for index in range(6)]
    assert executor.max_active == 1
    await broker.aclose()


@pytest.mark.asyncio
async def test_first_request_starts_session_then_later_requests_resume() -> None:
    executor = FakeExecutor()
    instructions = FakeInstructions()
    broker = _broker(executor, instructions=instructions, memory=FakeMemory())

    first = await broker.chat("hello", None, "math")
    await broker.chat("again", first.session_id, "math")

    new_session, resumed = executor.invocations
    assert new_session.is_new_session
    assert new_session.instructions == "instructions for math"
    assert instructions.calls == [("math", "likes soccer")]
    assert resumed.resume_session_id == "s1"
    assert resumed.instructions is None
    assert first.session_id == "s1"
    assert broker.session_id == "s1"
    await broker.aclose()


@pytest.mark.asyncio
async def test_resumed_messages_carry_the_resume_hint() -> None:
    executor = FakeExecutor()
    broker = _broker(executor, resume_hint="(remember things)")

    await broker.chat("hello")
    await broker.chat("again", "s1")

    assert executor.invocations[0].message == "hello"
    assert executor.invocations[1].message == "again\n\n(remember things)"
    await broker.aclose()


@pytest.mark.asyncio
async def test_topic_change_starts_new_session() -> None:
    executor = FakeExecutor()
    broker = _broker(executor)

    await broker.chat("hello", None, "math")
    await broker.chat("switch", "s1", "science")

    assert executor.invocations[1].is_new_session
    assert broker.topic == "science"
    await broker.aclose()


@pytest.mark.asyncio
async def test_reset_session_makes_next_request_new() -> None:
    executor = FakeExecutor()
    broker = _broker(executor)
    await broker.chat("hello")

    broker.reset_session()
    await broker.chat("again", "s1")

    assert broker.session_id == "s1"
    assert executor.invocations[1].is_new_session
    await broker.aclose()


@pytest.mark.asyncio
async def test_retryable_failure_then_success_is_transparent() -> None:
    outcomes: list[object] = [SpawnError("not yet"), StreamOutput(text="ok", session_id="s2")]

    async def _flaky(_invocation: Invocation) -> StreamOutput:
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        assert isinstance(outcome, StreamOutput)
        return outcome

    executor = FakeExecutor(_flaky)
    breaker = CircuitBreaker()
    broker = _broker(executor, breaker=breaker)

    response = await broker.chat("hi")

    assert response.text == "ok"
    assert len(executor.invocations) == 2
    assert breaker.failure_count == 0
    await broker.aclose()


@pytest.mark.asyncio
async def test_fatal_failures_open_the_circuit_and_then_degrade() -> None:
    async def _broken(_invocation: Invocation) -> StreamOutput:
        raise BackendExitError(1, "boom")

    executor = FakeExecutor(_broken)
    broker = _broker(executor, degraded_text="try later")

    for _ in range(3):
        with pytest.raises(BackendExitError):
            await broker.chat("hi")
    assert broker.circuit_state is CircuitState.OPEN

    degraded = await broker.chat("still there?", "s-client")

    assert degraded.is_error is True
    assert degraded.text == "try later"
    assert degraded.session_id == "s-client"
    assert len(executor.invocations) == 3
    await broker.aclose()


@pytest.mark.asyncio
async def test_open_circuit_recovers_through_half_open_probe() -> None:
    now = [0.0]
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=30.0, clock=lambda: now[0])
    breaker.record_failure()
    executor = FakeExecutor()
    broker = _broker(executor, breaker=breaker)

    assert (await broker.chat("hi")).is_error
    now[0] = 30.0
    response = await broker.chat("hi again")

    assert response.is_error is False
    assert broker.circuit_state is CircuitState.CLOSED
    assert len(executor.invocations) == 1
    await broker.aclose()


@pytest.mark.asyncio
async def test_memory_directives_are_stripped_and_applied_in_background() -> None:
    async def _with_markers(_invocation: Invocation) -> StreamOutput:
        return StreamOutput(text="Nice to meet you!\n[MEMORY:name=Mina]\n[MEMORY:hobby=soccer]", session_id="s1")

    memory = FakeMemory()
    broker = _broker(FakeExecutor(_with_markers), memory=memory)

    response = await broker.chat("I'm Mina and I play soccer")
    await broker.aclose()

    assert response.text == "Nice to meet you!"
    assert memory.updates == [MemoryUpdate("name", "Mina"), MemoryUpdate("hobby", "soccer")]


@pytest.mark.asyncio
async def test_failing_memory_update_does_not_reach_caller() -> None:
    class BrokenMemory(FakeMemory):
        def apply_updates(self, updates: list[MemoryUpdate]) -> int:
            raise OSError("disk full")

    async def _with_marker(_invocation: Invocation) -> StreamOutput:
        return StreamOutput(text="ok [MEMORY:grade=3]", session_id="s1")

    broker = _broker(FakeExecutor(_with_marker), memory=BrokenMemory())

    response = await broker.chat("hi")
    await broker.aclose()

    assert response.text == "ok"
    assert response.is_error is False


@pytest.mark.asyncio
async def test_queue_depth_limit_rejects_with_overloaded_error() -> None:
    executor = GatedExecutor()
    broker = _broker(executor, max_queue_depth=1)

    first = broker.submit("a")
    await executor.started.wait()
    second = broker.submit("b")
    with pytest.raises(BrokerOverloadedError):
        broker.submit("c")

    executor.release.set()
    assert (await first).text == "re: a"
    assert (await second).text == "re: b"
    await broker.aclose()


@pytest.mark.asyncio
async def test_close_fails_in_flight_and_queued_requests() -> None:
    executor = GatedExecutor()
    broker = _broker(executor)
    first = broker.submit("a")
    await executor.started.wait()
    second = broker.submit("b")

    await broker.aclose()

    with pytest.raises(BrokerClosedError):
        await first
    with pytest.raises(BrokerClosedError):
        await second
    with pytest.raises(BrokerClosedError):
        broker.submit("c")


@pytest.mark.asyncio
async def test_cancelled_caller_is_skipped() -> None:
    executor = GatedExecutor()
    broker = _broker(executor)
    first = broker.submit("a")
    await executor.started.wait()
    abandoned = broker.submit("b")
    abandoned.cancel()
    third = broker.submit("c")

    executor.release.set()
    await third
    await first

    assert [invocation.message for invocation in executor.invocations] == ["a", "c"]
    await broker.aclose()


@pytest.mark.asyncio
async def test_compact_memory_runs_ephemeral_invocation() -> None:
    async def _compacted(_invocation: Invocation) -> StreamOutput:
        return StreamOutput(text='{"name": "Mina"}', session_id=None)

    executor = FakeExecutor(_compacted)
    memory = FakeMemory(needs_compaction=True)
    breaker = CircuitBreaker()
    broker = _broker(executor, memory=memory, breaker=breaker)

    assert await broker.compact_memory() is True

    (invocation,) = executor.invocations
    assert invocation.ephemeral
    assert invocation.message == "please compact"
    assert memory.compacted == ['{"name": "Mina"}']
    assert broker.session_id is None
    await broker.aclose()


@pytest.mark.asyncio
async def test_compact_memory_skips_when_not_needed_and_survives_errors() -> None:
    async def _broken(_invocation: Invocation) -> StreamOutput:
        raise BackendExitError(1, "nope")

    executor = FakeExecutor(_broken)
    breaker = CircuitBreaker()

    idle = _broker(executor, memory=FakeMemory(needs_compaction=False))
    assert await idle.compact_memory() is False
    assert executor.invocations == []
    await idle.aclose()

    failing = _broker(executor, memory=FakeMemory(needs_compaction=True), breaker=breaker)
    assert await failing.compact_memory() is False
    assert breaker.failure_count == 0
    await failing.aclose()


@pytest.mark.asyncio
async def test_cancelled_compaction_is_skipped() -> None:
    executor = GatedExecutor()
    broker = _broker(executor, memory=FakeMemory(needs_compaction=True))
    first = broker.submit("a")
    await executor.started.wait()
    compaction = asyncio.create_task(broker.compact_memory())
    await asyncio.sleep(0)
    assert broker.pending == 1

    compaction.cancel()
    with pytest.raises(asyncio.CancelledError):
        await compaction
    third = broker.submit("c")
    executor.release.set()
    await first
    await third

    assert [invocation.message for invocation in executor.invocations] == ["a", "c"]
    await broker.aclose()
