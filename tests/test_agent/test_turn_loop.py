import asyncio

import pytest

from pocket_agent.agent import (
    CANCELLED_MESSAGE,
    EMPTY_ANSWER_MESSAGE,
    MAX_TURNS_MESSAGE,
    UNAVAILABLE_MESSAGE,
    Agent,
    ChatOutcome,
)
from pocket_agent.config import AgentConfig
from pocket_agent.exceptions import AgentBusyError
from pocket_agent.llm import GenerationSession
from pocket_agent.tools.builtin import create_default_registry
from pocket_agent.tools.registry import ToolRegistry, define_tool

SILENT = object()


class ScriptedSession(GenerationSession):
    def __init__(self, engine: "ScriptedEngine"):
        self.engine = engine
        self.prompts: list[str] = []
        self.cancel_calls = 0
        self.closed = False

    def generate_async(self, text, image, listener, on_error):
        self.prompts.append(text)
        self.engine.calls.append((self, text, image))
        step = self.engine.steps.pop(0) if self.engine.steps else "Done."
        if step is SILENT:
            return
        if isinstance(step, Exception):
            on_error(str(step))
            return
        middle = len(step) // 2
        listener(step[:middle], False)
        listener(step[middle:], True)

    def cancel(self):
        self.cancel_calls += 1

    def close(self):
        self.closed = True


class ScriptedEngine:
    """Session factory replaying canned model outputs across sessions."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.sessions: list[ScriptedSession] = []
        self.calls: list[tuple[ScriptedSession, str, bytes | None]] = []

    def __call__(self) -> ScriptedSession:
        session = ScriptedSession(self)
        self.sessions.append(session)
        return session

    @property
    def prompts(self) -> list[str]:
        return [text for _, text, _ in self.calls]


def _agent(engine: ScriptedEngine, tools: ToolRegistry | None = None, **settings) -> Agent:
    settings.setdefault("response_timeout_ms", 500)
    return Agent(
        session_factory=engine,
        tools=tools if tools is not None else create_default_registry(),
        system_instruction="You are a test assistant.",
        settings=AgentConfig(**settings),
    )


def _counting_tool(name: str, calls: list, result: str = "ok", error: Exception | None = None):
    def execute(args):
        calls.append(dict(args))
        if error is not None:
            raise error
        return result

    return define_tool(
        name=name,
        description=f"Test tool {name}",
        parameter_block=lambda p: p.property("n", "integer"),
        execute=execute,
    )


@pytest.mark.asyncio
async def test_direct_answer():
    engine = ScriptedEngine("Hello there!")
    agent = _agent(engine)

    reply = await agent.chat("hi")

    assert reply == "Hello there!"
    assert agent.last_outcome == ChatOutcome.ANSWER
    assert len(engine.sessions) == 1
    assert engine.prompts[0].startswith("You are a test assistant.")
    assert '"name":"calculate"' in engine.prompts[0]
    assert engine.prompts[0].endswith("hi")
    assert agent.messages == []


@pytest.mark.asyncio
async def test_tool_call_then_answer_feeds_observation_back():
    engine = ScriptedEngine('TOOL: calculate\nARGS: {"expression":"2+2"}', "2 plus 2 is 4.")
    agent = _agent(engine)

    reply = await agent.chat("what is 2+2")

    assert reply == "2 plus 2 is 4."
    second = engine.prompts[1]
    assert "You have access to the following tools" not in second
    assert "USER: what is 2+2" in second
    assert "ASSISTANT: TOOL: calculate" in second
    assert second.startswith("USER: what is 2+2")
    assert "Observation:\nFunction 'calculate' result: The result of 2+2 is 4" in second


@pytest.mark.asyncio
async def test_system_prompt_sent_once_per_session():
    engine = ScriptedEngine("First.", "Second.")
    agent = _agent(engine)

    await agent.chat("one")
    await agent.chat("two")

    assert "You have access to the following tools" in engine.prompts[0]
    assert "You have access to the following tools" not in engine.prompts[1]
    assert engine.prompts[1] == "two"
    assert len(engine.sessions) == 1


@pytest.mark.asyncio
async def test_identical_tool_calls_abort_as_loop():
    calls: list = []
    engine = ScriptedEngine(*['TOOL: ping\nARGS: {"n": 1}'] * 5)
    agent = _agent(engine, tools=ToolRegistry([_counting_tool("ping", calls)]))

    reply = await agent.chat("ping please")

    assert reply == "I seem to be stuck in a loop calling ping. Let's try something else."
    assert agent.last_outcome == ChatOutcome.ABORTED
    assert calls == [{"n": 1}]
    assert len(engine.prompts) == 2
    assert agent.messages == []
    assert agent.get_token_count() == 0


@pytest.mark.asyncio
async def test_failed_tool_is_not_called_again():
    calls: list = []
    tool = _counting_tool("flaky", calls, error=RuntimeError("boom"))
    engine = ScriptedEngine('TOOL: flaky\nARGS: {"n": 1}', 'TOOL: flaky\nARGS: {"n": 2}')
    agent = _agent(engine, tools=ToolRegistry([tool]))

    reply = await agent.chat("try it")

    assert reply == "The flaky tool didn't work as expected. Please try rephrasing."
    assert calls == [{"n": 1}]
    assert "Function 'flaky' failed: boom" in engine.prompts[1]


@pytest.mark.asyncio
async def test_unknown_json_tool_becomes_observation():
    engine = ScriptedEngine('{"tool": "teleport", "parameters": {}}', "I can't do that.")
    agent = _agent(engine)

    reply = await agent.chat("teleport me")

    assert reply == "I can't do that."
    assert "Error: Function 'teleport' not found." in engine.prompts[1]


@pytest.mark.asyncio
async def test_max_turns_abort_after_exact_turn_count():
    calls: list = []
    engine = ScriptedEngine(*[f'TOOL: step\nARGS: {{"n": {i}}}' for i in range(10)])
    agent = _agent(engine, tools=ToolRegistry([_counting_tool("step", calls)]), max_turns=3)

    reply = await agent.chat("keep going")

    assert reply == MAX_TURNS_MESSAGE
    assert [call["n"] for call in calls] == [0, 1, 2]
    assert len(engine.prompts) == 3


@pytest.mark.asyncio
async def test_silent_engine_retries_once_then_aborts():
    engine = ScriptedEngine(SILENT, SILENT, SILENT)
    agent = _agent(engine, response_timeout_ms=30, max_retries=1, max_session_recreate_attempts=3)

    reply = await agent.chat("hello?")

    assert reply == UNAVAILABLE_MESSAGE
    assert agent.last_outcome == ChatOutcome.ABORTED
    assert len(engine.prompts) == 2
    assert agent.state.session_recreate_attempts <= 3
    assert len(engine.sessions) == 2
    assert all(session.closed for session in engine.sessions)
    assert all(session.cancel_calls == 1 for session in engine.sessions)
    assert agent._session is None


@pytest.mark.asyncio
async def test_timeout_recovers_on_fresh_session():
    engine = ScriptedEngine(SILENT, "Back online.")
    agent = _agent(engine, response_timeout_ms=30)

    reply = await agent.chat("hello?")

    assert reply == "Back online."
    assert agent.state.session_recreate_attempts == 1
    assert engine.sessions[0].closed
    assert engine.calls[1][0] is engine.sessions[1]
    assert "You have access to the following tools" in engine.prompts[1]


@pytest.mark.asyncio
async def test_exhausted_recreate_budget_aborts_without_retry():
    engine = ScriptedEngine(SILENT, "never reached")
    agent = _agent(engine, response_timeout_ms=30, max_session_recreate_attempts=0)

    reply = await agent.chat("hello?")

    assert reply == UNAVAILABLE_MESSAGE
    assert len(engine.prompts) == 1


@pytest.mark.asyncio
async def test_empty_response_is_retried():
    engine = ScriptedEngine("   ", "Now with content.")
    agent = _agent(engine)

    assert await agent.chat("hi") == "Now with content."
    assert agent.state.session_recreate_attempts == 1


@pytest.mark.asyncio
async def test_retryable_session_error_recreates_session():
    engine = ScriptedEngine(RuntimeError("Session context limit reached"), "Recovered.")
    agent = _agent(engine)

    assert await agent.chat("hi") == "Recovered."
    assert len(engine.sessions) == 2


@pytest.mark.asyncio
async def test_fatal_session_error_returns_error_message():
    engine = ScriptedEngine(RuntimeError("model exploded"), "Still here.")
    agent = _agent(engine)

    reply = await agent.chat("hi")

    assert reply == "Sorry, I encountered an error: model exploded"
    assert agent.last_outcome == ChatOutcome.ABORTED
    assert await agent.chat("again") == "Still here."
    assert len(engine.sessions) == 1


@pytest.mark.asyncio
async def test_unexpected_errors_propagate_and_release_agent():
    def failing_factory():
        raise RuntimeError("no model installed")

    agent = Agent(session_factory=failing_factory, settings=AgentConfig())

    with pytest.raises(RuntimeError, match="no model installed"):
        await agent.chat("hi")
    assert not agent.is_busy
    assert agent.messages == []


@pytest.mark.asyncio
async def test_token_budget_reset_recreates_session_once():
    engine = ScriptedEngine('TOOL: calculate\nARGS: {"expression":"6*7"}', "It is 42.")
    agent = _agent(engine, max_tokens_before_reset=20)

    reply = await agent.chat("Please compute six times seven for me, " + "thanks " * 20)

    assert reply == "It is 42."
    assert len(engine.sessions) == 2
    assert engine.sessions[0].closed
    first_session, second_session = engine.sessions
    assert len(first_session.prompts) == 1
    assert len(second_session.prompts) == 1
    assert "Summary of the conversation so far:" in second_session.prompts[0]
    assert "You have access to the following tools" in second_session.prompts[0]
    assert agent.state.session_recreate_attempts == 0


@pytest.mark.asyncio
async def test_image_only_sent_on_first_turn():
    engine = ScriptedEngine("TOOL: get_current_time", "It's noon.")
    agent = _agent(engine)

    await agent.chat("what time is it?", image=b"\x89PNG")

    assert engine.calls[0][2] == b"\x89PNG"
    assert engine.calls[1][2] is None


@pytest.mark.asyncio
async def test_missing_arguments_filled_from_user_text():
    seen: list = []
    tool = define_tool(
        name="get_weather",
        description="Weather for a city",
        parameter_block=lambda p: p.property("city", "string").require("city"),
        execute=lambda args: seen.append(args) or "sunny",
    )
    engine = ScriptedEngine("TOOL: get_weather", "It is sunny in Paris.")
    agent = _agent(engine, tools=ToolRegistry([tool]))

    await agent.chat("What's the weather in Paris?")

    assert seen == [{"city": "Paris"}]


@pytest.mark.asyncio
async def test_missing_arguments_reported_when_not_recoverable():
    seen: list = []
    tool = define_tool(
        name="get_weather",
        description="Weather for a city",
        parameter_block=lambda p: p.property("city", "string").require("city"),
        execute=lambda args: seen.append(args) or "sunny",
    )
    engine = ScriptedEngine("TOOL: get_weather", "Which city?")
    agent = _agent(engine, tools=ToolRegistry([tool]))

    assert await agent.chat("how's the weather?") == "Which city?"
    assert seen == []
    assert "Missing required argument: city" in engine.prompts[1]


@pytest.mark.asyncio
async def test_residual_markup_is_stripped_from_answer():
    engine = ScriptedEngine("TOOL: none_such\nThe answer is 42.")
    agent = _agent(engine)

    assert await agent.chat("question") == "The answer is 42."


@pytest.mark.asyncio
async def test_concurrent_chat_is_rejected_and_cancel_stops_first():
    engine = ScriptedEngine(SILENT)
    agent = _agent(engine, response_timeout_ms=5000)

    first = asyncio.create_task(agent.chat("slow question"))
    await asyncio.sleep(0.02)

    assert agent.is_busy
    with pytest.raises(AgentBusyError):
        await agent.chat("impatient")
    assert agent.cancel() is True

    reply = await asyncio.wait_for(first, timeout=1)

    assert reply == CANCELLED_MESSAGE
    assert agent.last_outcome == ChatOutcome.CANCELLED
    assert engine.sessions[0].cancel_calls == 1
    assert not agent.is_busy
    assert agent.messages == []


def test_cancel_without_chat_returns_false():
    agent = _agent(ScriptedEngine())

    assert agent.cancel() is False


@pytest.mark.asyncio
async def test_reset_keeps_session_but_resends_system_prompt():
    engine = ScriptedEngine("One.", "Two.")
    agent = _agent(engine)
    await agent.chat("first")
    assert agent.get_token_count() > 0

    agent.reset()

    assert agent.get_token_count() == 0
    await agent.chat("second")
    assert len(engine.sessions) == 1
    assert "You have access to the following tools" in engine.prompts[1]


@pytest.mark.asyncio
async def test_close_releases_session_and_next_chat_creates_new_one():
    engine = ScriptedEngine("One.", "Two.")
    agent = _agent(engine)
    await agent.chat("first")

    agent.close()
    await agent.chat("second")

    assert engine.sessions[0].closed
    assert len(engine.sessions) == 2
    assert agent.get_stats()["session_creations"] == 2


@pytest.mark.asyncio
async def test_markup_only_reply_never_reaches_the_user():
    engine = ScriptedEngine("TOOL: launch_rockets\nARGS: {}", '{"tool": ""}')
    agent = _agent(engine)

    assert await agent.chat("go") == EMPTY_ANSWER_MESSAGE
    assert await agent.chat("go again") == EMPTY_ANSWER_MESSAGE
    assert agent.last_outcome == ChatOutcome.ANSWER


@pytest.mark.asyncio
async def test_deeply_nested_tool_json_is_answered_not_raised():
    nested = '{"tool":"calculate","parameters":' + '{"a":' * 600 + "1" + "}" * 601
    engine = ScriptedEngine("Here you go " + nested)
    agent = _agent(engine)

    assert await agent.chat("nest") == "Here you go"


@pytest.mark.asyncio
async def test_cancelled_chat_task_leaves_no_history_behind():
    engine = ScriptedEngine(SILENT, "Answer.")
    agent = _agent(engine, response_timeout_ms=5000)

    task = asyncio.create_task(agent.chat("private first question"))
    await asyncio.sleep(0.02)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert not agent.is_busy
    assert agent.messages == []
    assert agent.last_outcome == ChatOutcome.CANCELLED
    assert engine.sessions[0].cancel_calls == 1

    assert await agent.chat("second") == "Answer."
    assert "private first question" not in engine.prompts[1]
    assert engine.prompts[1] == "second"
