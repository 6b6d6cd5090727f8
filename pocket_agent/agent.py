"""Agent orchestration for Pocket Agent."""

import asyncio
from enum import Enum
from typing import Any

from pocket_agent.agent_session_mixin import AgentRuntimeState, AgentSessionMixin
from pocket_agent.agent_tool_loop_mixin import AgentToolLoopMixin
from pocket_agent.config import AgentConfig, get_config
from pocket_agent.exceptions import (
    AgentAbort,
    AgentBusyError,
    FatalSessionError,
    LoopDetectedError,
    MaxTurnsExceededError,
    SessionException,
    SessionUnavailableError,
    ToolFailedError,
)
from pocket_agent.llm import GenerationSession, Message, SessionFactory
from pocket_agent.logging import get_logger
from pocket_agent.tool_call_parser import parse_tool_call, strip_tool_markup
from pocket_agent.tools.registry import ToolRegistry

log = get_logger(__name__)

CANCELLED_MESSAGE = "Cancelled"
LOOP_MESSAGE = "I seem to be stuck in a loop calling {name}. Let's try something else."
TOOL_FAILED_MESSAGE = "The {name} tool didn't work as expected. Please try rephrasing."
MAX_TURNS_MESSAGE = "Sorry, I wasn't able to complete that task."
UNAVAILABLE_MESSAGE = "I'm having trouble getting a response right now. Please try again."
FATAL_ERROR_MESSAGE = "Sorry, I encountered an error: {message}"
EMPTY_ANSWER_MESSAGE = "Sorry, I don't have an answer for that."


class ChatOutcome(str, Enum):
    """How the last chat call ended."""

    ANSWER = "answer"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


class Agent(AgentSessionMixin, AgentToolLoopMixin):
    """Turn-based reasoning loop over a generation session.

    One ``chat`` call runs at a time; a second concurrent call is rejected
    with :class:`AgentBusyError`. The agent never shares state with other
    instances.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        tools: ToolRegistry | None = None,
        system_instruction: str | None = None,
        settings: AgentConfig | None = None,
    ):
        """Initialize the agent.

        Args:
            session_factory: Creates a new generation session on demand
            tools: Registered tools the model may call
            system_instruction: Overrides the configured system instruction
            settings: Overrides the ``agent`` config section
        """
        self.settings = settings or get_config().agent
        self.system_instruction = system_instruction or self.settings.system_instruction
        self.tools = tools if tools is not None else ToolRegistry()
        self._session_factory = session_factory
        self._session: GenerationSession | None = None
        self.state = AgentRuntimeState()
        self.messages: list[Message] = []
        self.last_outcome: ChatOutcome | None = None
        self._busy = False
        self._cancel_event = asyncio.Event()

    @property
    def is_busy(self) -> bool:
        return self._busy

    async def chat(self, user_message: str, image: bytes | None = None) -> str:
        """Answer one user message, calling tools as the model requests.

        Returns:
            The final answer, or a user-facing message when the loop aborts
            or is cancelled

        Raises:
            AgentBusyError if another chat call is in flight
        """
        if self._busy:
            raise AgentBusyError()
        self._busy = True
        self._cancel_event = asyncio.Event()
        self.state.start_chat()
        self._record_message("user", user_message)
        log.info("Chat started", chars=len(user_message), has_image=image is not None)
        try:
            outcome, reply = await self._run_turns(user_message, image)
        except AgentAbort as e:
            log.warning("Chat aborted", reason=str(e), turns=self.state.turn_count)
            self.last_outcome = ChatOutcome.ABORTED
            self._clear_conversation(reset_tokens=True)
            if isinstance(e, SessionUnavailableError):
                self._close_session()
            return self._abort_message(e)
        except asyncio.CancelledError:
            log.info("Chat task cancelled", turns=self.state.turn_count)
            self.last_outcome = ChatOutcome.CANCELLED
            self._clear_conversation(reset_tokens=False)
            raise
        except Exception:
            self._clear_conversation(reset_tokens=True)
            raise
        finally:
            self._busy = False

        self.last_outcome = outcome
        self._clear_conversation(reset_tokens=False)
        log.info("Chat finished", outcome=outcome.value, turns=self.state.turn_count)
        return reply

    async def _run_turns(self, user_message: str, image: bytes | None) -> tuple[ChatOutcome, str]:
        current_input = user_message
        retries = 0
        while self.state.turn_count < self.settings.max_turns:
            if self._cancel_event.is_set():
                return ChatOutcome.CANCELLED, CANCELLED_MESSAGE

            prompt = self._build_prompt(current_input)
            turn_image = image if self.state.turn_count == 0 else None
            try:
                result = await self._generate_response(prompt, turn_image)
            except SessionException as e:
                if not e.retryable:
                    raise FatalSessionError(e) from e
                self._retry_or_abort(retries, e.message)
                retries += 1
                continue

            if result.cancelled:
                return ChatOutcome.CANCELLED, CANCELLED_MESSAGE
            if result.is_empty:
                self._retry_or_abort(retries, "timeout" if result.timed_out else "empty response")
                retries += 1
                continue
            retries = 0

            response = result.text
            call = parse_tool_call(response, self.tools.list_tools())
            if call is None:
                answer = strip_tool_markup(response) or EMPTY_ANSWER_MESSAGE
                self._record_message("assistant", answer)
                return ChatOutcome.ANSWER, answer

            self._record_message("assistant", response)
            self._check_tool_call_policy(call)
            log.info("Tool call detected", tool=call.name, turn=self.state.turn_count + 1)
            current_input = await self._execute_tool_call(call, user_message)
            self._record_message("user", current_input)
            self.state.turn_count += 1

        raise MaxTurnsExceededError(self.settings.max_turns)

    def _retry_or_abort(self, retries: int, reason: str) -> None:
        """Recreate the session for another attempt, or abort when out of budget."""
        if retries >= self.settings.max_retries or not self.can_recreate():
            raise SessionUnavailableError(reason)
        log.info("Retrying generation", reason=reason, retry=retries + 1)
        self.recreate()

    def _build_prompt(self, current_input: str) -> str:
        """Assemble the next prompt for the session.

        The system prompt goes out once per session; then any pending summary,
        the recent history window, and finally the latest input.
        """
        self.ensure_budget()
        parts: list[str] = []
        if not self.state.system_prompt_sent:
            parts.append(self._build_system_prompt())
            self.state.system_prompt_sent = True
        if self.state.pending_summary:
            parts.append(self.state.pending_summary)
            self.state.pending_summary = None

        window = self.settings.history_window
        history = self.messages[:-1][-window:] if window > 0 else []
        if history:
            parts.append("\n".join(f"{msg.role.upper()}: {msg.content}" for msg in history))
        parts.append(current_input)
        return "\n\n".join(parts)

    @staticmethod
    def _abort_message(error: AgentAbort) -> str:
        if isinstance(error, LoopDetectedError):
            return LOOP_MESSAGE.format(name=error.tool_name)
        if isinstance(error, ToolFailedError):
            return TOOL_FAILED_MESSAGE.format(name=error.tool_name)
        if isinstance(error, MaxTurnsExceededError):
            return MAX_TURNS_MESSAGE
        if isinstance(error, FatalSessionError):
            return FATAL_ERROR_MESSAGE.format(message=error.error.message or "Unknown error")
        return UNAVAILABLE_MESSAGE

    def _clear_conversation(self, reset_tokens: bool) -> None:
        self.messages.clear()
        self.state.pending_summary = None
        if reset_tokens:
            self.state.token_count = 0

    def cancel(self) -> bool:
        """Stop the in-flight chat call.

        Returns:
            False when nothing was in flight
        """
        if not self._busy:
            return False
        log.info("Cancelling chat")
        self._cancel_event.set()
        return True

    def reset(self) -> None:
        """Forget the conversation and counters; the session is kept."""
        self.messages.clear()
        self.state.system_prompt_sent = False
        self.state.token_count = 0
        self.state.session_recreate_attempts = 0
        self.state.pending_summary = None

    def close(self) -> None:
        """Close the current session, swallowing close errors."""
        if self._busy:
            self._cancel_event.set()
        self._close_session()

    def get_stats(self) -> dict[str, Any]:
        """Counters for debugging and status displays."""
        return {
            "token_count": self.state.token_count,
            "session_creations": self.state.session_creations,
            "session_recreate_attempts": self.state.session_recreate_attempts,
            "messages": len(self.messages),
            "turns": self.state.turn_count,
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
        }
