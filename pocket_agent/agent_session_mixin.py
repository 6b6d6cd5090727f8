"""Session lifecycle helpers for Agent: creation, budget resets, recreation and generation."""

import asyncio
import re
from dataclasses import dataclass, field

from pocket_agent.exceptions import SessionException
from pocket_agent.llm import GenerationSession, Message, ToolCall, estimate_tokens
from pocket_agent.logging import get_logger

log = get_logger(__name__)

_SUMMARY_ITEM_CHARS = 200


@dataclass
class AgentRuntimeState:
    """Mutable counters owned by one Agent.

    Token and session counters survive across chat calls until reset; the
    turn/loop fields are re-initialised at the start of every chat call.
    """

    token_count: int = 0
    system_prompt_sent: bool = False
    turn_count: int = 0
    session_recreate_attempts: int = 0
    last_tool_call: ToolCall | None = None
    repeat_count: int = 0
    failed_tools: set[str] = field(default_factory=set)
    pending_summary: str | None = None
    session_creations: int = 0

    def start_chat(self) -> None:
        self.turn_count = 0
        self.last_tool_call = None
        self.repeat_count = 0
        self.failed_tools = set()

    def add_tokens(self, count: int) -> None:
        self.token_count += max(0, count)


@dataclass
class GenerationResult:
    """Outcome of one bridged generation call."""

    text: str = ""
    timed_out: bool = False
    cancelled: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.cancelled and not self.text.strip()


class AgentSessionMixin:
    """Owns the session handle, token budget and recreation policy."""

    @staticmethod
    def estimate_tokens(text: str) -> int:
        """Deterministic budgeting heuristic, never a real tokenizer."""
        return estimate_tokens(text)

    @staticmethod
    def is_retryable_error(error: BaseException) -> bool:
        """Classify an engine failure as recoverable by recreating the session."""
        if isinstance(error, SessionException):
            return error.retryable
        return SessionException(str(error)).retryable

    def get_token_count(self) -> int:
        return self.state.token_count

    def _ensure_session(self) -> GenerationSession:
        """Return the current session, creating it on first need."""
        if self._session is None:
            self._session = self._session_factory()
            self.state.session_creations += 1
            log.info("Generation session created", creations=self.state.session_creations)
        return self._session

    def _close_session(self) -> None:
        """Close the current session, swallowing engine close failures."""
        session, self._session = self._session, None
        if session is None:
            return
        # A fresh session knows nothing of the system prompt.
        self.state.system_prompt_sent = False
        try:
            session.close()
        except Exception as e:
            log.warning("Session close failed", error=str(e))

    def _replace_session(self) -> None:
        self._close_session()
        self._ensure_session()
        self.state.token_count = 0
        self.state.system_prompt_sent = False

    def _build_summary(self) -> str | None:
        """Short textual summary of the messages before the current input."""
        count = self.settings.summary_messages
        earlier = self.messages[:-1]
        if count <= 0 or not earlier:
            return None
        lines: list[str] = []
        for msg in earlier[-count:]:
            content = re.sub(r"\s+", " ", msg.content.strip())
            if len(content) > _SUMMARY_ITEM_CHARS:
                content = content[:_SUMMARY_ITEM_CHARS].rstrip() + "..."
            lines.append(f"{msg.role.upper()}: {content}")
        return "Summary of the conversation so far:\n" + "\n".join(lines)

    def ensure_budget(self) -> bool:
        """Recreate the session when the token budget is exceeded.

        Returns:
            True when a reset happened
        """
        if self.state.token_count <= self.settings.max_tokens_before_reset:
            return False
        log.info(
            "Token budget exceeded, recreating session",
            token_count=self.state.token_count,
            limit=self.settings.max_tokens_before_reset,
        )
        self.state.pending_summary = self._build_summary()
        self._replace_session()
        return True

    def can_recreate(self) -> bool:
        return self.state.session_recreate_attempts < self.settings.max_session_recreate_attempts

    def recreate(self) -> None:
        """Replace the session after a retryable failure."""
        self.state.session_recreate_attempts += 1
        log.warning(
            "Recreating generation session",
            attempt=self.state.session_recreate_attempts,
            max_attempts=self.settings.max_session_recreate_attempts,
        )
        self._replace_session()

    def _record_message(self, role: str, content: str) -> Message:
        message = Message(role=role, content=content, token_estimate=self.estimate_tokens(content))
        self.messages.append(message)
        return message

    @staticmethod
    async def _cancel_task(task: asyncio.Task | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _generate_response(self, text: str, image: bytes | None = None) -> GenerationResult:
        """Run one generation and wait for its single result.

        Streamed partials are buffered; the result resolves once, on the first
        completion or error callback. Later callbacks are ignored. No result
        within ``response_timeout_ms`` is reported as ``timed_out``.

        Raises:
            SessionException when the engine reports an error
        """
        session = self._ensure_session()
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()
        chunks: list[str] = []

        def on_partial(partial: str, done: bool) -> None:
            if future.done():
                return
            if partial:
                chunks.append(partial)
            if done:
                future.set_result("".join(chunks))

        def on_failure(message: str) -> None:
            if not future.done():
                future.set_exception(SessionException(message or "Unknown session error"))

        def listener(partial: str, done: bool) -> None:
            loop.call_soon_threadsafe(on_partial, partial, done)

        def on_error(message: str) -> None:
            loop.call_soon_threadsafe(on_failure, message)

        self.state.add_tokens(self.estimate_tokens(text))
        timeout = self.settings.response_timeout_ms / 1000.0
        cancel_wait = asyncio.create_task(self._cancel_event.wait())
        try:
            try:
                session.generate_async(text, image, listener, on_error)
            except Exception as e:
                raise SessionException(str(e) or type(e).__name__) from e
            done, _ = await asyncio.wait(
                {future, cancel_wait},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if future in done:
                response = future.result()
                self.state.add_tokens(self.estimate_tokens(response))
                return GenerationResult(text=response)

            self._cancel_generation(session)
            if cancel_wait in done:
                log.info("Generation cancelled by user")
                return GenerationResult(cancelled=True)

            log.warning("Generation timed out", timeout_ms=self.settings.response_timeout_ms)
            return GenerationResult(timed_out=True)
        except asyncio.CancelledError:
            self._cancel_generation(session)
            raise
        finally:
            if not future.done():
                future.cancel()
            await self._cancel_task(cancel_wait)

    @staticmethod
    def _cancel_generation(session: GenerationSession) -> None:
        try:
            session.cancel()
        except Exception as e:
            log.warning("Session cancel failed", error=str(e))
