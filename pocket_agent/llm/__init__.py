"""Generation engine contract and the Ollama-backed session."""

import asyncio
import base64
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from pocket_agent.codec import JsonValue
from pocket_agent.config import ModelConfig
from pocket_agent.logging import get_logger

log = get_logger(__name__)

PartialListener = Callable[[str, bool], None]
ErrorListener = Callable[[str], None]


def estimate_tokens(text: str) -> int:
    """Character-based token estimate (~4 chars per token), never below 1."""
    return max(1, len(text or "") // 4)


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "user" or "assistant"; observations are sent as "user"
    content: str
    token_estimate: int = field(default=0)

    def __post_init__(self) -> None:
        if not self.token_estimate:
            self.token_estimate = estimate_tokens(self.content)


def _structural_key(value: JsonValue) -> Any:
    """Hashable form of a value that keeps its kind: ``1``, ``1.0`` and ``True`` differ."""
    if isinstance(value, dict):
        return ("object", tuple(sorted((key, _structural_key(item)) for key, item in value.items())))
    if isinstance(value, list):
        return ("array", tuple(_structural_key(item) for item in value))
    return (type(value).__name__, value)


@dataclass(frozen=True, eq=False)
class ToolCall:
    """A tool invocation detected in model output.

    Two calls are equal when the names match and the arguments match value by
    value, kind included.
    """

    name: str
    args: dict[str, JsonValue] = field(default_factory=dict)

    def _key(self) -> tuple[str, Any]:
        return self.name, _structural_key(self.args)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ToolCall):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())


class GenerationSession(ABC):
    """A live, stateful handle to the generation engine.

    At most one generation may be in flight at a time. Results are delivered
    through callbacks: ``listener(partial_text, done)`` for streamed output
    and ``on_error(message)`` for failures. Callbacks may be invoked from any
    thread and may fire more than once; consumers must tolerate that.
    """

    @abstractmethod
    def generate_async(
        self,
        text: str,
        image: bytes | None,
        listener: PartialListener,
        on_error: ErrorListener,
    ) -> None:
        pass

    @abstractmethod
    def cancel(self) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


SessionFactory = Callable[[], GenerationSession]


class OllamaSession(GenerationSession):
    """Session over a local Ollama server's streaming ``/api/generate`` endpoint.

    The conversation context returned by each completed generation is sent
    with the next request so the session keeps state between calls.
    """

    def __init__(
        self,
        model: str = "gemma3:1b",
        base_url: str = "http://127.0.0.1:11434",
        options: dict[str, Any] | None = None,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.options = dict(options or {})
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self._owns_client = client is None
        self._context: list[int] | None = None
        self._task: asyncio.Task[None] | None = None
        self._generating = False
        self._closed = False
        self._close_task: asyncio.Task[None] | None = None

    def generate_async(
        self,
        text: str,
        image: bytes | None,
        listener: PartialListener,
        on_error: ErrorListener,
    ) -> None:
        if self._closed:
            on_error("Session is closed")
            return
        if self._generating:
            on_error("Session busy: a generation is already in flight")
            return
        self._generating = True
        self._task = asyncio.get_running_loop().create_task(
            self._stream(text, image, listener, on_error)
        )

    def _build_body(self, text: str, image: bytes | None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "prompt": text,
            "stream": True,
            "options": self.options,
        }
        if self._context:
            body["context"] = self._context
        if image is not None:
            body["images"] = [base64.b64encode(image).decode("ascii")]
        return body

    async def _stream(
        self,
        text: str,
        image: bytes | None,
        listener: PartialListener,
        on_error: ErrorListener,
    ) -> None:
        url = f"{self.base_url}/api/generate"
        body = self._build_body(text, image)
        try:
            log.debug("Calling Ollama", model=self.model, url=url, prompt_chars=len(text))
            async with self.client.stream("POST", url, json=body) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    self._fail(on_error, f"Ollama API error {response.status_code}: {error_text}")
                    return

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if not isinstance(chunk, dict):
                        log.debug("Skipping non-object stream line", line=line[:80])
                        continue
                    if chunk.get("error"):
                        self._fail(on_error, str(chunk["error"]))
                        return
                    done = bool(chunk.get("done"))
                    if done:
                        # The next generation may be issued from the final callback.
                        self._generating = False
                        if isinstance(chunk.get("context"), list):
                            self._context = chunk["context"]
                    listener(str(chunk.get("response", "")), done)
                    if done:
                        return
            self._fail(on_error, "Ollama stream ended without completion")
        except asyncio.CancelledError:
            log.debug("Ollama generation cancelled", model=self.model)
            raise
        except httpx.HTTPError as e:
            self._fail(on_error, f"Ollama HTTP error: {e}")
        except Exception as e:
            log.error("Ollama stream failed", model=self.model, error=str(e))
            self._fail(on_error, f"Ollama stream failed: {e}")

    def _fail(self, on_error: ErrorListener, message: str) -> None:
        self._generating = False
        on_error(message)

    def cancel(self) -> None:
        self._generating = False
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def close(self) -> None:
        self.cancel()
        if self._closed:
            return
        self._closed = True
        self._context = None
        if self._owns_client:
            try:
                self._close_task = asyncio.get_running_loop().create_task(self.client.aclose())
            except RuntimeError:
                # No running loop: nothing can still be using the client.
                pass


def create_session_factory(model_config: ModelConfig) -> SessionFactory:
    """Build a factory producing sessions for the configured engine.

    Raises:
        ValueError for unsupported providers
    """
    if model_config.provider != "ollama":
        raise ValueError(f"Provider '{model_config.provider}' not supported. Use 'ollama'.")

    options = {
        "temperature": model_config.temperature,
        "top_k": model_config.top_k,
        "top_p": model_config.top_p,
        "num_predict": model_config.max_tokens,
    }

    def factory() -> GenerationSession:
        log.info("Creating generation session", model=model_config.model)
        return OllamaSession(
            model=model_config.model,
            base_url=model_config.base_url,
            options=options,
            timeout=model_config.request_timeout,
        )

    return factory


__all__ = [
    "ErrorListener",
    "GenerationSession",
    "Message",
    "OllamaSession",
    "PartialListener",
    "SessionFactory",
    "ToolCall",
    "create_session_factory",
    "estimate_tokens",
]
