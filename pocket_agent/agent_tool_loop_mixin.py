"""Tool-call policy checks and execution helpers for Agent."""

import asyncio

from pocket_agent.codec import serialize
from pocket_agent.exceptions import (
    LoopDetectedError,
    ToolExecutionError,
    ToolFailedError,
    ToolNotFoundError,
)
from pocket_agent.llm import ToolCall
from pocket_agent.logging import get_logger
from pocket_agent.tool_call_parser import fill_missing_arguments

log = get_logger(__name__)

TOOL_USAGE_INSTRUCTIONS = """To use a tool, respond ONLY with these two lines:
TOOL: <tool_name>
ARGS: {"param1": "value"}

If you do not need a tool, just respond with your natural language answer."""

OBSERVATION_SUFFIX = (
    "Using this observation, answer the user's question. "
    "If you have the answer, output it directly without TOOL: or JSON."
)


class AgentToolLoopMixin:
    """Loop detection, tool execution and observation formatting."""

    def _build_system_prompt(self) -> str:
        """Format the system instruction with the tool catalogue."""
        if not len(self.tools):
            return self.system_instruction
        catalogue = serialize(self.tools.get_definitions())
        return (
            f"{self.system_instruction}\n\n"
            f"You have access to the following tools:\n{catalogue}\n\n"
            f"{TOOL_USAGE_INSTRUCTIONS}"
        )

    def _check_tool_call_policy(self, call: ToolCall) -> None:
        """Abort on repeated identical calls or reuse of a failed tool.

        Raises:
            LoopDetectedError when the same call repeats ``repeat_threshold`` times
            ToolFailedError when a tool that already failed is requested again
        """
        state = self.state
        if call == state.last_tool_call:
            state.repeat_count += 1
        else:
            state.last_tool_call = call
            state.repeat_count = 1

        if state.repeat_count >= self.settings.repeat_threshold:
            log.warning("Tool loop detected", tool=call.name, repeats=state.repeat_count)
            raise LoopDetectedError(call.name)
        if call.name.lower() in state.failed_tools:
            log.warning("Previously failed tool requested again", tool=call.name)
            raise ToolFailedError(call.name)

    def _missing_required(self, call: ToolCall) -> list[str]:
        spec = self.tools.resolve(call.name)
        if spec is None:
            return []
        return [
            name for name in spec.parameters.required
            if call.args.get(name) in (None, "")
        ]

    def _complete_arguments(self, call: ToolCall, user_text: str) -> ToolCall:
        if not self.settings.fill_missing_arguments:
            return call
        spec = self.tools.resolve(call.name)
        if spec is None or not self._missing_required(call):
            return call
        return ToolCall(name=call.name, args=fill_missing_arguments(spec, call.args, user_text))

    async def _execute_tool_call(self, call: ToolCall, user_text: str) -> str:
        """Execute one tool call and return the observation text for the model.

        Tool failures are folded into the observation; only cancellation
        propagates.
        """
        call = self._complete_arguments(call, user_text)
        missing = self._missing_required(call)
        if missing:
            result = f"Function '{call.name}' failed: Missing required argument: {', '.join(missing)}"
            return self._format_observation(result)

        try:
            output = await asyncio.wait_for(
                self.tools.execute(call.name, call.args),
                timeout=self.settings.tool_timeout_seconds,
            )
            result = f"Function '{call.name}' result: {output}"
        except ToolNotFoundError:
            self.state.failed_tools.add(call.name.lower())
            result = f"Error: Function '{call.name}' not found."
        except ToolExecutionError as e:
            self.state.failed_tools.add(call.name.lower())
            result = f"Function '{call.name}' failed: {e.cause}"
        except asyncio.TimeoutError:
            self.state.failed_tools.add(call.name.lower())
            log.error("Tool timed out", tool=call.name, timeout=self.settings.tool_timeout_seconds)
            result = f"Function '{call.name}' failed: timed out after {self.settings.tool_timeout_seconds}s"

        return self._format_observation(result)

    @staticmethod
    def _format_observation(result: str) -> str:
        return f"Observation:\n{result}\n\n{OBSERVATION_SUFFIX}"
