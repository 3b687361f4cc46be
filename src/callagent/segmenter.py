"""
Streaming completion segmenter.

Owns the call transcript. Each submitted turn opens one streaming chat
completion; generated text is cut into speakable fragments at the split
marker and published the moment a fragment closes, so synthesis of the first
words starts while the model is still writing the rest.

Tool calls stream their arguments as shards of one JSON document. Shards are
keyed by the call's stream index; only the first call of a completion runs. Once the
model finishes with `tool_calls`, the tool's spoken acknowledgment goes out
immediately (unordered), the handler runs, and its result is resubmitted as a
`function` turn for the same interaction.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Tuple

import structlog

from src.callagent.config import get_config
from src.callagent.errors import ToolArgumentsError, UnknownToolError
from src.callagent.events import Channel
from src.callagent.llm import Transcript, new_transcript
from src.callagent.models import ReplyFragment
from src.callagent.tools import ToolContext, ToolRegistry, parse_tool_arguments

logger = structlog.get_logger(__name__)


class CompletionSegmenter:
    def __init__(
        self,
        client: Any,
        config: Optional[Any] = None,
        registry: Optional[ToolRegistry] = None,
        context: Optional[ToolContext] = None,
        transcript: Optional[Transcript] = None,
    ):
        self.config = config or get_config()
        self._client = client
        self._registry = registry or ToolRegistry()
        self._context = context or ToolContext(config=self.config)
        self.transcript = transcript or new_transcript(self.config)
        self._split_marker = self.config.split_marker
        self._next_index: Dict[int, int] = {}
        self._closed = False
        self.fragments: Channel[ReplyFragment] = Channel("reply_fragment")

    @property
    def context(self) -> ToolContext:
        return self._context

    def set_call_metadata(self, call_sid: str) -> None:
        """Make the call SID visible to the model (needed for transfers)."""
        self._context.call_sid = call_sid
        self.transcript.append("system", f"callSid: {call_sid}")

    def close(self) -> None:
        self._closed = True
        self.fragments.close()

    async def say(self, text: str, interaction: int) -> None:
        """Publish a scripted utterance that bypasses reply ordering."""
        await self._publish(ReplyFragment(interaction=interaction, index=None, text=text))

    async def submit_turn(
        self,
        text: str,
        interaction: int,
        role: str = "user",
        name: str = "user",
    ) -> None:
        """
        Append a turn and stream the model's answer as reply fragments.

        Tool calls are followed by resubmission of their result, up to
        `max_tool_chain_depth` times.

        Raises:
            UnknownToolError: if the model calls a tool that is not declared
        """
        depth = 0
        while not self._closed:
            self.transcript.append(role, text, name=None if name == "user" else name)

            tool_result = await self._complete(interaction)
            if tool_result is None:
                return

            depth += 1
            if depth > self.config.max_tool_chain_depth:
                logger.warning(
                    "Tool chain too deep, ending turn",
                    interaction=interaction,
                    depth=depth,
                    limit=self.config.max_tool_chain_depth,
                )
                return

            tool_name, text = tool_result
            role, name = "function", tool_name

    async def _complete(self, interaction: int) -> Optional[Tuple[str, str]]:
        """
        Run one streaming completion.

        Returns:
            (tool name, tool result) if the model finished with a tool call,
            otherwise None.
        """
        started = time.time()
        try:
            stream = await self._client.chat.completions.create(
                model=self.config.llm_model,
                messages=self.transcript.to_messages(),
                tools=self._registry.openai_schema(),
                stream=True,
            )
        except Exception as e:
            logger.error(
                "LLM request failed",
                interaction=interaction,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

        complete = ""
        partial = ""
        tool_calls: Dict[int, List[str]] = {}
        first_token_ms: Optional[float] = None

        try:
            async for chunk in stream:
                if self._closed:
                    return None
                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                delta = choice.delta
                finish_reason = choice.finish_reason

                if delta is not None and delta.tool_calls:
                    for call in delta.tool_calls:
                        function = call.function
                        if function is None:
                            continue
                        shards = tool_calls.setdefault(call.index or 0, ["", ""])
                        if function.name:
                            shards[0] = function.name
                        if function.arguments:
                            shards[1] += function.arguments

                if finish_reason == "tool_calls":
                    return await self._run_first_tool(tool_calls, interaction)

                content = (delta.content if delta is not None else None) or ""
                if content and first_token_ms is None:
                    first_token_ms = (time.time() - started) * 1000
                complete += content
                partial += content

                if partial.rstrip().endswith(self._split_marker) or finish_reason:
                    await self._emit(interaction, partial)
                    partial = ""

                if finish_reason:
                    break
        except UnknownToolError:
            raise
        except Exception as e:
            logger.error(
                "LLM stream failed",
                interaction=interaction,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None
        finally:
            await stream.close()

        # Left over only when the stream ends without a finish reason.
        await self._emit(interaction, partial)

        if complete:
            self.transcript.append("assistant", complete)
        logger.info(
            "LLM reply complete",
            interaction=interaction,
            chars=len(complete),
            first_token_ms=round(first_token_ms or 0.0, 2),
            total_ms=round((time.time() - started) * 1000, 2),
            transcript_turns=len(self.transcript),
        )
        return None

    async def _run_first_tool(self, tool_calls: Dict[int, List[str]], interaction: int) -> Optional[Tuple[str, str]]:
        if not tool_calls:
            logger.error("Model finished with tool_calls but sent none", interaction=interaction)
            return None
        first, *rest = sorted(tool_calls)
        if rest:
            logger.warning(
                "Ignoring parallel tool calls",
                interaction=interaction,
                running=tool_calls[first][0],
                ignored=[tool_calls[i][0] for i in rest],
            )
        tool_name, raw_args = tool_calls[first]
        return await self._run_tool(tool_name, raw_args, interaction)

    async def _run_tool(self, tool_name: str, raw_args: str, interaction: int) -> Optional[Tuple[str, str]]:
        tool = self._registry.get(tool_name)

        try:
            args = parse_tool_arguments(raw_args)
        except ToolArgumentsError as e:
            logger.error("Skipping tool call", tool=tool_name, interaction=interaction, error=str(e))
            return None

        logger.info("LLM -> tool", tool=tool_name, interaction=interaction, args=list(args))
        await self.say(tool.say, interaction)

        result = await self._registry.execute(tool_name, args, self._context)
        return tool_name, result

    async def _emit(self, interaction: int, text: str) -> None:
        if not text.strip():
            return
        if interaction not in self._next_index:
            # Turns run one at a time; earlier interactions are finished.
            self._next_index = {k: v for k, v in self._next_index.items() if k > interaction}
        index = self._next_index.get(interaction, 0)
        self._next_index[interaction] = index + 1
        await self._publish(ReplyFragment(interaction=interaction, index=index, text=text))

    async def _publish(self, fragment: ReplyFragment) -> None:
        if self._closed:
            return
        logger.info(
            "LLM -> TTS",
            interaction=fragment.interaction,
            index=fragment.index,
            text=fragment.text[:80],
        )
        await self.fragments.publish(fragment)
