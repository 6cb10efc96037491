"""Chat orchestrator with turn preparation, streaming and resumption."""

import asyncio
import itertools
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

from toolchat.lib.config import ToolchatConfig
from toolchat.lib.errors import (
    ChatError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    RateLimitedError,
    UnauthorizedError,
    UpstreamUnavailableError,
    ValidationFailedError,
)
from toolchat.lib.logging_config import bind_turn_context, get_audit_logger
from toolchat.lib.metrics import get_metrics_collector, time_tool_call
from toolchat.lib.observability import PipelineObserver, TurnTrace
from toolchat.models import (
    Conversation,
    FrameType,
    Identity,
    Message,
    MessageRole,
    ModelEvent,
    ModelRequest,
    ReasoningDelta,
    StepBoundaryPart,
    StreamFrame,
    StreamSession,
    TextDelta,
    TextPart,
    ToolCallPart,
    ToolCallRequest,
    ToolCallState,
    ToolDeclaration,
    ToolResultMessage,
    TurnState,
    toolkit_of,
)
from toolchat.services.agent_resolver import AgentResolver, ResolvedTurnConfig
from toolchat.services.interfaces import ChatStore, InferenceProvider, ToolExecutor
from toolchat.services.prompt_composer import RequestHints, compose_system_prompt
from toolchat.services.request_validator import TurnRequest, ValidationRejection, validate_turn_request
from toolchat.services.stream_context import StreamContextProvider
from toolchat.services.tool_parsers import DEFAULT_TOOL_ERROR, parse_tool_response


logger = logging.getLogger(__name__)

GENERIC_ERROR_TEXT = "Oops, an error occurred!"
TIMEOUT_ERROR_TEXT = "The response took too long."

_WORD_CHUNK = re.compile(r"\s*\S+\s+")


class TurnDeadlineExceeded(Exception):
    """The turn ran past its wall-clock ceiling."""
    pass


@dataclass
class PreparedTurn:
    """Everything a validated, authorized turn needs to stream."""

    request: TurnRequest
    identity: Identity
    conversation: Conversation
    resolved: ResolvedTurnConfig
    system_prompt: str
    tools: List[ToolDeclaration]
    history: List[Message]
    user_message: Message
    stream_session: StreamSession
    trace: TurnTrace

    @property
    def chat_id(self) -> str:
        return self.conversation.id

    @property
    def stream_id(self) -> str:
        return self.stream_session.stream_id


async def smooth_text(
    events: AsyncIterator[ModelEvent],
    delay_ms: int = 0
) -> AsyncIterator[ModelEvent]:
    """Re-chunk text deltas at word boundaries.

    Non-text events flush any buffered text first and pass through in order.
    """
    buffer = ""
    try:
        async for event in events:
            if isinstance(event, TextDelta):
                buffer += event.text
                while True:
                    match = _WORD_CHUNK.match(buffer)
                    if match is None:
                        break
                    chunk, buffer = match.group(), buffer[match.end():]
                    yield TextDelta(text=chunk)
                    if delay_ms:
                        await asyncio.sleep(delay_ms / 1000)
                continue

            if buffer:
                yield TextDelta(text=buffer)
                buffer = ""
            yield event

        if buffer:
            yield TextDelta(text=buffer)
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()


def derive_title(message: Message, max_length: int = 80) -> str:
    """Conversation title from the first text part of a message."""
    text = next((part.text for part in message.parts if isinstance(part, TextPart)), "")
    text = " ".join(text.split())
    if not text:
        return "New chat"
    if len(text) <= max_length:
        return text
    return text[:max_length - 3].rstrip() + "..."


def normalize_tool_declaration(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Normalise a provider tool declaration, or None if it is unusable."""
    name = raw.get("name") or raw.get("slug")
    description = raw.get("description")
    if not name or not description:
        return None

    schema = dict(raw.get("input_schema") or raw.get("parameters") or {})
    schema.setdefault("type", "object")
    schema.setdefault("properties", {})
    return {"name": name, "description": description, "input_schema": schema}


class ChatOrchestrator:
    """Drives a chat turn from raw request to persisted assistant reply."""

    def __init__(
        self,
        store: ChatStore,
        inference: InferenceProvider,
        tools: ToolExecutor,
        config: ToolchatConfig,
        streams: Optional[StreamContextProvider] = None,
        resolver: Optional[AgentResolver] = None,
        observer: Optional[PipelineObserver] = None
    ):
        self.logger = logging.getLogger(__name__)
        self.store = store
        self.inference = inference
        self.tools = tools
        self.config = config
        self.streams = streams or StreamContextProvider(None)
        self.resolver = resolver or AgentResolver(store, config)
        self.observer = observer or PipelineObserver()
        self.audit = get_audit_logger()

    # Preparation

    async def prepare_turn(
        self,
        raw_body: Any,
        identity: Optional[Identity],
        hints: Optional[RequestHints] = None
    ) -> PreparedTurn:
        """Validate, authorize and set up a turn before any model call.

        Args:
            raw_body: Decoded request body
            identity: Authenticated caller, or None
            hints: Request-origin hints for the system prompt

        Returns:
            PreparedTurn with the user message and stream session persisted

        Raises:
            ChatError: On any pre-stream failure
        """
        chat_id = raw_body.get("id") if isinstance(raw_body, dict) else None
        turn = self.observer.start_turn(
            str(chat_id or "unknown"),
            identity.user_id if identity else None
        )

        try:
            with bind_turn_context(chat_id=turn.chat_id, user_id=turn.user_id):
                return await self._prepare(turn, raw_body, identity, hints or RequestHints())
        except ChatError as e:
            get_metrics_collector().record_rejection(e.code)
            self.observer.transition(turn, TurnState.ERRORED, reason=e.code)
            raise
        except Exception as e:
            self.logger.exception(f"Unexpected failure preparing turn {turn.chat_id}")
            get_metrics_collector().record_rejection(InternalError.code)
            self.observer.transition(turn, TurnState.ERRORED, reason=InternalError.code)
            raise InternalError() from e

    async def _prepare(
        self,
        turn: TurnTrace,
        raw_body: Any,
        identity: Optional[Identity],
        hints: RequestHints
    ) -> PreparedTurn:
        if identity is None:
            raise UnauthorizedError()

        result = validate_turn_request(raw_body)
        if isinstance(result, ValidationRejection):
            raise ValidationFailedError(result.summary, issues=result.issues_payload())
        request = result
        turn.chat_id = request.id

        await self._check_quota(identity)
        conversation = await self._load_conversation(request, identity)

        self.observer.transition(turn, TurnState.RESOLVING)
        resolved = await self.resolver.resolve(
            identity, request.selected_agent_id, request.selected_chat_model
        )
        turn.agent_id = resolved.agent_id
        turn.effective_model = resolved.effective_model

        self.observer.transition(turn, TurnState.COMPOSING, tool_count=len(resolved.enabled_tool_slugs))
        system_prompt = compose_system_prompt(
            resolved.effective_system_prompt, hints, resolved.enabled_tool_slugs
        )
        turn.prompt_length = len(system_prompt)
        tools = await self._tool_declarations(identity, resolved)

        history = await self.store.get_messages(request.id)
        user_message = request.latest_message
        await self.store.save_messages([user_message])

        stream_session = StreamSession(chat_id=request.id)
        await self.store.create_stream_session(stream_session)

        self.audit.log_turn_event(
            "turn_accepted",
            chat_id=request.id,
            user_id=identity.user_id,
            result="accepted",
            metadata={
                "stream_id": stream_session.stream_id,
                "agent_id": resolved.agent_id,
                "effective_model": resolved.effective_model,
                "tool_count": len(tools),
            }
        )

        return PreparedTurn(
            request=request,
            identity=identity,
            conversation=conversation,
            resolved=resolved,
            system_prompt=system_prompt,
            tools=tools,
            history=history + [user_message],
            user_message=user_message,
            stream_session=stream_session,
            trace=turn,
        )

    async def _check_quota(self, identity: Identity) -> None:
        entitlement = self.config.entitlement_for(identity.user_type)
        since = datetime.now(timezone.utc) - timedelta(hours=self.config.chat.quota_window_hours)
        count = await self.store.count_user_messages(identity.user_id, since)
        if count >= entitlement.max_messages_per_day:
            self.logger.info(f"User {identity.user_id} is over quota ({count} messages)")
            raise RateLimitedError()

    async def _load_conversation(self, request: TurnRequest, identity: Identity) -> Conversation:
        conversation = await self.store.get_conversation(request.id)
        if conversation is None:
            conversation = Conversation(
                id=request.id,
                user_id=identity.user_id,
                title=derive_title(request.latest_message, self.config.chat.title_max_length),
                visibility=request.selected_visibility_type,
            )
            await self.store.save_conversation(conversation)
            self.logger.info(f"Created conversation {conversation.id}")
            return conversation

        if conversation.user_id != identity.user_id:
            self.audit.log_security_event(
                event_type="conversation_access_denied",
                severity="medium",
                description="Turn submitted to a conversation owned by another user",
                user_id=identity.user_id,
                chat_id=request.id
            )
            raise ForbiddenError()
        return conversation

    async def _tool_declarations(
        self,
        identity: Identity,
        resolved: ResolvedTurnConfig
    ) -> List[ToolDeclaration]:
        if not resolved.enabled_tool_slugs:
            return []

        try:
            raw = await self.tools.get_tool_declarations(identity, sorted(resolved.enabled_tool_slugs))
        except Exception as e:
            self.logger.error(f"Tool declarations unavailable: {e}", exc_info=True)
            raise UpstreamUnavailableError("The tool provider is unavailable.") from e

        declarations = []
        for entry in raw:
            normalized = normalize_tool_declaration(entry)
            if normalized is None:
                self.logger.debug(f"Dropping tool declaration without name or description: {entry.get('name')}")
                continue
            if normalized["name"] not in resolved.enabled_tool_slugs:
                continue
            declarations.append(ToolDeclaration(
                **normalized,
                connection_id=resolved.connection_for(toolkit_of(normalized["name"])),
            ))
        return declarations

    # Streaming

    def open_stream(self, prepared: PreparedTurn) -> AsyncIterator[StreamFrame]:
        """Stream a prepared turn, resumably when the stream context is available."""
        context = self.streams.get()
        if context is not None:
            try:
                return context.resumable_stream(prepared.stream_id, lambda: self.stream_turn(prepared))
            except Exception as e:
                self.logger.warning(f"Falling back to direct stream for {prepared.stream_id}: {e}")
        return self.stream_turn(prepared)

    async def stream_turn(self, prepared: PreparedTurn) -> AsyncIterator[StreamFrame]:
        """Run the model step loop and yield typed frames.

        Provider failures and timeouts end in an error frame followed by a
        done frame. Cancellation propagates without further frames. Only a
        finished turn persists its assistant message.
        """
        sequence = itertools.count(1)

        def frame(frame_type: FrameType, **data: Any) -> StreamFrame:
            return StreamFrame(seq=next(sequence), type=frame_type, data=data)

        turn = prepared.trace
        chat_config = self.config.chat
        loop = asyncio.get_running_loop()
        deadline = loop.time() + chat_config.max_turn_duration_seconds
        started = time.monotonic()

        self.observer.transition(turn, TurnState.STREAMING, stream_id=prepared.stream_id)

        messages: List[Union[Message, ToolResultMessage]] = list(prepared.history)
        assistant_parts: List[Any] = []
        steps_used = 0
        state = TurnState.FINISHED

        try:
            for step in range(1, chat_config.max_steps + 1):
                steps_used = step
                request = ModelRequest(
                    model_id=prepared.resolved.effective_model,
                    system_prompt=prepared.system_prompt,
                    messages=messages,
                    tools=prepared.tools,
                    step=step,
                    max_steps=chat_config.max_steps,
                )

                step_text: List[str] = []
                tool_requests: List[ToolCallRequest] = []
                events = smooth_text(self.inference.stream(request), chat_config.chunk_delay_ms)
                try:
                    while True:
                        try:
                            event = await self._within(events.__anext__(), deadline)
                        except StopAsyncIteration:
                            break

                        if isinstance(event, TextDelta):
                            step_text.append(event.text)
                            yield frame(FrameType.TEXT_DELTA, delta=event.text)
                        elif isinstance(event, ReasoningDelta):
                            yield frame(FrameType.REASONING_DELTA, delta=event.text)
                        elif isinstance(event, ToolCallRequest):
                            tool_requests.append(event)
                finally:
                    await events.aclose()

                step_parts: List[Any] = []
                if step_text:
                    step_parts.append(TextPart(text="".join(step_text)))

                tool_results: List[ToolResultMessage] = []
                for call in tool_requests:
                    part = ToolCallPart(tool_name=call.tool_name, call_id=call.call_id, input=call.input)
                    yield frame(
                        FrameType.TOOL_CALL_START,
                        toolCallId=call.call_id,
                        toolName=call.tool_name,
                        input=call.input,
                    )

                    output, failed = await self._execute_tool(prepared, call, deadline)
                    part.transition(ToolCallState.ERROR if failed else ToolCallState.RESULT, output)
                    step_parts.append(part)
                    tool_results.append(ToolResultMessage(
                        call_id=call.call_id,
                        tool_name=call.tool_name,
                        output=output,
                        is_error=failed,
                    ))
                    yield frame(
                        FrameType.TOOL_CALL_RESULT,
                        toolCallId=call.call_id,
                        toolName=call.tool_name,
                        state=part.state,
                        output=output,
                    )

                if step_parts:
                    assistant_parts.append(StepBoundaryPart())
                    assistant_parts.extend(step_parts)
                    messages.append(Message(
                        chat_id=prepared.chat_id,
                        role=MessageRole.ASSISTANT,
                        parts=step_parts,
                    ))
                messages.extend(tool_results)

                if not tool_requests:
                    break
            else:
                self.logger.info(f"Turn {prepared.chat_id} reached the step limit of {chat_config.max_steps}")

            if assistant_parts:
                await self.store.save_messages([Message(
                    chat_id=prepared.chat_id,
                    role=MessageRole.ASSISTANT,
                    parts=assistant_parts,
                )])
            self.observer.transition(turn, TurnState.FINISHED, steps=steps_used)
            yield frame(FrameType.DONE)

        except TurnDeadlineExceeded:
            state = TurnState.CANCELLED
            self.logger.warning(f"Turn {prepared.chat_id} exceeded {chat_config.max_turn_duration_seconds}s")
            self.observer.transition(turn, TurnState.CANCELLED, reason="timeout", steps=steps_used)
            yield frame(FrameType.ERROR, errorText=TIMEOUT_ERROR_TEXT)
            yield frame(FrameType.DONE)

        except (asyncio.CancelledError, GeneratorExit):
            state = TurnState.CANCELLED
            self.observer.transition(turn, TurnState.CANCELLED, reason="disconnect", steps=steps_used)
            raise

        except Exception as e:
            state = TurnState.ERRORED
            self.logger.error(f"Turn {prepared.chat_id} failed during streaming: {e}", exc_info=True)
            self.observer.transition(turn, TurnState.ERRORED, reason=type(e).__name__, steps=steps_used)
            yield frame(FrameType.ERROR, errorText=GENERIC_ERROR_TEXT)
            yield frame(FrameType.DONE)

        finally:
            duration_ms = (time.monotonic() - started) * 1000
            get_metrics_collector().record_turn_completed(
                state.value, prepared.resolved.effective_model, duration_ms, steps_used
            )
            self.audit.log_turn_event(
                f"turn_{state.value}",
                chat_id=prepared.chat_id,
                user_id=prepared.identity.user_id,
                result=state.value,
                metadata={"stream_id": prepared.stream_id, "steps": steps_used, "duration_ms": int(duration_ms)}
            )

    async def _within(self, awaitable, deadline: float):
        scope = asyncio.timeout_at(deadline)
        try:
            async with scope:
                return await awaitable
        except TimeoutError:
            # Only our own deadline counts; provider timeouts are ordinary errors
            if scope.expired():
                raise TurnDeadlineExceeded()
            raise

    async def _execute_tool(
        self,
        prepared: PreparedTurn,
        call: ToolCallRequest,
        deadline: float
    ) -> Tuple[Any, bool]:
        slug = call.tool_name
        if slug not in prepared.resolved.enabled_tool_slugs:
            self.logger.warning(f"Model requested tool {slug} which is not enabled for this turn")
            return {"successful": False, "error": f"Tool {slug} is not available"}, True

        toolkit = toolkit_of(slug)
        with time_tool_call(slug) as timer:
            try:
                raw = await self._within(
                    self.tools.execute(slug, call.input, prepared.resolved.connection_for(toolkit)),
                    deadline
                )
            except TurnDeadlineExceeded:
                raise
            except Exception as e:
                self.logger.warning(f"Tool {slug} raised: {e}", exc_info=True)
                timer.outcome = "error"
                return {"successful": False, "error": DEFAULT_TOOL_ERROR}, True

            output = parse_tool_response(slug, toolkit, raw)
            failed = isinstance(output, dict) and output.get("successful") is False
            timer.outcome = "failure" if failed else "success"

        return output, failed

    # Resumption

    async def resume_stream(
        self,
        stream_id: str,
        identity: Optional[Identity],
        last_event_id: Optional[int] = None
    ) -> AsyncIterator[StreamFrame]:
        """Tail of a stream after ``last_event_id``, or an empty completion.

        Raises:
            UnauthorizedError: Without identity
            ForbiddenError: For another user's private conversation
        """
        if identity is None:
            raise UnauthorizedError()

        after = last_event_id or 0
        session = await self.store.get_stream_session(stream_id)
        if session is None:
            return self._empty_completion(after)

        conversation = await self.store.get_conversation(session.chat_id)
        if conversation is None:
            return self._empty_completion(after)
        self._check_readable(conversation, identity)

        context = self.streams.get()
        if context is None:
            return self._empty_completion(after)

        tail = await context.resume_existing_stream(stream_id, after)
        if tail is None:
            return self._empty_completion(after)
        return tail

    async def resume_latest(
        self,
        chat_id: str,
        identity: Optional[Identity],
        last_event_id: Optional[int] = None
    ) -> AsyncIterator[StreamFrame]:
        """Resume the newest stream of a conversation."""
        if identity is None:
            raise UnauthorizedError()

        conversation = await self.store.get_conversation(chat_id)
        if conversation is None:
            raise NotFoundError()
        self._check_readable(conversation, identity)

        sessions = await self.store.get_stream_sessions(chat_id)
        if not sessions:
            return self._empty_completion(last_event_id or 0)
        return await self.resume_stream(sessions[-1].stream_id, identity, last_event_id)

    def _check_readable(self, conversation: Conversation, identity: Identity) -> None:
        if not conversation.is_readable_by(identity.user_id):
            self.audit.log_security_event(
                event_type="stream_access_denied",
                severity="medium",
                description="Resume requested for another user's private conversation",
                user_id=identity.user_id,
                chat_id=conversation.id
            )
            raise ForbiddenError()

    @staticmethod
    async def _empty_completion(after: int = 0) -> AsyncIterator[StreamFrame]:
        yield StreamFrame(seq=after + 1, type=FrameType.DONE)

    # Deletion

    async def delete_conversation(self, chat_id: str, identity: Optional[Identity]) -> Conversation:
        """Delete a conversation owned by the caller."""
        if identity is None:
            raise UnauthorizedError()

        conversation = await self.store.get_conversation(chat_id)
        if conversation is None:
            raise NotFoundError()
        if conversation.user_id != identity.user_id:
            self.audit.log_security_event(
                event_type="conversation_delete_denied",
                severity="medium",
                description="Delete requested for another user's conversation",
                user_id=identity.user_id,
                chat_id=chat_id
            )
            raise ForbiddenError()

        sessions = await self.store.get_stream_sessions(chat_id)
        deleted = await self.store.delete_conversation(chat_id)
        if deleted is None:
            raise NotFoundError()
        await self._discard_streams(sessions)

        self.audit.log_turn_event("conversation_deleted", chat_id=chat_id, user_id=identity.user_id, result="deleted")
        return deleted

    async def _discard_streams(self, sessions: List[StreamSession]) -> None:
        context = self.streams.get()
        if context is None:
            return
        removed = 0
        for session in sessions:
            if await context.discard(session.stream_id):
                removed += 1
        self.logger.debug(f"Discarded {removed} stream journals of {len(sessions)} sessions")
