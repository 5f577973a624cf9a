"""Turn loop: alternate provider calls with tool execution until a final answer."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional

from .config import RuntimeConfig
from .conversation import Conversation, ConversationStore
from .errors import ConfigError, RuntimeFailure, TurnInProgressError
from .events import EventSink, EventStream, EventType
from .messages import (
    ROLE_SYSTEM,
    ROLE_TOOL,
    ROLE_USER,
    Message,
    ToolCall,
    conversation_char_count,
)
from .profile import ContextProfile, create_profile
from .provider import ChatRequest, ChatResponse, ProviderClient
from .retry import RetryPolicy, call_with_retry
from .tools import MUTATING_TOOLS, ToolContext, ToolOptions, Toolbox, build_toolbox
from .tools.plan import PlanSnapshot, plan_action

logger = logging.getLogger(__name__)

FORCE_THINKING_PROMPT = "ultrathink think very hard. reason step by step before answering."

PLAN_MODE_HINT = (
    "\n\n---\n"
    "PLAN MODE ENABLED: The user has enabled plan/analysis mode. You should ONLY:\n"
    "- Analyze code and explain what you find\n"
    "- Plan and outline changes without implementing them\n"
    "- Answer questions and provide recommendations\n"
    "- Research and investigate\n\n"
    "DO NOT make any file changes. If the user asks you to implement something, politely remind them "
    "that plan mode is enabled and they should turn it off if they want you to make changes."
)

CANCELED_TOOL_RESULT = "tool error: canceled"

PROJECT_DIR = ".agentic"
INSTRUCTIONS_FILE = "instructions.txt"
FACTS_FILE = "project_facts.json"


def blocked_tool_message(name: str) -> str:
    return (
        f"Tool '{name}' is blocked: Plan mode is enabled. The user wants you to only analyze and plan, "
        "not make changes. Ask them to disable plan mode if they want you to implement changes."
    )


class RWLock:
    """Many readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


# ---------------------------------------------------------------------------
# Project context injected into the system message
# ---------------------------------------------------------------------------


def load_project_instructions(root: str) -> str:
    path = os.path.join(root, PROJECT_DIR, INSTRUCTIONS_FILE)
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return handle.read().strip()
    except OSError:
        return ""


def load_project_facts(root: str) -> List[str]:
    path = os.path.join(root, PROJECT_DIR, FACTS_FILE)
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, ValueError):
        return []
    if not isinstance(data, list):
        return []
    return [str(item) for item in data if str(item).strip()]


def _append_to_system(messages: List[Message], suffix: str) -> List[Message]:
    if not suffix:
        return messages
    result = list(messages)
    for idx, message in enumerate(result):
        if message.role == ROLE_SYSTEM:
            result[idx] = Message(
                role=message.role,
                content=message.content + suffix,
                name=message.name,
                tool_call_id=message.tool_call_id,
                tool_calls=list(message.tool_calls),
                thinking=message.thinking,
            )
            break
    return result


def build_request_messages(
    messages: List[Message],
    *,
    instructions: str = "",
    facts: Optional[List[str]] = None,
    plan_mode: bool = False,
    force_thinking: bool = False,
) -> List[Message]:
    """Request-only view of the conversation; nothing added here is persisted."""
    result = list(messages)
    if instructions:
        result = _append_to_system(result, "\n\n---\nProject Instructions:\n" + instructions)
    if facts:
        bullets = "".join(f"- {fact}\n" for fact in facts)
        result = _append_to_system(result, "\n\n---\nProject Facts (learned from previous sessions):\n" + bullets)
    if plan_mode:
        result = _append_to_system(result, PLAN_MODE_HINT)
    if force_thinking and result and result[-1].role == ROLE_USER:
        result.append(Message(role=ROLE_USER, content=FORCE_THINKING_PROMPT))
    return result


# ---------------------------------------------------------------------------
# Workspace contexts
# ---------------------------------------------------------------------------


def workspace_slug(root: str) -> str:
    digest = hashlib.sha1(root.encode("utf-8")).hexdigest()[:8]
    name = os.path.basename(root.rstrip(os.sep)) or "root"
    return f"{name}-{digest}"


@dataclass
class WorkspaceContext:
    root: str
    data_dir: str
    store: ConversationStore
    toolbox: Toolbox
    profile: ContextProfile
    plan_mode: bool = False

    @property
    def registry(self):
        return self.toolbox.registry


class _Turn:
    def __init__(self) -> None:
        self.task: Optional["asyncio.Task[Optional[str]]"] = None
        self.canceled = False


SleepFn = Callable[[float], Awaitable[None]]


class Agent:
    """Drives conversations for one or more workspaces.

    Only one turn may be in flight per agent; ``cancel_request`` stops it.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        provider: ProviderClient,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Optional[SleepFn] = None,
        profile_factory: Optional[Callable[[str], ContextProfile]] = None,
    ) -> None:
        self.config = config
        self.provider = provider
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep or asyncio.sleep
        self._profile_factory = profile_factory or create_profile

        self._tokens_lock = threading.Lock()
        self._total_tokens = 0

        self._plan_lock = RWLock()
        self._last_plan: Optional[PlanSnapshot] = None

        self._workspaces_lock = RWLock()
        self._workspaces: Dict[str, WorkspaceContext] = {}

        self._turn_lock = threading.Lock()
        self._turn: Optional[_Turn] = None

        self.default_workspace = os.path.abspath(os.path.expanduser(config.workspace_root))

    # ------------------------------------------------------------------ counters
    def add_tokens(self, tokens: int) -> None:
        with self._tokens_lock:
            self._total_tokens += max(0, int(tokens or 0))

    @property
    def total_tokens(self) -> int:
        with self._tokens_lock:
            return self._total_tokens

    # ------------------------------------------------------------------ plan cache
    def last_plan(self) -> Optional[PlanSnapshot]:
        with self._plan_lock.read():
            return self._last_plan.copy() if self._last_plan is not None else None

    def _store_plan(self, plan: PlanSnapshot) -> None:
        with self._plan_lock.write():
            self._last_plan = plan.copy()

    # ------------------------------------------------------------------ workspaces
    def get_or_create_workspace_context(self, path: Optional[str] = None) -> WorkspaceContext:
        root = os.path.abspath(os.path.expanduser(path or self.default_workspace))
        with self._workspaces_lock.read():
            existing = self._workspaces.get(root)
        if existing is not None:
            return existing

        with self._workspaces_lock.write():
            existing = self._workspaces.get(root)
            if existing is not None:
                return existing
            if not os.path.isdir(root):
                raise ConfigError(f"workspace path does not exist: {root}")
            context = self._create_workspace_context(root)
            self._workspaces[root] = context
            logger.info("created workspace context for %s", root)
            return context

    def _create_workspace_context(self, root: str) -> WorkspaceContext:
        data_dir = os.path.join(self.config.data_dir, "projects", workspace_slug(root))
        os.makedirs(data_dir, exist_ok=True)
        toolbox = build_toolbox(
            ToolOptions(
                workspace_root=root,
                plan_path=os.path.join(data_dir, "plan.json"),
                process_dir=os.path.join(data_dir, "processes"),
                bin_dir=os.path.join(data_dir, "bin"),
                shell_timeout=float(self.config.shell_timeout_seconds),
                provider=self.provider,
                vision_model=self.config.vision_model or self.config.model,
            )
        )
        store = ConversationStore(data_dir, system_prompt=self.config.system_prompt)
        return WorkspaceContext(
            root=root,
            data_dir=data_dir,
            store=store,
            toolbox=toolbox,
            profile=self._profile_factory(self.config.context_profile),
        )

    def workspaces(self) -> List[WorkspaceContext]:
        with self._workspaces_lock.read():
            return list(self._workspaces.values())

    def set_plan_mode(self, workspace: Optional[str], enabled: bool) -> None:
        self.get_or_create_workspace_context(workspace).plan_mode = bool(enabled)

    def plan_mode(self, workspace: Optional[str] = None) -> bool:
        return self.get_or_create_workspace_context(workspace).plan_mode

    # ------------------------------------------------------------------ cancellation
    def has_in_flight_request(self) -> bool:
        with self._turn_lock:
            return self._turn is not None

    def cancel_request(self) -> bool:
        with self._turn_lock:
            turn = self._turn
            self._turn = None
        if turn is None or turn.task is None or turn.task.done():
            return False
        turn.canceled = True
        turn.task.cancel()
        logger.info("in-flight turn canceled")
        return True

    def _claim_turn(self) -> _Turn:
        with self._turn_lock:
            if self._turn is not None:
                raise TurnInProgressError("another request is already running")
            turn = _Turn()
            self._turn = turn
            return turn

    def _release_turn(self, turn: _Turn) -> None:
        with self._turn_lock:
            if self._turn is turn:
                self._turn = None

    # ------------------------------------------------------------------ turn loop
    async def respond(
        self,
        user_input: str,
        sink: Optional[EventSink] = None,
        workspace: Optional[str] = None,
    ) -> Optional[str]:
        """Run one turn and return the final assistant content.

        Returns ``None`` when the turn is canceled through ``cancel_request``.
        Provider failures that survive the retry policy propagate.
        """
        turn = self._claim_turn()
        try:
            context = self.get_or_create_workspace_context(workspace)
            conversation = context.store.current()
            events = EventStream(sink)
            turn.task = asyncio.ensure_future(self._run_turn(context, conversation, user_input, events))
            try:
                return await turn.task
            except asyncio.CancelledError:
                if turn.canceled:
                    logger.info("turn ended by cancellation")
                    return None
                turn.task.cancel()
                raise
        finally:
            self._release_turn(turn)

    async def _run_turn(
        self,
        context: WorkspaceContext,
        conversation: Conversation,
        user_input: str,
        events: EventStream,
    ) -> str:
        conversation.append(Message(role=ROLE_USER, content=user_input))
        context.store.save(conversation)
        context.profile.set_event_sink(events)

        instructions = load_project_instructions(context.root)
        facts = load_project_facts(context.root)

        while True:
            messages = await self._prepare(context, conversation)
            request = ChatRequest(
                model=self.config.model,
                messages=build_request_messages(
                    messages,
                    instructions=instructions,
                    facts=facts,
                    plan_mode=context.plan_mode,
                    force_thinking=self.config.force_thinking,
                ),
                tools=context.registry.definitions(),
                temperature=self.config.temperature,
                thinking={"type": "enabled"} if self.config.thinking_enabled else None,
            )
            logger.debug(
                "invoking provider with %d messages (~%d chars)",
                len(messages),
                conversation_char_count(messages),
            )
            response = await call_with_retry(
                lambda: self.provider.chat(request),
                events,
                self.retry_policy,
                sleep=self._sleep,
            )
            self.add_tokens(response.usage.total_tokens)
            if not response.choices:
                raise RuntimeFailure("no choices returned")

            message = response.choices[0].message
            conversation.append(message)
            context.store.save(conversation)

            if not message.tool_calls:
                await events.emit(EventType.ASSISTANT_MESSAGE, self._assistant_payload(conversation, message, response))
                await self._after_response(context, conversation, events)
                return message.content

            answered: List[str] = []
            try:
                if message.content or message.thinking:
                    await events.emit(
                        EventType.ASSISTANT_MESSAGE, self._assistant_payload(conversation, message, response)
                    )
                for call in message.tool_calls:
                    await events.emit(
                        EventType.TOOL_CALL_STARTED,
                        {"id": call.id, "function": call.name, "arguments": call.arguments},
                    )
                await self._process_tool_calls(context, conversation, message.tool_calls, events, answered)
            except asyncio.CancelledError:
                self._answer_canceled(context, conversation, message.tool_calls, answered)
                raise
            await self._after_response(context, conversation, events)

    async def _prepare(self, context: WorkspaceContext, conversation: Conversation) -> List[Message]:
        try:
            prepared = await context.profile.prepare(conversation)
        except Exception:
            logger.exception("context profile prepare failed")
            return conversation.messages()
        if prepared.mutated:
            context.store.save(conversation)
        return prepared.messages or conversation.messages()

    async def _after_response(self, context: WorkspaceContext, conversation: Conversation, events: EventStream) -> None:
        try:
            mutated = await context.profile.after_response(conversation)
        except Exception:
            logger.exception("context profile after-response failed")
            return
        if not mutated:
            return
        context.store.save(conversation)
        await events.emit(
            EventType.CONTEXT_UPDATE,
            {
                "context_chars": conversation_char_count(conversation.messages()),
                "total_tokens": self.total_tokens,
                "context_limit_tokens": self.config.context_limit_tokens,
            },
        )

    def _assistant_payload(self, conversation: Conversation, message: Message, response: ChatResponse) -> Dict[str, Any]:
        return {
            "content": message.content,
            "thinking": message.thinking or "",
            "context_chars": conversation_char_count(conversation.messages()),
            "total_tokens": self.total_tokens,
            "context_limit_tokens": self.config.context_limit_tokens,
            "usage": response.usage.to_dict(),
        }

    async def _process_tool_calls(
        self,
        context: WorkspaceContext,
        conversation: Conversation,
        calls: List[ToolCall],
        events: EventStream,
        answered: List[str],
    ) -> None:
        """Run ``calls`` in order; ``answered`` collects the ids that got a tool message."""
        ctx = ToolContext(
            guard=context.toolbox.guard,
            session_path=str(conversation.storage_path) if conversation.storage_path else None,
        )
        for call in calls:
            if context.plan_mode and call.name in MUTATING_TOOLS:
                text = blocked_tool_message(call.name)
                logger.info("plan mode: blocked %s", call.name)
                conversation.append(Message(role=ROLE_TOOL, name=call.name, content=text, tool_call_id=call.id))
                answered.append(call.id)
                context.store.save(conversation)
                await events.emit(
                    EventType.TOOL_CALL_COMPLETED,
                    {"id": call.id, "function": call.name, "result": text, "error": True, "blocked": True},
                )
                continue

            logger.info("executing tool %s", call.name)
            outcome = await context.registry.dispatch(call, ctx)
            conversation.append(
                Message(role=ROLE_TOOL, name=call.name, content=outcome.content, tool_call_id=call.id)
            )
            answered.append(call.id)
            context.store.save(conversation)
            await events.emit(
                EventType.TOOL_CALL_COMPLETED,
                {
                    "id": call.id,
                    "function": call.name,
                    "result": outcome.content,
                    "error": outcome.error,
                    "context_chars": conversation_char_count(conversation.messages()),
                    "total_tokens": self.total_tokens,
                },
            )
            if call.name == "update_plan" and not outcome.error:
                await self._record_plan(call, outcome.content, events)

    def _answer_canceled(
        self,
        context: WorkspaceContext,
        conversation: Conversation,
        calls: List[ToolCall],
        answered: List[str],
    ) -> None:
        # Each tool call gets exactly one tool message, canceled or not.
        pending = [call for call in calls if call.id not in answered]
        if not pending:
            return
        for call in pending:
            conversation.append(
                Message(role=ROLE_TOOL, name=call.name, content=CANCELED_TOOL_RESULT, tool_call_id=call.id)
            )
        context.store.save(conversation)
        logger.info("turn canceled with %d tool call(s) unanswered", len(pending))

    async def _record_plan(self, call: ToolCall, result: str, events: EventStream) -> None:
        try:
            args = json.loads(call.arguments or "{}")
        except ValueError:
            return
        if not isinstance(args, dict) or plan_action(args) != "update":
            return
        try:
            snapshot = PlanSnapshot.from_dict(json.loads(result))
        except (ValueError, AttributeError):
            logger.warning("update_plan returned an unparsable snapshot")
            return
        self._store_plan(snapshot)
        await events.emit(EventType.PLAN_UPDATE, snapshot.to_dict())

    # ------------------------------------------------------------------ state
    def snapshot(self, workspace: Optional[str] = None) -> Dict[str, Any]:
        context = self.get_or_create_workspace_context(workspace)
        conversation = context.store.current()
        messages = conversation.messages()
        plan = self.last_plan()
        return {
            "model": self.config.model,
            "workspace": context.root,
            "session": conversation.key,
            "total_tokens": self.total_tokens,
            "context_chars": conversation_char_count(messages),
            "context_limit_tokens": self.config.context_limit_tokens,
            "plan_mode": context.plan_mode,
            "thinking_enabled": self.config.thinking_enabled,
            "force_thinking": self.config.force_thinking,
            "plan": plan.to_dict() if plan is not None else None,
            "messages": [message.to_dict() for message in messages],
        }

    async def shutdown(self) -> None:
        self.cancel_request()
        for context in self.workspaces():
            await context.toolbox.supervisor.shutdown()
