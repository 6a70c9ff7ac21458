"""Orchestration facade - the single per-turn entry point for the workflow engine.

Turn sequence:
    checkpoint -> input safety -> token budget -> cache lookup -> route
    -> gateway call with failover -> output safety -> cache store -> metrics

Every stage returns a StageResult instead of raising:

- SUCCESS      carries the stage's value, or a finished TurnResult when the
               stage ends the turn early (blocked input, cache hit)
- RECOVERABLE  the turn failed but a checkpoint may restore the conversation
- FATAL        nothing left to try; the caller gets a generic apology

``handle_turn`` never raises. User-facing text never carries provider
identity or exception detail; those go to the logs only.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog
from pydantic import BaseModel, Field

from resilience.budget.estimators import build_estimator
from resilience.budget.validator import TokenBudgetValidator
from resilience.cache.response_cache import ResponseCache
from resilience.checkpoint.manager import CheckpointManager
from resilience.config import Settings, get_settings
from resilience.exceptions import (
    AllProvidersExhausted,
    ContextTooLarge,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ResilienceError,
)
from resilience.health import HealthCheck, SystemHealth
from resilience.models import ConversationState, Message, Resource, ToolInvocation
from resilience.monitoring.alerts import Alert
from resilience.monitoring.metrics import MetricsCollector, RequestOutcome
from resilience.providers.client import LLMClient
from resilience.providers.descriptor import ProviderDescriptor, default_catalog
from resilience.providers.gateway import CallOptions, GatewayResponse, ProviderGateway
from resilience.routing.router import TaskRouter
from resilience.safety.filter import (
    INPUT_BLOCKED_MESSAGE,
    OUTPUT_REPLACEMENT_MESSAGE,
    SafetyFilter,
)
from resilience.store.backend import KeyValueStore, create_store
from resilience.telemetry.logging import bind_thread_context, bind_turn_context, clear_context

log = structlog.get_logger(__name__)

FAILURE_MESSAGE = (
    "I encountered an error processing your request. "
    "Please try again or rephrase your question."
)
RECOVERED_MESSAGE = (
    "I ran into a problem generating a response, so I restored our conversation "
    "from the last saved point. Please try again."
)
REPORT_REVISION_MESSAGE = (
    "I need to revise the report to ensure it meets our content guidelines. "
    "Let me create a new version."
)

# Messages kept from the history when the context alone is over budget
_HISTORY_TAIL = 3
# Provider label for outcomes that never reached a provider
_CACHE_PROVIDER = "cache"
_NO_PROVIDER = "none"


# ---------------------------------------------------------------------------
# Boundary types
# ---------------------------------------------------------------------------


class TurnKind(StrEnum):
    MESSAGE = "message"
    TOOL_CALL = "tool_call"
    BLOCKED = "blocked"
    RECOVERED = "recovered"
    FAILED = "failed"


class TurnRequest(BaseModel):
    """One conversational turn as handed over by the workflow engine.

    ``thread_id`` absent means no checkpointing for this turn. ``model_hint``
    is a provider key, provider name or model id the caller would like tried
    first.
    """

    messages: list[Message]
    thread_id: str | None = None
    model_hint: str | None = None
    resources: list[Resource] = Field(default_factory=list)
    task: str = "chat"
    tools: list[dict[str, Any]] | None = None
    system_prompt: str | None = None
    user_id: str | None = None

    def to_state(self) -> ConversationState:
        return ConversationState(
            thread_id=self.thread_id,
            messages=self.messages,
            model=self.model_hint,
            resources=self.resources,
        )


class TurnResult(BaseModel):
    """What the workflow engine gets back. Never an exception."""

    kind: TurnKind
    message: str = ""
    tool_call: ToolInvocation | None = None
    recovered_state: ConversationState | None = None
    cached: bool = False

    def to_payload(self) -> dict[str, Any]:
        """Cacheable form (only MESSAGE and TOOL_CALL results are cached)."""
        return self.model_dump(mode="json", include={"kind", "message", "tool_call"})

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> TurnResult:
        return cls.model_validate({**payload, "cached": True})


# ---------------------------------------------------------------------------
# Stage results
# ---------------------------------------------------------------------------


class StageStatus(StrEnum):
    SUCCESS = "success"
    RECOVERABLE = "recoverable"
    FATAL = "fatal"


@dataclass
class StageResult:
    """Outcome of one facade stage."""

    status: StageStatus
    stage: str
    value: Any = None
    turn: TurnResult | None = None
    error: BaseException | None = None

    @classmethod
    def ok(cls, stage: str, value: Any = None) -> StageResult:
        return cls(StageStatus.SUCCESS, stage, value=value)

    @classmethod
    def done(cls, stage: str, turn: TurnResult) -> StageResult:
        return cls(StageStatus.SUCCESS, stage, turn=turn)

    @classmethod
    def recoverable(cls, stage: str, error: BaseException) -> StageResult:
        return cls(StageStatus.RECOVERABLE, stage, error=error)

    @classmethod
    def fatal(cls, stage: str, error: BaseException) -> StageResult:
        return cls(StageStatus.FATAL, stage, error=error)

    @property
    def succeeded(self) -> bool:
        return self.status == StageStatus.SUCCESS

    @property
    def finished(self) -> bool:
        """True if the stage ended the turn, successfully or not."""
        return not self.succeeded or self.turn is not None


@dataclass
class _Prompt:
    messages: list[Message]
    token_count: int
    chunk_count: int = 1
    history: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    """Owns the store lifecycle and sequences every component per turn.

    Usage:
        async with Orchestrator.from_settings(get_settings()) as orchestrator:
            result = await orchestrator.handle_turn(TurnRequest(messages=[...]))
    """

    def __init__(
        self,
        *,
        settings: Settings,
        store: KeyValueStore,
        gateway: ProviderGateway,
        router: TaskRouter,
        cache: ResponseCache,
        checkpoints: CheckpointManager,
        metrics: MetricsCollector,
        safety_filter: SafetyFilter,
        validator: TokenBudgetValidator,
    ) -> None:
        self._settings = settings
        self._store = store
        self._gateway = gateway
        self._router = router
        self._cache = cache
        self._checkpoints = checkpoints
        self._metrics = metrics
        self._safety = safety_filter
        self._validator = validator
        self._health = HealthCheck(store, gateway, check_timeout=settings.store_timeout_seconds)
        self._initialized = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        providers: Sequence[ProviderDescriptor] | None = None,
        client: LLMClient | None = None,
        store: KeyValueStore | None = None,
    ) -> Orchestrator:
        """Wire every component from settings. Arguments override the defaults."""
        settings = settings or get_settings()
        store = store or create_store(settings)
        validator = TokenBudgetValidator(
            budget=settings.token_budget,
            overlap_reserve=settings.token_overlap_reserve,
            estimator=build_estimator(settings),
        )
        safety_filter = SafetyFilter(
            max_input_length=settings.max_input_length,
            profanity_threshold=settings.profanity_threshold,
        )
        metrics = MetricsCollector.from_settings(store, settings)
        gateway = ProviderGateway.from_settings(
            settings,
            default_catalog(settings) if providers is None else providers,
            client or LLMClient(settings),
            validator=validator,
            safety_filter=safety_filter,
            metrics=metrics,
        )
        return cls(
            settings=settings,
            store=store,
            gateway=gateway,
            router=TaskRouter(gateway, validator=validator),
            cache=ResponseCache.from_settings(store, settings),
            checkpoints=CheckpointManager.from_settings(store, settings),
            metrics=metrics,
            safety_filter=safety_filter,
            validator=validator,
        )

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self._store.initialize()
        self._initialized = True
        log.info(
            "orchestrator.initialized",
            providers=[p.key for p in self._gateway.providers],
            store=type(self._store).__name__,
        )

    async def shutdown(self) -> None:
        if not self._initialized:
            return
        await self._store.close()
        self._initialized = False
        log.info("orchestrator.shutdown")

    async def __aenter__(self) -> Orchestrator:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    @property
    def gateway(self) -> ProviderGateway:
        return self._gateway

    @property
    def router(self) -> TaskRouter:
        return self._router

    # ------------------------------------------------------------------ #
    # Turn handling
    # ------------------------------------------------------------------ #

    async def handle_turn(self, request: TurnRequest) -> TurnResult:
        """Run one conversational turn end-to-end.

        Raises:
            ResilienceError: Only if called before ``initialize()``
        """
        if not self._initialized:
            raise ResilienceError("Orchestrator used before initialize()")

        bind_thread_context(request.thread_id)
        bind_turn_context(uuid.uuid4().hex[:16])
        start = time.perf_counter()
        try:
            try:
                outcome = await self._run_turn(request, start)
            except Exception as exc:
                log.exception("orchestrator.unexpected_error", error=str(exc))
                outcome = StageResult.recoverable("turn", exc)

            if outcome.succeeded and outcome.turn is not None:
                return outcome.turn
            return await self._handle_failure(request, outcome, start)
        finally:
            clear_context()

    async def _run_turn(self, request: TurnRequest, start: float) -> StageResult:
        await self._checkpoint_stage(request)

        safety = self._input_safety_stage(request.messages)
        if safety.finished:
            return safety
        messages: list[Message] = safety.value

        budget = self._budget_stage(request, messages)
        if budget.finished:
            return budget
        prompt: _Prompt = budget.value

        cached = await self._cache_lookup_stage(request, prompt, start)
        if cached.finished:
            return cached

        options = self._route_stage(request, messages, prompt)

        call = await self._call_stage(prompt, options)
        if call.finished:
            return call
        response: GatewayResponse = call.value

        turn = self._output_safety_stage(response)

        if self._settings.enable_caching and _is_cacheable(turn):
            await self._cache.set_response(
                prompt.messages, request.model_hint, turn.to_payload(), request.tools
            )

        await self._record(
            RequestOutcome(
                provider=response.provider_used,
                model=response.model,
                duration_ms=(time.perf_counter() - start) * 1000,
                tokens_used=response.tokens_used,
                cost=response.cost,
                user_id=request.user_id,
            )
        )
        log.info(
            "orchestrator.turn_completed",
            kind=turn.kind,
            provider=response.provider_used,
            tokens_used=response.tokens_used,
            chunks=prompt.chunk_count,
        )
        return StageResult.done("turn", turn)

    # ------------------------------------------------------------------ #
    # Stages
    # ------------------------------------------------------------------ #

    async def _checkpoint_stage(self, request: TurnRequest) -> StageResult:
        if not (request.thread_id and self._settings.enable_checkpointing):
            return StageResult.ok("checkpoint")
        # Best-effort: the manager logs and swallows store errors
        saved = await self._checkpoints.checkpoint(request.thread_id, request.to_state())
        return StageResult.ok("checkpoint", saved)

    def _input_safety_stage(self, messages: list[Message]) -> StageResult:
        messages = [m.model_copy() for m in messages]
        if not self._settings.enable_input_validation:
            return StageResult.ok("input_safety", messages)

        index = next(
            (i for i in range(len(messages) - 1, -1, -1) if messages[i].role == "user"),
            None,
        )
        if index is None or not messages[index].content:
            return StageResult.ok("input_safety", messages)

        result = self._safety.validate_input(messages[index].content)
        if result.blocked:
            log.warning("orchestrator.input_blocked", issues=result.messages)
            return StageResult.done(
                "input_safety",
                TurnResult(kind=TurnKind.BLOCKED, message=INPUT_BLOCKED_MESSAGE),
            )

        messages[index].content = result.sanitized_text
        return StageResult.ok("input_safety", messages)

    def _budget_stage(self, request: TurnRequest, messages: list[Message]) -> StageResult:
        system_prompt = request.system_prompt or ""
        resource_text = _render_resources(request.resources)
        history = [m.content for m in messages]

        try:
            budget = self._validator.validate_and_chunk(resource_text, [system_prompt, *history])
        except ContextTooLarge:
            log.warning("orchestrator.history_truncated", kept=_HISTORY_TAIL)
            messages = messages[-_HISTORY_TAIL:]
            history = [m.content for m in messages]
            try:
                budget = self._validator.validate_and_chunk(
                    resource_text, [system_prompt, *history]
                )
            except ContextTooLarge as exc:
                return StageResult.recoverable("token_budget", exc)

        prompt_messages: list[Message] = []
        if budget.was_chunked:
            for warning in budget.warnings:
                log.info("orchestrator.budget_warning", warning=warning)
            prompt_messages.append(
                Message(role="system", content=_join(system_prompt, budget.chunks[0]))
            )
            prompt_messages.append(
                Message(
                    role="system",
                    content=(
                        "Note: Content was chunked due to size. "
                        f"Processing chunk 1 of {len(budget.chunks)}."
                    ),
                )
            )
            messages = messages[-_HISTORY_TAIL:]
        else:
            system_content = _join(system_prompt, resource_text)
            if system_content:
                prompt_messages.append(Message(role="system", content=system_content))
        prompt_messages.extend(messages)

        return StageResult.ok(
            "token_budget",
            _Prompt(
                messages=prompt_messages,
                token_count=budget.token_count,
                chunk_count=len(budget.chunks),
                history=[m.content for m in messages],
            ),
        )

    async def _cache_lookup_stage(
        self,
        request: TurnRequest,
        prompt: _Prompt,
        start: float,
    ) -> StageResult:
        if not self._settings.enable_caching:
            return StageResult.ok("cache_lookup")

        payload = await self._cache.get_response(
            prompt.messages, request.model_hint, request.tools
        )
        if payload is None:
            return StageResult.ok("cache_lookup")

        try:
            turn = TurnResult.from_payload(payload)
        except ValueError as exc:
            log.warning("orchestrator.cache_payload_invalid", error=str(exc))
            return StageResult.ok("cache_lookup")

        log.info("orchestrator.cache_hit", kind=turn.kind)
        await self._record(
            RequestOutcome(
                provider=_CACHE_PROVIDER,
                model=request.model_hint or "",
                duration_ms=(time.perf_counter() - start) * 1000,
                cached=True,
                user_id=request.user_id,
            )
        )
        return StageResult.done("cache_lookup", turn)

    def _route_stage(
        self,
        request: TurnRequest,
        messages: list[Message],
        prompt: _Prompt,
    ) -> CallOptions:
        preferred = self._hinted_keys(request.model_hint)
        if self._settings.enable_model_routing:
            user_input = next((m.content for m in reversed(messages) if m.role == "user"), "")
            selection = self._router.select_model(request.task, user_input, prompt.history)
            if selection is not None:
                preferred.extend(k for k in selection.ordered_keys if k not in preferred)
        return CallOptions(preferred=preferred or None, tools=request.tools)

    def _hinted_keys(self, model_hint: str | None) -> list[str]:
        if not model_hint:
            return []
        hint = model_hint.lower()
        return [
            p.key
            for p in self._gateway.providers
            if hint in (p.key.lower(), p.model_id.lower(), p.model_name.lower(), p.name.lower())
        ]

    async def _call_stage(self, prompt: _Prompt, options: CallOptions) -> StageResult:
        try:
            response = await self._gateway.call(prompt.messages, options)
        except AllProvidersExhausted as exc:
            return StageResult.recoverable("provider_call", exc)
        return StageResult.ok("provider_call", response)

    def _output_safety_stage(self, response: GatewayResponse) -> TurnResult:
        content = self._screen_output(response.content)
        if not response.tool_calls:
            return TurnResult(kind=TurnKind.MESSAGE, message=content)

        # Tools are bound without parallel calls; the first call is the one to run
        call = response.tool_calls[0]
        arguments: dict[str, Any] = {}
        for name, value in call.arguments.items():
            if isinstance(value, str):
                screened = self._screen_output(value)
                if screened == OUTPUT_REPLACEMENT_MESSAGE:
                    log.warning("orchestrator.tool_output_replaced", tool=call.name, argument=name)
                    return TurnResult(kind=TurnKind.MESSAGE, message=REPORT_REVISION_MESSAGE)
                arguments[name] = screened
            else:
                arguments[name] = value
        return TurnResult(
            kind=TurnKind.TOOL_CALL,
            message=content,
            tool_call=call.model_copy(update={"arguments": arguments}),
        )

    def _screen_output(self, text: str) -> str:
        if not text:
            return text
        if self._settings.enable_output_filtering:
            return self._safety.validate_output(text)
        # Provider identity is redacted even with output filtering off
        return self._safety.redact_system_info(text)

    # ------------------------------------------------------------------ #
    # Failure handling
    # ------------------------------------------------------------------ #

    async def _handle_failure(
        self,
        request: TurnRequest,
        failure: StageResult,
        start: float,
    ) -> TurnResult:
        error = failure.error or ResilienceError(f"Stage {failure.stage} failed")
        log.error(
            "orchestrator.turn_failed",
            stage=failure.stage,
            status=failure.status,
            error=str(error),
            error_type=type(error).__name__,
        )

        if failure.status == StageStatus.RECOVERABLE:
            failure = await self._recover(request, error)
            if failure.succeeded and failure.turn is not None:
                await self._record_error(request, error, start)
                return failure.turn

        await self._record_error(request, error, start)
        return TurnResult(kind=TurnKind.FAILED, message=FAILURE_MESSAGE)

    async def _recover(self, request: TurnRequest, error: BaseException) -> StageResult:
        if not (request.thread_id and self._settings.enable_checkpointing):
            return StageResult.fatal("recovery", error)

        state = await self._checkpoints.recover(request.thread_id, _recovery_reason(error))
        if state is None:
            return StageResult.fatal("recovery", error)

        log.info("orchestrator.recovered", thread_id=request.thread_id)
        return StageResult.done(
            "recovery",
            TurnResult(kind=TurnKind.RECOVERED, message=RECOVERED_MESSAGE, recovered_state=state),
        )

    async def _record_error(self, request: TurnRequest, error: BaseException, start: float) -> None:
        await self._record(
            RequestOutcome(
                provider=_NO_PROVIDER,
                model=request.model_hint or "",
                duration_ms=(time.perf_counter() - start) * 1000,
                success=False,
                error_type=type(error).__name__,
                user_id=request.user_id,
            )
        )

    async def _record(self, outcome: RequestOutcome) -> list[Alert]:
        alerts = await self._metrics.record(outcome)
        for alert in alerts:
            log.warning("orchestrator.alert_raised", alert_id=alert.id, kind=alert.kind)
        return alerts

    # ------------------------------------------------------------------ #
    # Operator views
    # ------------------------------------------------------------------ #

    async def health(self) -> SystemHealth:
        return await self._health.check_all()

    async def metrics_snapshot(self, hours: int = 24) -> dict[str, Any]:
        """System metrics, provider comparison, cache and recovery stats.

        Raises:
            StoreError: If the store cannot be reached
            ValueError: If hours < 1
        """
        system = await self._metrics.get_system_metrics(hours)
        return {
            "system": system.to_dict(),
            "providers": await self._metrics.provider_comparison(hours),
            "cache": await self._cache.stats(),
            "recovery": await self._checkpoints.recovery_stats(),
        }

    async def active_alerts(self) -> list[Alert]:
        return await self._metrics.get_active_alerts()

    async def resolve_alert(self, alert_id: str) -> bool:
        return await self._metrics.resolve_alert(alert_id)


# Most specific first. The note lands in the recovered conversation, so it
# names a failure category and never provider keys or upstream error text.
_RECOVERY_REASONS: tuple[tuple[type[BaseException], str], ...] = (
    (AllProvidersExhausted, "the language service was unavailable"),
    (ProviderTimeoutError, "the language service timed out"),
    (TimeoutError, "the request timed out"),
    (ProviderRateLimitError, "the language service was rate limited"),
    (ProviderError, "the language service returned an error"),
    (ContextTooLarge, "the conversation exceeded the size limit"),
)


def _recovery_reason(error: BaseException) -> str:
    for error_type, reason in _RECOVERY_REASONS:
        if isinstance(error, error_type):
            return reason
    return "an internal error occurred"


def _is_cacheable(turn: TurnResult) -> bool:
    """Only model answers are cached, never safety replacement text."""
    if turn.kind not in (TurnKind.MESSAGE, TurnKind.TOOL_CALL):
        return False
    return turn.message not in (OUTPUT_REPLACEMENT_MESSAGE, REPORT_REVISION_MESSAGE)


def _render_resources(resources: Sequence[Resource]) -> str:
    blocks = []
    for resource in resources:
        if not resource.content:
            continue
        header = resource.title or resource.url
        blocks.append(f"{header}\n{resource.content}" if header else resource.content)
    return "\n\n".join(blocks)


def _join(*parts: str) -> str:
    return "\n\n".join(part for part in parts if part)
