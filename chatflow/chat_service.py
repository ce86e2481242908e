import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from .config import AppSettings
from .context_builder import ContextBuilder, truncate_text
from .db import Database
from .deep_research import DeepResearchOrchestrator, Final, Planned
from .errors import (
    AbortedError,
    DuplicateSubmissionError,
    ErrorSummary,
    ImageGenerationError,
    TurnValidationError,
    classify_error,
)
from .image_heuristics import (
    ImageTurnPlan,
    IntentClassifier,
    KeywordIntentClassifier,
    analyze_image_turn,
    image_signature,
)
from .image_store import ImageStore
from .lease import LeaseRegistry, RequestLease
from .llm import BaseLLMClient, CompleteChunk, ProviderRegistry, RequestOptions, TokenChunk
from .schemas import (
    ChatTurn,
    ImageAttachment,
    Message,
    ModelCapabilities,
    ModelRef,
    TurnRequest,
    encode_message_content,
    parse_message_content,
)
from .streaming import ErrorEvent, PlanEvent, StepEvent, StreamController, TitleEvent, TokenEvent
from .titles import TitleGenerator, fallback_title


logger = logging.getLogger("uvicorn.error")

IMAGE_MAX_TOKENS_FLOOR = 4096
IMAGE_TOKEN_COST = 200
MIN_MAX_TOKENS = 1024
RESEARCH_CONTEXT_MESSAGES = 4
RESEARCH_CONTEXT_CHARS = 500
EMPTY_RESPONSE_TEXT = "The model returned an empty response."


@dataclass
class ResolvedModel:
    key: str
    client: BaseLLMClient
    options: RequestOptions
    system_prompt: Optional[str] = None
    agent: Optional[str] = None

    @property
    def capabilities(self) -> ModelCapabilities:
        return ModelCapabilities(
            supports_multimodal=self.client.supports_multimodal,
            supports_image_generation=self.client.supports_image_generation,
            accepts_assistant_images=self.client.accepts_assistant_images,
        )


@dataclass
class Turn:
    session_id: str
    principal: str
    request: TurnRequest
    text: str
    images: List[ImageAttachment]
    history: List[Message]
    model: ResolvedModel
    lease: RequestLease
    controller: StreamController
    started_at: float = field(default_factory=time.monotonic)


def image_max_tokens(max_tokens: int, image_count: int) -> int:
    if not image_count:
        return max_tokens
    raised = max(max_tokens, IMAGE_MAX_TOKENS_FLOOR)
    return max(MIN_MAX_TOKENS, raised - IMAGE_TOKEN_COST * image_count)


class ChatService:
    """Runs one conversational turn per session: persistence, context, provider streaming and completion."""

    def __init__(
        self,
        db: Database,
        settings: AppSettings,
        providers: ProviderRegistry,
        store: ImageStore,
        *,
        leases: Optional[LeaseRegistry] = None,
        classifier: Optional[IntentClassifier] = None,
        titles: Optional[TitleGenerator] = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.providers = providers
        self.store = store
        self.leases = leases or LeaseRegistry()
        self.classifier = classifier or KeywordIntentClassifier()
        self.context_builder = ContextBuilder(store, self.classifier)
        self.titles = titles or TitleGenerator()
        self.tasks: Dict[str, asyncio.Task] = {}
        self._turn_leases: Dict[str, RequestLease] = {}
        self._recent: Dict[str, Tuple[str, float]] = {}
        self._retiring: Set[asyncio.Task] = set()

    def resolve_model(self, ref: ModelRef, image_count: int = 0) -> ResolvedModel:
        system_prompt = None
        agent_key = None
        if ref.kind == "agent":
            agent = self.settings.agents.get(ref.id or "")
            if agent is None:
                raise TurnValidationError(f"Unknown agent: {ref.id}")
            agent_key = agent.key
            model_config = self.settings.models.get(agent.model)
            if model_config is None:
                raise TurnValidationError(f"Agent {agent.key} uses an unknown model: {agent.model}")
            system_prompt = agent.system_prompt or None
            source = agent if agent.parameter_enabled else model_config
        else:
            if ref.id and ref.id not in self.settings.models:
                raise TurnValidationError(f"Unknown model: {ref.id}")
            model_config = self.settings.resolve_model(ref.id)
            if model_config is None:
                raise TurnValidationError("No models are configured.")
            source = model_config
        options = RequestOptions(
            max_tokens=image_max_tokens(source.max_tokens, image_count),
            temperature=source.temperature,
            top_p=source.top_p,
        )
        return ResolvedModel(
            key=model_config.key,
            client=self.providers.get(model_config.key),
            options=options,
            system_prompt=system_prompt,
            agent=agent_key,
        )

    def _check_duplicate(self, session_id: str, request: TurnRequest) -> None:
        text = request.text.strip()
        if not text:
            return
        window = self.settings.dedup_window_ms / 1000.0
        signatures = ",".join(image_signature(img.data.encode("ascii", "ignore")) for img in request.images)
        key = f"{signatures}:{text}"
        now = time.monotonic()
        previous = self._recent.get(session_id)
        if previous and previous[0] == key and now - previous[1] < window:
            raise DuplicateSubmissionError("Duplicate submission ignored.")
        self._recent[session_id] = (key, now)

    def _validate(self, request: TurnRequest, text: str, images: List[ImageAttachment]) -> None:
        candidate = request.model_copy(update={"text": text, "images": images})
        try:
            candidate.validate_limits(
                self.settings.max_images_per_turn,
                self.settings.max_text_chars,
                self.settings.max_text_chars_with_images,
            )
        except ValueError as exc:
            raise TurnValidationError(str(exc)) from exc

    async def _load_history(self, session_id: str) -> List[Message]:
        rows = await self.db.list_messages(session_id)
        return [Message(**row) for row in rows]

    async def _truncate_for_regeneration(self, session_id: str, request: TurnRequest) -> None:
        if request.from_message_id:
            await self.db.delete_from_message_onwards(session_id, request.from_message_id)
            return
        # without an explicit target, drop the latest assistant reply
        latest = await self.db.list_messages(session_id, limit=1)
        if latest and latest[-1]["role"] == "assistant":
            await self.db.delete_from_message_onwards(session_id, latest[-1]["id"])

    async def start_turn(self, session_id: str, principal: str, request: TurnRequest) -> StreamController:
        session = await self.db.get_session(session_id)
        if not session:
            raise KeyError("Session not found")
        if session["user_id"] != principal:
            raise PermissionError("Session belongs to another user")

        if not request.is_regeneration:
            self._validate(request, request.text, request.images)
        model = self.resolve_model(request.model_ref, len(request.images))
        if not request.is_regeneration:
            self._check_duplicate(session_id, request)

        lease = self.leases.acquire(session_id)
        try:
            text, images = request.text, list(request.images)
            if request.is_regeneration:
                await self._truncate_for_regeneration(session_id, request)
                history = await self._load_history(session_id)
                if history and history[-1].role == "user":
                    stored_text, stored_images = parse_message_content(history[-1].content)
                    text = text if text.strip() else stored_text
                    images = images or stored_images
                self._validate(request, text, images)
                if len(images) != len(request.images):
                    model = self.resolve_model(request.model_ref, len(images))
                if not history or history[-1].role != "user":
                    # the truncation removed the prompt itself; store the resubmitted one
                    await self.db.add_message(session_id, "user", encode_message_content(text, images))
            else:
                history = await self._load_history(session_id)
                await self.db.add_message(session_id, "user", encode_message_content(text, images))
        except BaseException:
            self.leases.release(lease)
            raise

        model.options.cancel = lease.token
        controller = StreamController(uuid.uuid4().hex, session_id, cancel=lease.token)
        turn = Turn(
            session_id=session_id,
            principal=principal,
            request=request,
            text=text,
            images=images,
            history=history,
            model=model,
            lease=lease,
            controller=controller,
        )
        logger.info(
            "Turn %s started in session %s (model=%s, deep=%s, regen=%s)",
            controller.message_id,
            session_id,
            model.key,
            request.is_deep_research_active,
            request.is_regeneration,
        )
        task = asyncio.create_task(self._run_turn(turn))
        lease.task = task
        self.tasks[controller.message_id] = task
        self._turn_leases[controller.message_id] = lease
        task.add_done_callback(lambda _: self._forget(controller.message_id))
        return controller

    def _forget(self, message_id: str) -> None:
        self.tasks.pop(message_id, None)
        self._turn_leases.pop(message_id, None)

    def stop(self, session_id: str) -> bool:
        stopped = self.leases.cancel(session_id)
        if stopped:
            logger.info("Session %s: stop requested", session_id)
        return stopped

    def abandon(self, message_id: str) -> None:
        """Cancel one turn whose consumer went away, leaving any newer turn in the session alone."""
        lease = self._turn_leases.get(message_id)
        if lease is None:
            return
        logger.info("Turn %s: stream consumer disconnected", message_id)
        lease.cancel()
        self.leases.release(lease)

    def is_busy(self, session_id: str) -> bool:
        return self.leases.is_active(session_id)

    def replace_providers(self, settings: AppSettings, providers: ProviderRegistry) -> None:
        """Switch new turns to fresh clients; the old registry closes once the turns using it finish."""
        old, in_flight = self.providers, list(self.tasks.values())
        self.settings = settings
        self.providers = providers
        task = asyncio.create_task(self._close_when_idle(old, in_flight))
        self._retiring.add(task)
        task.add_done_callback(self._retiring.discard)

    async def _close_when_idle(self, registry: ProviderRegistry, tasks: List[asyncio.Task]) -> None:
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await registry.close()

    async def close(self) -> None:
        self.leases.cancel_all()
        tasks = list(self.tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._retiring:
            await asyncio.gather(*list(self._retiring))

    async def _run_turn(self, turn: Turn) -> None:
        controller = turn.controller
        try:
            if turn.request.is_deep_research_active:
                await self._run_deep_research(turn)
                return
            capabilities = turn.model.capabilities
            built = await self.context_builder.build(
                turn.history,
                turn.text,
                turn.images,
                capabilities,
                is_regeneration=turn.request.is_regeneration,
                system_prompt=turn.model.system_prompt,
            )
            plan = await analyze_image_turn(
                turn.text, built.images, built.history, capabilities, self.store, self.classifier
            )
            if plan.is_image_request:
                await self._run_image_turn(turn, built.messages, plan)
            else:
                await self._stream_text(turn, built.messages)
        except AbortedError:
            logger.info("Turn %s aborted", controller.message_id)
        except asyncio.CancelledError:
            logger.info("Turn %s cancelled", controller.message_id)
            raise
        except Exception as exc:
            self._fail(turn, exc)
        finally:
            self.leases.release(turn.lease)
            if not controller.closed:
                controller.finish(aborted=turn.lease.token.is_set())
            logger.info(
                "Turn %s finished in %.2fs",
                controller.message_id,
                time.monotonic() - turn.started_at,
            )

    def _fail(self, turn: Turn, exc: BaseException) -> None:
        summary = classify_error(exc)
        logger.warning("Turn %s failed (%s): %s", turn.controller.message_id, summary.kind, exc)
        self._emit_error(turn.controller, summary)

    def _emit_error(self, controller: StreamController, summary: ErrorSummary) -> None:
        if not controller.claim_completion():
            return
        controller.safe_emit(ErrorEvent(summary=summary.summary, content=summary.render()))
        controller.finish()

    async def _stream_text(self, turn: Turn, messages: List[ChatTurn], prefix: str = "") -> None:
        controller = turn.controller
        streamed: List[str] = []
        final_text = ""
        async for chunk in turn.model.client.stream_chat(messages, turn.model.options):
            if isinstance(chunk, TokenChunk):
                if chunk.text:
                    streamed.append(chunk.text)
                    controller.safe_emit(TokenEvent(content=chunk.text))
            elif isinstance(chunk, CompleteChunk):
                final_text = chunk.response.content or ""
        text = "".join(streamed) or final_text
        if not text.strip():
            self._emit_error(controller, ErrorSummary(kind="empty_response", summary=EMPTY_RESPONSE_TEXT))
            return
        if not streamed:
            controller.safe_emit(TokenEvent(content=text))
        await self._complete(turn, prefix + text)

    async def _generate_image_reply(self, turn: Turn, plan: ImageTurnPlan) -> str:
        try:
            generated = await turn.model.client.generate_image(turn.text, plan.input_images, turn.model.options)
            url = await self.store.save(generated.data, generated.mime_type)
        except AbortedError:
            raise
        except Exception as exc:
            raise ImageGenerationError(str(exc) or exc.__class__.__name__) from exc
        reply = f"![generated image]({url})"
        if generated.text and generated.text.strip():
            reply = f"{generated.text.strip()}\n\n{reply}"
        return reply

    async def _run_image_turn(self, turn: Turn, messages: List[ChatTurn], plan: ImageTurnPlan) -> None:
        controller = turn.controller
        try:
            reply = await self._generate_image_reply(turn, plan)
        except ImageGenerationError as exc:
            summary = classify_error(exc.__cause__ or exc)
            logger.warning("Turn %s: image generation failed, answering in text: %s", controller.message_id, exc)
            notice = f"Image generation failed: {summary.summary.rstrip('.')}. Answering in text instead.\n\n"
            controller.safe_emit(TokenEvent(content=notice))
            await self._stream_text(turn, messages, prefix=notice)
            return
        logger.info("Turn %s: generated image (%s mode, %d inputs)", controller.message_id, plan.mode, len(plan.input_images))
        controller.safe_emit(TokenEvent(content=reply))
        await self._complete(turn, reply)

    def _research_context(self, turn: Turn) -> str:
        past = list(turn.history)
        if turn.request.is_regeneration and past and past[-1].role == "user":
            past.pop()
        lines = []
        for message in past[-RESEARCH_CONTEXT_MESSAGES:]:
            text, _ = parse_message_content(message.content)
            speaker = "User" if message.role == "user" else "Assistant"
            lines.append(f"{speaker}: {truncate_text(text, RESEARCH_CONTEXT_CHARS)}")
        return "\n".join(lines)

    async def _run_deep_research(self, turn: Turn) -> None:
        controller = turn.controller
        orchestrator = DeepResearchOrchestrator(
            turn.model.client,
            self.settings.deep_research,
            cancel=turn.lease.token,
            run_id=controller.message_id[:12],
        )
        total_steps = 0
        final_text = ""
        async for event in orchestrator.run(turn.text, context=self._research_context(turn)):
            if isinstance(event, Planned):
                total_steps = len(event.steps)
                outline = "\n".join(f"{idx}. {q}" for idx, q in enumerate(event.sub_questions, start=1))
                controller.safe_emit(
                    PlanEvent(content=outline, steps=event.steps, sub_questions=event.sub_questions)
                )
                continue
            controller.safe_emit(StepEvent(step=event.step, total_steps=total_steps))
            if isinstance(event, Final):
                final_text = event.result.final_answer
                logger.info(
                    "Turn %s: deep research done (confidence %.2f)",
                    controller.message_id,
                    event.result.confidence,
                )
        await self._complete(turn, final_text)

    async def _complete(self, turn: Turn, content: str) -> None:
        controller = turn.controller
        if not controller.claim_completion():
            return
        try:
            await self.db.add_message(turn.session_id, "assistant", content, message_id=controller.message_id)
        except Exception as exc:
            logger.exception("Turn %s: failed to persist assistant message", controller.message_id)
            summary = classify_error(exc)
            controller.safe_emit(ErrorEvent(summary=summary.summary, content=summary.render()))
            controller.finish()
            return
        if await self.db.count_messages(turn.session_id, role="assistant") == 1:
            await self._generate_title(turn, content)
        controller.finish()

    def _title_client(self, turn: Turn) -> BaseLLMClient:
        key = self.settings.title_model
        if key and key in self.settings.models:
            return self.providers.get(key)
        return turn.model.client

    async def _generate_title(self, turn: Turn, assistant_text: str) -> None:
        try:
            title = await self.titles.generate(self._title_client(turn), turn.text, assistant_text)
        except Exception as exc:
            logger.warning("Title generation failed for session %s: %s", turn.session_id, exc)
            title = fallback_title(turn.text)
        await self.db.update_session_title(turn.session_id, title)
        logger.info("Session %s titled %r", turn.session_id, title)
        turn.controller.safe_emit(TitleEvent(title=title, chat_id=turn.session_id))
