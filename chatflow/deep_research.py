"""Deep research: plan sub-questions, analyze them in parallel, synthesize, then answer.

The orchestrator is an async generator of research events. Stage order is
PLANNING -> SUBQ_GENERATED -> ANALYZING -> SYNTHESIZING -> FINALIZING -> DONE,
and ABORTED is reachable from every non-terminal stage. Sub-question analyses run
concurrently, but their step events are yielded in plan order, and synthesis only
starts after every analysis has reached a terminal state.
"""

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from . import prompts
from .config import DeepResearchConfig
from .errors import AbortedError, DeepResearchError, ProviderError
from .lease import CancelToken
from .llm import BaseLLMClient, RequestOptions
from .schemas import ChatTurn, DeepResearchStep


logger = logging.getLogger("uvicorn.error")

PLANNING = "PLANNING"
SUBQ_GENERATED = "SUBQ_GENERATED"
ANALYZING = "ANALYZING"
SYNTHESIZING = "SYNTHESIZING"
FINALIZING = "FINALIZING"
DONE = "DONE"
ABORTED = "ABORTED"
TERMINAL_STAGES = {DONE, ABORTED}

MIN_SUB_QUESTIONS = 2
MIN_LINE_CHARS = 10
MAX_LINE_CHARS = 200
PREVIOUS_SUMMARY_CHARS = 300
FINAL_ANALYSIS_CHARS = 1500
PLANNING_CONFIDENCE = 0.8
FALLBACK_PLANNING_CONFIDENCE = 0.6
STEP_CONFIDENCE = 0.75
FAILED_STEP_CONFIDENCE = 0.3

_HANGUL_RE = re.compile(r"[가-힣]")
_LIST_MARKER_RE = re.compile(r"^\s*(?:\d+\s*[.):]|[-*•·]|q\d+\s*[.):]?)\s*", re.IGNORECASE)
_MARKER_ONLY_RE = re.compile(r"^[\W\d_]*$")
_TRAILING_RE = re.compile(r"[\s?.!。？！]+$")
_KO_ENDINGS = (
    "에 대해 자세히 알려줘",
    "에 대해 알려줘",
    "에 대해 설명해줘",
    "에 대해 설명해 주세요",
    "에 대해 알려주세요",
    "이란 무엇인가요",
    "이란 무엇인가",
    "란 무엇인가요",
    "란 무엇인가",
    "는 무엇인가요",
    "은 무엇인가요",
    "알려줘",
    "설명해줘",
)
_EN_LEADS = (
    "can you explain ",
    "please explain ",
    "tell me about ",
    "what is ",
    "what are ",
    "explain ",
    "describe ",
    "how does ",
    "how do ",
    "why is ",
    "why are ",
)

KO_TEMPLATES = (
    "{subject}의 핵심 개념과 정의는 무엇인가?",
    "{subject}의 역사적 배경과 발전 과정은 어떠한가?",
    "{subject}을(를) 둘러싼 주요 쟁점과 다양한 관점은 무엇인가?",
    "{subject}이(가) 현재와 미래에 미치는 영향은 무엇인가?",
)
EN_TEMPLATES = (
    "What are the core concepts and definitions behind {subject}?",
    "What is the background and historical development of {subject}?",
    "What are the main debates and perspectives surrounding {subject}?",
    "What impact does {subject} have today and in the future?",
)


@dataclass
class Planned:
    steps: List[DeepResearchStep]
    sub_questions: List[str]
    used_fallback: bool = False
    kind: str = "planned"


@dataclass
class StepUpdate:
    step: DeepResearchStep
    kind: str = "step"


@dataclass
class Synthesis:
    step: DeepResearchStep
    kind: str = "synthesis"


class ResearchResult(BaseModel):
    query: str
    sub_questions: List[str] = Field(default_factory=list)
    steps: List[DeepResearchStep] = Field(default_factory=list)
    synthesis: str = ""
    final_answer: str = ""
    confidence: float = 0.0
    methodology: str = ""


@dataclass
class Final:
    step: DeepResearchStep
    result: ResearchResult
    kind: str = "final"


ResearchEvent = Union[Planned, StepUpdate, Synthesis, Final]


def is_korean(text: str) -> bool:
    return bool(_HANGUL_RE.search(text or ""))


def parse_sub_questions(raw: str, limit: int = 4) -> List[str]:
    lines = [line for line in (raw or "").splitlines() if line.strip()]
    listed = [line for line in lines if _LIST_MARKER_RE.match(line)]
    candidates = listed or lines
    questions: List[str] = []
    seen = set()
    for line in candidates:
        cleaned = _LIST_MARKER_RE.sub("", line).strip().strip("*_").strip()
        if not cleaned or _MARKER_ONLY_RE.match(cleaned) or cleaned.endswith(":"):
            continue
        if not MIN_LINE_CHARS < len(cleaned) < MAX_LINE_CHARS:
            continue
        key = cleaned.lower()
        if key in seen:
            continue
        seen.add(key)
        questions.append(cleaned)
        if len(questions) >= limit:
            break
    return questions


def extract_subject(query: str) -> str:
    subject = _TRAILING_RE.sub("", (query or "").strip())
    for ending in _KO_ENDINGS:
        if subject.endswith(ending):
            subject = subject[: -len(ending)].strip()
            break
    lowered = subject.lower()
    for lead in _EN_LEADS:
        if lowered.startswith(lead):
            subject = subject[len(lead):].strip()
            break
    subject = _TRAILING_RE.sub("", subject)
    if len(subject) > 80:
        subject = subject[:80].rstrip()
    return subject or (query or "").strip()


def fallback_sub_questions(query: str, limit: int = 4) -> List[str]:
    templates = KO_TEMPLATES if is_korean(query) else EN_TEMPLATES
    count = max(MIN_SUB_QUESTIONS, min(limit, len(templates)))
    subject = extract_subject(query)
    return [template.format(subject=subject) for template in templates[:count]]


def _clip(text: str, limit: int) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[:limit].rstrip() + "..."


class DeepResearchOrchestrator:
    def __init__(
        self,
        client: BaseLLMClient,
        config: Optional[DeepResearchConfig] = None,
        cancel: Optional[CancelToken] = None,
        run_id: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.config = config or DeepResearchConfig()
        self.cancel = cancel
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.sleep = sleep
        self.stage = PLANNING
        self.steps: List[DeepResearchStep] = []
        self._completed: List[Tuple[int, str, str]] = []

    def _check_abort(self) -> None:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()

    def _enter(self, stage: str) -> None:
        self._check_abort()
        logger.debug("Deep research %s: %s -> %s", self.run_id, self.stage, stage)
        self.stage = stage

    def _options(self) -> RequestOptions:
        return RequestOptions(
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            top_p=0.95,
            cancel=self.cancel,
        )

    def _system(self, query: str) -> ChatTurn:
        language = self.config.language
        if not language or language == "auto":
            language = "the same language as the user's question"
        return ChatTurn(role="system", content=prompts.RESEARCHER_SYSTEM.strip().format(language=language))

    async def _ask(self, query: str, prompt: str) -> str:
        response = await self.client.chat(
            [self._system(query), ChatTurn(role="user", content=prompt.strip())],
            self._options(),
        )
        text = (response.content or "").strip()
        if not text:
            raise ProviderError("The model returned an empty response.", provider=self.client.provider)
        return text

    async def _ask_with_retries(self, query: str, prompt: str, retries: int, label: str) -> str:
        attempts = 1 + max(0, retries)
        for attempt in range(1, attempts + 1):
            self._check_abort()
            try:
                return await self._ask(query, prompt)
            except AbortedError:
                raise
            except Exception as exc:
                if attempt >= attempts:
                    raise
                logger.warning("Deep research %s: %s attempt %d failed: %s", self.run_id, label, attempt, exc)
                await self.sleep(self.config.retry_delay_s)
        raise DeepResearchError(f"{label} produced no result")

    def _context_block(self, context: str) -> str:
        return f"\nConversation context:\n{context.strip()}\n" if context and context.strip() else ""

    async def _plan(self, query: str, context: str) -> Tuple[List[str], bool]:
        limit = max(MIN_SUB_QUESTIONS, self.config.max_sub_questions)
        prompt = prompts.SUB_QUESTIONS_PROMPT.format(query=query, context_block=self._context_block(context))
        try:
            raw = await self._ask(query, prompt)
        except AbortedError:
            raise
        except Exception as exc:
            logger.warning("Deep research %s: sub-question generation failed, using fallback: %s", self.run_id, exc)
            return fallback_sub_questions(query, limit), True
        questions = parse_sub_questions(raw, limit)
        if len(questions) < MIN_SUB_QUESTIONS:
            logger.info("Deep research %s: only %d usable sub-questions, using fallback", self.run_id, len(questions))
            return fallback_sub_questions(query, limit), True
        return questions, False

    def _plan_steps(self, query: str, sub_questions: List[str]) -> List[DeepResearchStep]:
        korean = is_korean(query)
        step_label = "분석" if korean else "Analysis"
        steps = [
            DeepResearchStep(
                id=f"{self.run_id}:step:{idx + 1}",
                title=f"{step_label}: {question}",
                step_type="step",
                index=idx,
            )
            for idx, question in enumerate(sub_questions)
        ]
        steps.append(
            DeepResearchStep(
                id=f"{self.run_id}:synthesis",
                title="종합 분석" if korean else "Synthesis",
                step_type="synthesis",
                index=len(sub_questions),
            )
        )
        steps.append(
            DeepResearchStep(
                id=f"{self.run_id}:final",
                title="최종 답변" if korean else "Final answer",
                step_type="final",
                index=len(sub_questions) + 1,
            )
        )
        return steps

    def _previous_block(self) -> str:
        if not self._completed:
            return ""
        lines = ["Analyses completed so far:"]
        for _, title, text in sorted(self._completed):
            lines.append(f"- {title}: {_clip(text, PREVIOUS_SUMMARY_CHARS)}")
        return "\n".join(lines) + "\n"

    async def _analyze(self, step: DeepResearchStep, question: str, query: str, context: str) -> None:
        step.advance("in_progress")
        attempts = 1 + max(0, self.config.analysis_retries)
        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            self._check_abort()
            prompt = prompts.STEP_ANALYSIS_PROMPT.format(
                query=query,
                context_block=self._context_block(context),
                sub_question=question,
                previous_block=self._previous_block(),
            )
            try:
                text = await self._ask(query, prompt)
            except AbortedError:
                raise
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Deep research %s: analysis of %r attempt %d/%d failed: %s",
                    self.run_id,
                    question,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt < attempts:
                    await self.sleep(self.config.retry_delay_s)
                continue
            step.content = text
            step.advance("completed")
            self._completed.append((step.index, step.title, text))
            return
        step.error = str(last_error) if last_error else "analysis failed"
        step.advance("failed")

    def _confidence(self, used_fallback: bool) -> float:
        scores = [FALLBACK_PLANNING_CONFIDENCE if used_fallback else PLANNING_CONFIDENCE]
        for step in self.steps:
            if step.step_type != "step":
                continue
            scores.append(STEP_CONFIDENCE if step.status == "completed" else FAILED_STEP_CONFIDENCE)
        return round(sum(scores) / len(scores), 2)

    def _methodology(self, sub_questions: List[str], used_fallback: bool) -> str:
        analysis_steps = [s for s in self.steps if s.step_type == "step"]
        completed = sum(1 for s in analysis_steps if s.status == "completed")
        source = "a template decomposition" if used_fallback else "model-generated sub-questions"
        return (
            f"Decomposed the question into {len(sub_questions)} parts using {source}; "
            f"analyzed them in parallel ({completed}/{len(analysis_steps)} succeeded); "
            "synthesized the analyses and wrote the final answer from the synthesis."
        )

    async def run(self, query: str, context: str = "") -> AsyncIterator[ResearchEvent]:
        tasks: List[asyncio.Task] = []
        try:
            self._enter(PLANNING)
            sub_questions, used_fallback = await self._plan(query, context)
            self.steps = self._plan_steps(query, sub_questions)
            analysis_steps = self.steps[: len(sub_questions)]
            synthesis_step, final_step = self.steps[-2], self.steps[-1]

            self._enter(SUBQ_GENERATED)
            yield Planned(steps=[s.model_copy() for s in self.steps], sub_questions=list(sub_questions), used_fallback=used_fallback)

            self._enter(ANALYZING)
            tasks = [
                asyncio.create_task(self._analyze(step, question, query, context))
                for step, question in zip(analysis_steps, sub_questions)
            ]
            # fan-in in plan order; later tasks keep running while earlier ones are awaited
            for step, task in zip(analysis_steps, tasks):
                await task
                yield StepUpdate(step=step.model_copy())

            completed = [s for s in analysis_steps if s.status == "completed"]
            if not completed:
                raise DeepResearchError("All sub-question analyses failed.")

            self._enter(SYNTHESIZING)
            synthesis_step.advance("in_progress")
            analyses = "\n\n".join(f"### {s.title}\n{s.content}" for s in completed)
            synthesis_text = await self._ask_with_retries(
                query,
                prompts.SYNTHESIS_PROMPT.format(query=query, analyses=analyses),
                self.config.stage_retries,
                "synthesis",
            )
            synthesis_step.content = synthesis_text
            synthesis_step.advance("completed")
            yield Synthesis(step=synthesis_step.model_copy())

            self._enter(FINALIZING)
            final_step.advance("in_progress")
            clipped = "\n\n".join(f"### {s.title}\n{_clip(s.content, FINAL_ANALYSIS_CHARS)}" for s in completed)
            final_text = await self._ask_with_retries(
                query,
                prompts.FINAL_ANSWER_PROMPT.format(query=query, analyses=clipped, synthesis=synthesis_text),
                self.config.stage_retries,
                "final answer",
            )
            final_step.content = final_text
            final_step.advance("completed")
            result = ResearchResult(
                query=query,
                sub_questions=list(sub_questions),
                steps=[s.model_copy() for s in self.steps],
                synthesis=synthesis_text,
                final_answer=final_text,
                confidence=self._confidence(used_fallback),
                methodology=self._methodology(sub_questions, used_fallback),
            )
            self.stage = DONE
            yield Final(step=final_step.model_copy(), result=result)
        except (AbortedError, asyncio.CancelledError):
            self.stage = ABORTED
            logger.info("Deep research %s aborted", self.run_id)
            raise
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
