"""Candidate evaluation: the processor run for every queued job.

Loads the application, gathers evidence, asks the LLM for a rubric-based
JSON verdict, normalizes it and persists it. Safe to run more than once for
the same application; the stored evaluation is replaced.
"""
from __future__ import annotations

import json
import logging
import math
import re
import time
from typing import Any, Dict, List, Optional, Protocol

from tenacity import (
    RetryCallState,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from .evidence import EvidenceCollector
from .exceptions import EvaluationError
from .models import ApplicationSnapshot, CandidateEvaluation, Enrichment, ScoreItem
from .queue.jobs import JobRecord
from .rubric import (
    ROLE_RUBRICS,
    RUBRIC_VERSION,
    Rubric,
    get_rubric,
    infer_role_family,
    normalize_recommendation,
)
from .store import ApplicationStore

logger = logging.getLogger(__name__)

MAX_PROMPT_CHARS = 12_000
MAX_RETRY_WAIT = 15.0
TRANSIENT_MARKERS = ("429", "rate", "timeout", "timed out", "503", "resource exhausted", "resource has been exhausted")
PROMPT_TOO_LONG_MARKERS = ("prompt is too long", "max length", "exceeds the maximum number of tokens")

SCORE_BANDS = (
    "90-100: Exceptional candidate (Strong Hire)",
    "80-89: Very strong candidate (Hire)",
    "70-79: Good candidate (Hire)",
    "60-69: Average candidate (Hold)",
    "<60: Weak candidate (No Hire)",
)


class CompletionClient(Protocol):
    def complete(self, prompt: str) -> str:
        ...


def trim_text(value: Optional[str], limit: int = 600) -> Optional[str]:
    if not value:
        return None
    return re.sub(r"\s+", " ", value).strip()[:limit]


def score_schema(rubric: Rubric) -> str:
    return json.dumps({
        "roleFamily": rubric.family,
        "rubricVersion": RUBRIC_VERSION,
        "score": "0-100",
        "scoreBreakdown": [
            {"key": c.key, "label": c.label, "score": f"0-{c.max}", "max": c.max}
            for c in rubric.criteria
        ],
        "skills": ["..."],
        "summary": "...",
        "strengths": ["..."],
        "weaknesses": ["..."],
        "recommendation": "Strong Hire | Hire | Hold | No Hire",
    })


def compact_enrichment(enrichment: Enrichment) -> Dict[str, Any]:
    """Prompt-sized view of the gathered evidence."""
    github = None
    if enrichment.github is not None:
        profile = enrichment.github.profile
        github = {
            "profile": {
                "login": profile.login,
                "name": trim_text(profile.name, 80),
                "bio": trim_text(profile.bio, 160),
                "followers": profile.followers,
                "publicRepos": profile.public_repos,
            } if profile else None,
            "topRepos": [
                {
                    "name": repo.name,
                    "url": repo.url,
                    "stars": repo.stars,
                    "forks": repo.forks,
                    "languages": repo.languages[:3],
                    "description": trim_text(repo.description, 180),
                    "readmeSnippet": trim_text(repo.readme_snippet, 180),
                }
                for repo in enrichment.github.top_repos[:3]
            ],
            "languages": sorted(enrichment.github.languages.items(), key=lambda item: item[1], reverse=True)[:6],
        }

    portfolio = None
    if enrichment.portfolio is not None:
        portfolio = {
            "rootUrl": enrichment.portfolio.root_url,
            "pages": [
                {
                    "url": page.url,
                    "title": trim_text(page.title, 100),
                    "textSnippet": trim_text(page.text_snippet, 220),
                }
                for page in enrichment.portfolio.pages[:3]
            ],
        }

    return {
        "github": github,
        "portfolio": portfolio,
        "failures": [
            {"source": f.source, "url": f.url, "reason": trim_text(f.reason, 120)}
            for f in enrichment.failures[:6]
        ],
    }


def build_prompt(application: ApplicationSnapshot, enrichment: Enrichment, role_family: str, rubric: Rubric) -> str:
    """Full evaluation prompt, capped at ``MAX_PROMPT_CHARS``."""
    compact = compact_enrichment(enrichment)
    if role_family == "engineering":
        role_instruction = "Treat GitHub and project depth as major evidence."
    else:
        role_instruction = (
            "For non-engineering roles, GitHub/portfolio are optional signals "
            "and must not be required for a strong score."
        )

    lines = [
        "You are evaluating a candidate for a role using a strict role-adaptive scoring rubric.",
        f"Detected role family: {role_family}",
        f"Rubric version: {RUBRIC_VERSION}",
        "Scoring rubric:",
        rubric.format(),
        "",
        "Score must follow:",
        *SCORE_BANDS,
        "",
        role_instruction,
        *rubric.extra_instructions,
        "When evidence is missing, score neutrally for unrelated criteria instead of penalizing unfairly.",
        "",
        "Return strict JSON only with this schema:",
        score_schema(rubric),
        "",
        f"Job title: {trim_text(application.job_title, 180)}",
        f"Job description: {trim_text(application.job_description, 2200)}",
        "",
        f"Candidate: {trim_text(application.name, 120)} ({application.email})",
        f"Cover letter: {trim_text(application.cover_letter, 800) or 'N/A'}",
        "",
        f"Resume URL: {application.resume_url}",
        f"Resume text excerpt: {trim_text(enrichment.resume_text_excerpt, 4000) or 'N/A'}",
        f"Extracted links from resume: {json.dumps(enrichment.extracted_resume_links[:12])}",
        "",
        f"GitHub evidence: {json.dumps(compact['github'])}",
        f"Portfolio evidence: {json.dumps(compact['portfolio'])}",
        f"Evidence failures: {json.dumps(compact['failures'])}",
    ]
    return "\n".join(lines)[:MAX_PROMPT_CHARS]


def build_minimal_prompt(application: ApplicationSnapshot, enrichment: Enrichment, role_family: str, rubric: Rubric) -> str:
    """Short fallback prompt without scraped evidence."""
    criteria = ", ".join(f"{c.key}(0-{c.max})" for c in rubric.criteria)
    if role_family == "engineering":
        role_instruction = "Do NOT penalize missing formal experience when project/GitHub evidence is strong."
    else:
        role_instruction = "Do NOT penalize missing GitHub for non-engineering roles."

    return "\n".join([
        "Evaluate this candidate using the strict role-adaptive rubric. Output JSON only.",
        f"Detected role family: {role_family}",
        f"Rubric: {criteria}.",
        role_instruction,
        score_schema(rubric),
        f"Role: {trim_text(application.job_title, 160)}",
        f"Job: {trim_text(application.job_description, 1400)}",
        f"Candidate: {trim_text(application.name, 120)} ({application.email})",
        f"Cover letter: {trim_text(application.cover_letter, 500) or 'N/A'}",
        f"Resume excerpt: {trim_text(enrichment.resume_text_excerpt, 1800) or 'N/A'}",
    ])


def round_half_up(number: float) -> int:
    # round() goes to even on .5
    return math.floor(number + 0.5)


def clamp_int(value: Any, low: int, high: int) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return low
    if not math.isfinite(number):
        return low
    return max(low, min(high, round_half_up(number)))


def _string_list(value: Any, limit: int) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)][:limit]


def parse_evaluation(content: str, rubric: Rubric, fallback_role_family: str) -> CandidateEvaluation:
    """Parse and normalize the model's JSON verdict.

    Breakdown scores are matched to rubric criteria by key or label, clamped
    to each criterion's maximum and summed into the overall score.

    Raises:
        EvaluationError: If the content is not a JSON object
    """
    cleaned = content.strip()
    cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"```$", "", cleaned).strip()
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise EvaluationError(f"AI_INVALID_JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise EvaluationError("AI_INVALID_JSON: expected an object")

    role_family = str(parsed.get("roleFamily") or "").lower()
    if role_family not in ROLE_RUBRICS:
        role_family = fallback_role_family

    raw_breakdown = parsed.get("scoreBreakdown")
    from_list = raw_breakdown if isinstance(raw_breakdown, list) else None
    from_mapping = raw_breakdown if isinstance(raw_breakdown, dict) else None

    breakdown: List[ScoreItem] = []
    for criterion in rubric.criteria:
        raw_score: Any = 0
        if from_list is not None:
            for item in from_list:
                if not isinstance(item, dict):
                    continue
                key = str(item.get("key") or "").lower()
                label = str(item.get("label") or "").lower()
                if key == criterion.key.lower() or label == criterion.label.lower():
                    raw_score = item.get("score", 0)
                    break
        elif from_mapping is not None:
            raw_score = from_mapping.get(criterion.key, 0)
        breakdown.append(
            ScoreItem(
                key=criterion.key,
                label=criterion.label,
                score=clamp_int(raw_score, 0, criterion.max),
                max=criterion.max,
            )
        )

    if from_list is not None or from_mapping is not None:
        score: Optional[int] = sum(item.score for item in breakdown)
    elif isinstance(parsed.get("score"), (int, float)):
        score = clamp_int(parsed["score"], 0, 100)
    else:
        score = None

    rubric_version = parsed.get("rubricVersion")
    summary = parsed.get("summary")
    return CandidateEvaluation(
        role_family=role_family,
        rubric_version=rubric_version if isinstance(rubric_version, str) else RUBRIC_VERSION,
        score=score,
        score_breakdown=breakdown,
        skills=_string_list(parsed.get("skills"), 20),
        summary=summary if isinstance(summary, str) else None,
        strengths=_string_list(parsed.get("strengths"), 8),
        weaknesses=_string_list(parsed.get("weaknesses"), 8),
        recommendation=normalize_recommendation(parsed.get("recommendation"), score or 0),
    )


def apply_score_adjustments(base_score: int, role_family: str, enrichment: Enrichment) -> int:
    """Role-aware bonus for strong public evidence, clamped to 0..100."""
    score = base_score
    github = enrichment.github

    if role_family == "engineering" and github is not None:
        if github.profile is not None and (github.profile.public_repos or 0) > 10:
            score += 5
        if any(repo.stars > 10 for repo in github.top_repos):
            score += 5

    if role_family in ("product", "design") and enrichment.portfolio is not None:
        if len(enrichment.portfolio.pages) >= 2:
            score += 3

    return max(0, min(100, round_half_up(score)))


def is_transient_error(error: BaseException) -> bool:
    text = str(error).lower()
    return any(marker in text for marker in TRANSIENT_MARKERS)


def is_prompt_too_long_error(error: BaseException) -> bool:
    text = str(error).lower()
    return any(marker in text for marker in PROMPT_TOO_LONG_MARKERS)


class wait_retry_after(wait_base):
    """Wait as long as the provider asked via ``Retry-After``, else use ``fallback``.

    Both are capped at ``max``.
    """

    def __init__(self, fallback: wait_base, max: float = MAX_RETRY_WAIT) -> None:
        self.fallback = fallback
        self.max = max

    def __call__(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        hint = getattr(error, "retry_after", None)
        if hint:
            return min(float(hint), self.max)
        return min(self.fallback(retry_state), self.max)


class CandidateEvaluator:
    """Evaluates one application per job record.

    Callable with a JobRecord, so it can be handed directly to the worker.
    Blocking (HTTP, database and LLM calls); the worker runs it in a thread.
    """

    def __init__(
        self,
        store: ApplicationStore,
        llm: CompletionClient,
        collector: EvidenceCollector,
        max_llm_retries: int = 2,
        model_name: str = "gemini",
        sleep=time.sleep,
    ) -> None:
        self.store = store
        self.llm = llm
        self.collector = collector
        self.max_llm_retries = max_llm_retries
        self.model_name = model_name
        self._sleep = sleep

    def __call__(self, record: JobRecord) -> Dict[str, Any]:
        return self.evaluate(record)

    def evaluate(self, record: JobRecord) -> Dict[str, Any]:
        """Run the full evaluation for a job record.

        Returns:
            Summary dict stored as the job's return value

        Raises:
            ApplicationNotFoundError: If the application does not exist
            EvaluationError: If the model response is empty or not JSON
        """
        logger.info(
            f"Evaluating candidate applicationId={record.application_id} "
            f"jobId={record.job_id} orgId={record.organization_id}"
        )
        application = self.store.load_application(
            record.application_id, record.organization_id, record.job_id
        )
        enrichment = self.collector.collect(application)

        role_family = infer_role_family(application.job_title, application.job_description)
        rubric = get_rubric(role_family)
        content = self._complete_with_retries(
            build_prompt(application, enrichment, role_family, rubric),
            build_minimal_prompt(application, enrichment, role_family, rubric),
        )
        if not content:
            raise EvaluationError("AI_EMPTY_RESPONSE")

        parsed = parse_evaluation(content, rubric, role_family)
        final_score = apply_score_adjustments(parsed.score or 0, role_family, enrichment)
        evaluation = parsed.model_copy(update={
            "score": final_score,
            "role_family": role_family,
            "rubric_version": RUBRIC_VERSION,
            "recommendation": normalize_recommendation(parsed.recommendation, final_score),
        })

        self.store.save_evaluation(application, evaluation, enrichment, model=self.model_name)
        return {
            "applicationId": application.id,
            "score": evaluation.score,
            "recommendation": evaluation.recommendation,
            "roleFamily": evaluation.role_family,
        }

    def _complete(self, prompt: str) -> str:
        retrying = Retrying(
            retry=retry_if_exception(is_transient_error),
            wait=wait_retry_after(wait_exponential(multiplier=1, max=MAX_RETRY_WAIT)),
            stop=stop_after_attempt(self.max_llm_retries + 1),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(self.llm.complete, prompt)

    def _complete_with_retries(self, full_prompt: str, minimal_prompt: str) -> str:
        try:
            return self._complete(full_prompt)
        except RuntimeError as exc:
            if not is_prompt_too_long_error(exc):
                raise
            logger.info("Prompt too long, retrying with the minimal prompt")
        return self._complete(minimal_prompt)
