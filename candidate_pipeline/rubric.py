"""Role-adaptive scoring rubrics.

A job posting is mapped to a role family by keyword hits on its title and
description; each family has five weighted criteria summing to 100.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

RUBRIC_VERSION = "v2-role-adaptive-2026-02"

ROLE_FAMILIES = ("engineering", "product", "design", "marketing", "sales", "operations_hr", "general")

# Earlier families win ties
ROLE_FAMILY_PRECEDENCE = ("engineering", "product", "design", "marketing", "sales", "operations_hr")

ROLE_FAMILY_KEYWORDS: Dict[str, List[str]] = {
    "engineering": [
        "software", "backend", "frontend", "full stack", "fullstack", "engineer",
        "developer", "devops", "sre", "qa", "data engineer", "mobile",
    ],
    "product": ["product manager", "product management", "roadmap", "prioritization", "discovery", "prd", "stakeholder"],
    "design": ["ux", "ui", "product designer", "visual designer", "figma", "interaction design", "design system"],
    "marketing": ["growth", "seo", "campaign", "performance marketing", "content marketing", "brand", "demand generation"],
    "sales": ["sales", "account executive", "business development", "quota", "pipeline", "crm", "lead generation"],
    "operations_hr": [
        "operations", "people ops", "human resources", "hr", "recruiter",
        "talent acquisition", "compliance", "process",
    ],
}

RESUME_GUIDANCE = "Assess resume structure, clarity, and completeness."

HIRE_BANDS: Tuple[Tuple[int, str], ...] = (
    (90, "Strong Hire"),
    (70, "Hire"),
    (60, "Hold"),
)
NO_HIRE = "No Hire"
RECOMMENDATIONS = ("Strong Hire", "Hire", "Hold", "No Hire")


@dataclass(frozen=True)
class Criterion:
    key: str
    label: str
    max: int
    guidance: str


@dataclass(frozen=True)
class Rubric:
    family: str
    criteria: Tuple[Criterion, ...]
    extra_instructions: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def total(self) -> int:
        return sum(c.max for c in self.criteria)

    def format(self) -> str:
        return "\n".join(f"{c.label}: 0-{c.max} points" for c in self.criteria)


def _resume_criterion() -> Criterion:
    return Criterion("resume", "Resume clarity and completeness", 10, RESUME_GUIDANCE)


ROLE_RUBRICS: Dict[str, Rubric] = {
    "engineering": Rubric(
        family="engineering",
        criteria=(
            Criterion("skills", "Skills match with job", 30, "Assess technical skills alignment with role requirements."),
            Criterion("projects", "Project complexity and technical depth", 25, "Evaluate architecture, complexity, and implementation depth."),
            Criterion("impact", "Real-world impact and measurable achievements", 20, "Prioritize concrete outcomes and measurable impact."),
            Criterion("github", "GitHub and portfolio quality", 15, "Evaluate quality of repositories and technical portfolio evidence."),
            _resume_criterion(),
        ),
        extra_instructions=(
            "Do NOT penalize candidates for missing work experience if projects demonstrate equivalent skills.",
            "If GitHub shows strong projects, modern stack, or multiple repositories, increase score significantly.",
            "If GitHub activity proves real engineering ability, treat it equal to professional experience.",
        ),
    ),
    "product": Rubric(
        family="product",
        criteria=(
            Criterion("product", "Product thinking and prioritization", 30, "Evaluate problem framing, prioritization, and strategy."),
            Criterion("execution", "Execution and cross-functional delivery", 25, "Evaluate delivery quality with engineering/design/stakeholders."),
            Criterion("impact", "Business impact and measurable outcomes", 25, "Prioritize metrics and business outcomes."),
            Criterion("artifacts", "Communication quality and product artifacts", 10, "Assess clarity of PRDs, docs, and communication."),
            _resume_criterion(),
        ),
        extra_instructions=(
            "Do NOT penalize candidates for missing GitHub unless job explicitly requires coding-heavy delivery.",
            "Use portfolio or case-study evidence as strong signal when available.",
        ),
    ),
    "design": Rubric(
        family="design",
        criteria=(
            Criterion("design", "Design quality and systems thinking", 30, "Assess visual quality, consistency, and systems thinking."),
            Criterion("ux", "UX process and problem framing", 25, "Evaluate discovery, research, and problem framing rigor."),
            Criterion("portfolio", "Portfolio case-study depth", 25, "Prioritize end-to-end case studies with clear rationale."),
            Criterion("collaboration", "Collaboration and handoff quality", 10, "Assess collaboration with product/engineering and handoff quality."),
            _resume_criterion(),
        ),
        extra_instructions=(
            "Do NOT penalize candidates for missing GitHub.",
            "Use portfolio evidence as primary signal for design depth.",
        ),
    ),
    "marketing": Rubric(
        family="marketing",
        criteria=(
            Criterion("strategy", "Channel expertise and strategy fit", 30, "Assess role-relevant channel and strategy fit."),
            Criterion("execution", "Campaign execution quality", 25, "Evaluate campaign planning and execution rigor."),
            Criterion("impact", "Growth impact and measurable outcomes", 25, "Prioritize ROI, growth, and measurable outcomes."),
            Criterion("analytics", "Experimentation and analytics rigor", 10, "Assess experimentation quality and analytical approach."),
            _resume_criterion(),
        ),
        extra_instructions=(
            "Do NOT penalize candidates for missing GitHub.",
            "Weight documented campaign outcomes more than tool buzzwords.",
        ),
    ),
    "sales": Rubric(
        family="sales",
        criteria=(
            Criterion("fit", "Role and segment fit", 30, "Assess fit for target segment, motion, and sales process."),
            Criterion("pipeline", "Pipeline generation and execution", 25, "Evaluate pipeline creation and execution consistency."),
            Criterion("impact", "Quota attainment and deal impact", 25, "Prioritize attainment, deal quality, and measurable outcomes."),
            Criterion("communication", "Communication and relationship quality", 10, "Assess communication and stakeholder relationship quality."),
            _resume_criterion(),
        ),
        extra_instructions=(
            "Do NOT penalize candidates for missing GitHub or portfolio.",
            "Prioritize evidence of consistent pipeline and revenue impact.",
        ),
    ),
    "operations_hr": Rubric(
        family="operations_hr",
        criteria=(
            Criterion("operations", "Process design and operational excellence", 30, "Assess process design and operational rigor."),
            Criterion("delivery", "Stakeholder and service delivery quality", 25, "Evaluate cross-functional delivery and service quality."),
            Criterion("impact", "Measurable outcomes and compliance quality", 25, "Prioritize outcomes, reliability, and compliance quality."),
            Criterion("systems", "Tools and systems adoption", 10, "Assess practical tooling/systems capability."),
            _resume_criterion(),
        ),
        extra_instructions=(
            "Do NOT penalize candidates for missing GitHub or portfolio.",
            "Prioritize process improvements and measurable delivery outcomes.",
        ),
    ),
    "general": Rubric(
        family="general",
        criteria=(
            Criterion("fit", "Role fit", 30, "Assess fit to responsibilities and requirements."),
            Criterion("execution", "Execution evidence", 25, "Evaluate practical execution and ownership evidence."),
            Criterion("impact", "Measurable impact", 25, "Prioritize measurable outcomes and results."),
            Criterion("communication", "Communication quality", 10, "Assess clarity and communication quality."),
            _resume_criterion(),
        ),
        extra_instructions=(
            "Do NOT penalize candidates for missing GitHub unless explicitly required by role.",
        ),
    ),
}


def _normalize_match_text(value: str) -> str:
    return re.sub(r"[^a-z0-9\s]", " ", value.lower())


def infer_role_family(job_title: str, job_description: str) -> str:
    """Pick the role family with the most keyword hits.

    Matching is on substrings of the lower-cased text, so short keywords
    such as ``ui`` also hit inside longer words. No hits gives ``general``.
    """
    combined = _normalize_match_text(f"{job_title} {job_description}")
    best_family = "general"
    best_score = 0

    for family in ROLE_FAMILY_PRECEDENCE:
        score = sum(1 for keyword in ROLE_FAMILY_KEYWORDS[family] if keyword in combined)
        if score > best_score:
            best_score = score
            best_family = family

    return best_family


def get_rubric(family: str) -> Rubric:
    return ROLE_RUBRICS.get(family, ROLE_RUBRICS["general"])


def recommendation_from_score(score: int) -> str:
    for threshold, label in HIRE_BANDS:
        if score >= threshold:
            return label
    return NO_HIRE


def normalize_recommendation(value: object, score: int) -> str:
    """Canonical recommendation label, derived from the score if unusable."""
    if isinstance(value, str):
        wanted = value.strip().lower()
        for label in RECOMMENDATIONS:
            if label.lower() == wanted:
                return label
    return recommendation_from_score(score)
