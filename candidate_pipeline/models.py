from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

EvidenceKind = Literal["github_profile", "github_repo", "portfolio", "other"]
EvidenceSource = Literal["form_github", "form_portfolio", "resume_extracted"]


class ApplicationSnapshot(BaseModel):
    """Application joined with the job posting it was submitted to."""
    id: str
    organization_id: str
    job_id: str
    name: str
    email: str
    resume_url: str
    github_url: Optional[str] = None
    portfolio_url: Optional[str] = None
    cover_letter: Optional[str] = None
    job_title: str
    job_description: str

    @field_validator("github_url", "portfolio_url", "cover_letter", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        trimmed = value.strip()
        return trimmed or None


class EvidenceUrl(BaseModel):
    original_url: str
    normalized_url: str
    source: EvidenceSource
    kind: EvidenceKind
    host: str


class EvidenceFailure(BaseModel):
    source: Literal["github", "portfolio", "resume"]
    url: str
    reason: str
    transient: bool = True


class GithubProfile(BaseModel):
    login: str
    name: Optional[str] = None
    bio: Optional[str] = None
    followers: Optional[int] = None
    public_repos: Optional[int] = None


class GithubRepo(BaseModel):
    name: str
    url: str
    stars: int = 0
    forks: int = 0
    languages: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    readme_snippet: Optional[str] = None


class GithubEvidence(BaseModel):
    profile: Optional[GithubProfile] = None
    top_repos: List[GithubRepo] = Field(default_factory=list)
    languages: Dict[str, int] = Field(default_factory=dict)


class PortfolioPage(BaseModel):
    url: str
    title: Optional[str] = None
    text_snippet: str


class PortfolioEvidence(BaseModel):
    root_url: str
    pages: List[PortfolioPage] = Field(default_factory=list)


class Enrichment(BaseModel):
    """Everything gathered about a candidate beyond the application form."""
    github: Optional[GithubEvidence] = None
    portfolio: Optional[PortfolioEvidence] = None
    failures: List[EvidenceFailure] = Field(default_factory=list)
    used_urls: List[EvidenceUrl] = Field(default_factory=list)
    extracted_resume_links: List[str] = Field(default_factory=list)
    resume_text_excerpt: Optional[str] = None


class ScoreItem(BaseModel):
    key: str
    label: str
    score: int
    max: int


class CandidateEvaluation(BaseModel):
    """Normalized AI verdict for one application."""
    role_family: str
    rubric_version: str
    score: Optional[int] = None
    score_breakdown: List[ScoreItem] = Field(default_factory=list)
    skills: List[str] = Field(default_factory=list)
    summary: Optional[str] = None
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    recommendation: str
