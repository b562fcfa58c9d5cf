"""Evidence gathering for candidate evaluation.

Collects the resume text, links found in it, and public GitHub/portfolio
signals. Every network step is best effort: failures are recorded on the
result and never abort an evaluation.
"""
from __future__ import annotations

import ipaddress
import logging
import re
import threading
import time
from collections import deque
from io import BytesIO
from typing import Callable, Iterable, List, NamedTuple, Optional, Tuple, TypeVar
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

import requests
from bs4 import BeautifulSoup, Tag
from markdownify import markdownify
from pypdf import PdfReader
from pypdf.errors import PdfReadError
from tenacity import Retrying, stop_after_attempt, wait_fixed

from .models import (
    ApplicationSnapshot,
    Enrichment,
    EvidenceFailure,
    EvidenceUrl,
    GithubEvidence,
    GithubProfile,
    GithubRepo,
    PortfolioEvidence,
    PortfolioPage,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRACKING_PARAMS = frozenset({"utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content", "fbclid", "gclid"})
MAX_FETCH_BYTES = 2_000_000
REQUEST_TIMEOUT = 5.0
RETRY_PAUSE = 0.5
GITHUB_API = "https://api.github.com"
GITHUB_MAX_REPOS = 5
GITHUB_REPO_PAGE = 8
README_SNIPPET_CHARS = 800
PORTFOLIO_MAX_PAGES = 6
PAGE_SNIPPET_CHARS = 1200
RESUME_EXCERPT_CHARS = 12_000
MAX_RESUME_LINKS = 30
USER_AGENT = "CandidatePipelineWorker/1.0"

URL_PATTERN = re.compile(r"https?://[^\s<>\"')\]]+", re.IGNORECASE)

# Page chrome dropped before a page is summarized
NON_CONTENT_SELECTORS = ", ".join([
    "script", "style", "noscript", "template", "meta", "link",
    "nav", "aside", "footer", "header",
    "[role='navigation']", "[role='complementary']",
    ".nav", ".navbar", ".sidebar", ".advertisement", ".ads", "[data-ad-slot]",
    ".social-share", ".breadcrumb", ".newsletter-signup",
])
MAIN_CONTENT_SELECTORS = ("main", "article", "[role='main']", ".content, .post-content, .entry-content")
PAGINATION_LINK_SELECTORS = ", ".join([
    "a[href*='?page=']", "a[href*='&page=']", "a[href*='/page/']",
    "a[rel~='next']", "a[rel~='prev']", ".pagination a", ".pager a",
])
NAVIGATION_LINK_SELECTORS = "nav a, [role='navigation'] a, .breadcrumb a, .menu a"
SKIPPED_HREF_PREFIXES = ("mailto:", "tel:", "javascript:", "#")


def is_private_host(hostname: str) -> bool:
    """True for localhost, ``.local`` names and private/loopback IPs."""
    host = hostname.lower().strip("[]")
    if host == "localhost" or host.endswith(".local"):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return address.is_private or address.is_loopback or address.is_link_local


def normalize_url(raw: str) -> Optional[str]:
    """Canonical form of a public http(s) URL, or None if unusable.

    Drops the fragment and tracking parameters and a trailing slash.
    """
    try:
        parts = urlsplit(raw.strip())
        hostname = parts.hostname
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not hostname:
        return None
    if is_private_host(hostname):
        return None

    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key.lower() not in TRACKING_PARAMS and not key.lower().startswith("utm_")
    ]
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, urlencode(query), ""))


def classify_url(url: str) -> str:
    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    segments = [segment for segment in parts.path.split("/") if segment]
    if host == "github.com":
        if len(segments) == 1:
            return "github_profile"
        if len(segments) >= 2:
            return "github_repo"
    if "linkedin.com" in host:
        return "other"
    return "portfolio"


def extract_urls(text: str) -> List[str]:
    """Unique URLs in order of first appearance."""
    return list(dict.fromkeys(URL_PATTERN.findall(text or "")))


def collect_evidence_urls(
    github_url: Optional[str],
    portfolio_url: Optional[str],
    resume_links: Iterable[str],
) -> List[EvidenceUrl]:
    """Normalize and dedupe candidate links, dropping LinkedIn and junk."""
    raw: List[Tuple[str, str]] = []
    if github_url:
        raw.append((github_url, "form_github"))
    if portfolio_url:
        raw.append((portfolio_url, "form_portfolio"))
    raw.extend((link, "resume_extracted") for link in resume_links)

    seen = {}
    for original, source in raw:
        normalized = normalize_url(original)
        if not normalized or normalized in seen:
            continue
        kind = classify_url(normalized)
        if kind == "other":
            continue
        seen[normalized] = EvidenceUrl(
            original_url=original,
            normalized_url=normalized,
            source=source,
            kind=kind,
            host=urlsplit(normalized).hostname or "",
        )
    return list(seen.values())


# ============================================================
# HTML
# ============================================================

def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def strip_html(html: str) -> str:
    """Visible text of a page, whitespace collapsed."""
    soup = parse_html(html)
    for element in soup(["script", "style", "noscript", "template"]):
        element.decompose()
    return re.sub(r"\s+", " ", soup.get_text(" ", strip=True)).strip()


def page_title(soup: BeautifulSoup) -> Optional[str]:
    if soup.title is None:
        return None
    title = soup.title.get_text(" ", strip=True)
    return title or None


def main_content(soup: BeautifulSoup) -> Tag:
    """Main content element of a page, with navigation and ads removed.

    Modifies ``soup``.
    """
    for element in soup.select(NON_CONTENT_SELECTORS):
        element.decompose()
    for selector in MAIN_CONTENT_SELECTORS:
        found = soup.select_one(selector)
        if found is not None:
            return found
    return soup.body or soup


def html_to_markdown(html: str) -> str:
    """Markdown rendering of an HTML fragment, blank runs squeezed."""
    markdown = markdownify(html, heading_style="ATX", bullets="-", escape_misc=False)
    markdown = re.sub(r"\n{3,}", "\n\n", markdown)
    markdown = re.sub(r"^ +", "", markdown, flags=re.MULTILINE)
    return markdown.strip()


def page_markdown(soup: BeautifulSoup) -> str:
    """Markdown of the page's main content. Modifies ``soup``."""
    return html_to_markdown(main_content(soup).decode_contents())


class PageLinks(NamedTuple):
    """Links of a page, grouped by where they sit."""
    pagination: List[str]
    navigation: List[str]
    content: List[str]

    def prioritized(self) -> List[str]:
        """Pagination first, then navigation, then content links; no repeats."""
        return list(dict.fromkeys([*self.pagination, *self.navigation, *self.content]))


def _resolved_links(elements: Iterable[Tag], base_url: str) -> List[str]:
    links = []
    for element in elements:
        href = (element.get("href") or "").strip()
        if not href or href.lower().startswith(SKIPPED_HREF_PREFIXES):
            continue
        links.append(urljoin(base_url, href))
    return list(dict.fromkeys(links))


def extract_links_by_type(soup: BeautifulSoup, base_url: str) -> PageLinks:
    """Absolute links of a page split into pagination, navigation and content.

    Content links are the ones inside the main content area (the whole body
    when a page has none) that are not already pagination or navigation.
    """
    pagination = _resolved_links(soup.select(PAGINATION_LINK_SELECTORS), base_url)
    navigation = _resolved_links(soup.select(NAVIGATION_LINK_SELECTORS), base_url)

    container: Optional[Tag] = None
    for selector in MAIN_CONTENT_SELECTORS:
        container = soup.select_one(selector)
        if container is not None:
            break
    if container is None:
        container = soup.body or soup

    taken = set(pagination) | set(navigation)
    content = [
        link for link in _resolved_links(container.find_all("a", href=True), base_url)
        if link not in taken
    ]
    return PageLinks(pagination=pagination, navigation=navigation, content=content)


def extract_links(html: str, base_url: str) -> List[str]:
    """Absolute links of a page in crawl priority order."""
    return extract_links_by_type(parse_html(html), base_url).prioritized()


def extract_pdf_text(raw: bytes) -> str:
    """Text of every page, blank pages skipped."""
    if not raw:
        return ""
    reader = PdfReader(BytesIO(raw))
    texts: List[str] = []
    for page in reader.pages:
        try:
            extracted = page.extract_text() or ""
        except Exception:
            extracted = ""
        if extracted:
            texts.append(extracted.strip())
    return "\n\n".join(texts)


class EvidenceCollector:
    """Fetches resume and public-profile evidence over HTTP.

    Safe to share between worker threads: each thread gets its own
    ``requests.Session`` from ``session_factory``.

    Attributes:
        github_token: Optional token for higher GitHub API limits
        enable_scraping: When False only the resume itself is fetched
    """

    def __init__(
        self,
        session_factory: Callable[[], requests.Session] = requests.Session,
        github_token: Optional[str] = None,
        enable_scraping: bool = True,
        timeout: float = REQUEST_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.github_token = github_token
        self.enable_scraping = enable_scraping
        self.timeout = timeout
        self._session_factory = session_factory
        self._sleep = sleep
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        """This thread's HTTP session."""
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._session_factory()
            session.headers.setdefault("User-Agent", USER_AGENT)
            self._local.session = session
        return session

    def retry_once(self, fn: Callable[..., T], *args) -> T:
        """Call ``fn``, and once more after a short pause if it raises."""
        retrying = Retrying(
            stop=stop_after_attempt(2),
            wait=wait_fixed(RETRY_PAUSE),
            sleep=self._sleep,
            reraise=True,
        )
        return retrying(fn, *args)

    def fetch_limited(self, url: str, headers: Optional[dict] = None) -> Tuple[bytes, str]:
        """GET a URL, keeping at most ``MAX_FETCH_BYTES`` of the body.

        Returns:
            (body, content type)

        Raises:
            RuntimeError: On a non-2xx status
            requests.RequestException: On network errors
        """
        with self.session.get(url, headers=headers, timeout=self.timeout, stream=True, allow_redirects=True) as response:
            if not response.ok:
                raise RuntimeError(f"HTTP_{response.status_code}")
            chunks = []
            received = 0
            for chunk in response.iter_content(chunk_size=64 * 1024):
                if not chunk:
                    continue
                chunks.append(chunk[: MAX_FETCH_BYTES - received])
                received += len(chunks[-1])
                if received >= MAX_FETCH_BYTES:
                    break
            content_type = response.headers.get("Content-Type", "")
        return b"".join(chunks), content_type

    def fetch_text(self, url: str) -> str:
        body, content_type = self.fetch_limited(url)
        if "pdf" in content_type.lower() or body.startswith(b"%PDF"):
            return extract_pdf_text(body)
        text = body.decode("utf-8", errors="replace")
        if "html" in content_type.lower():
            return strip_html(text)
        return text

    def fetch_resume(self, resume_url: str) -> Tuple[Optional[str], List[str]]:
        """Resume text excerpt and the links found in it.

        Returns:
            (excerpt or None, links); both empty when the fetch fails
        """
        try:
            text = self.retry_once(self.fetch_text, resume_url)
        except (requests.RequestException, RuntimeError, PdfReadError) as exc:
            logger.warning(f"Resume fetch failed for {resume_url}: {exc}")
            return None, []

        links = extract_urls(text)[:MAX_RESUME_LINKS]
        excerpt = re.sub(r"\s+", " ", text).strip()[:RESUME_EXCERPT_CHARS]
        return excerpt or None, links

    def _github_headers(self, accept: str = "application/vnd.github+json") -> dict:
        headers = {"Accept": accept}
        if self.github_token:
            headers["Authorization"] = f"Bearer {self.github_token}"
        return headers

    def _github_json(self, path: str):
        response = self.session.get(f"{GITHUB_API}{path}", headers=self._github_headers(), timeout=self.timeout)
        if not response.ok:
            raise RuntimeError(f"GITHUB_{response.status_code}")
        return response.json()

    def fetch_readme_snippet(self, owner: str, repo: str) -> Optional[str]:
        """First ``README_SNIPPET_CHARS`` of a repository's raw README, if it has one."""
        try:
            response = self.session.get(
                f"{GITHUB_API}/repos/{owner}/{repo}/readme",
                headers=self._github_headers("application/vnd.github.raw+json"),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.debug(f"README unavailable for {owner}/{repo}: {exc}")
            return None
        if not response.ok:
            return None
        return response.text[:README_SNIPPET_CHARS] or None

    def scrape_github(self, url: str) -> Optional[GithubEvidence]:
        """Profile and most-starred recent repositories of the URL's owner."""
        segments = [segment for segment in urlsplit(url).path.split("/") if segment]
        if not segments:
            return None
        owner = segments[0]

        profile_json = self._github_json(f"/users/{owner}")
        repos_json = self._github_json(f"/users/{owner}/repos?sort=updated&per_page={GITHUB_REPO_PAGE}")
        repos_json = sorted(repos_json, key=lambda repo: int(repo.get("stargazers_count") or 0), reverse=True)

        top_repos: List[GithubRepo] = []
        languages: dict = {}
        for repo in repos_json[:GITHUB_MAX_REPOS]:
            name = repo.get("name")
            if not name:
                continue
            repo_owner = (repo.get("owner") or {}).get("login") or owner
            language = repo.get("language")
            if isinstance(language, str):
                languages[language] = languages.get(language, 0) + 1
            top_repos.append(
                GithubRepo(
                    name=name,
                    url=repo.get("html_url") or "",
                    stars=int(repo.get("stargazers_count") or 0),
                    forks=int(repo.get("forks_count") or 0),
                    languages=[language] if isinstance(language, str) else [],
                    description=repo.get("description"),
                    readme_snippet=self.fetch_readme_snippet(repo_owner, name),
                )
            )

        profile = GithubProfile(
            login=str(profile_json.get("login") or owner),
            name=profile_json.get("name") if isinstance(profile_json.get("name"), str) else None,
            bio=profile_json.get("bio") if isinstance(profile_json.get("bio"), str) else None,
            followers=int(profile_json.get("followers") or 0),
            public_repos=int(profile_json.get("public_repos") or 0),
        )
        return GithubEvidence(profile=profile, top_repos=top_repos, languages=languages)

    def scrape_portfolio(self, root_url: str) -> PortfolioEvidence:
        """Breadth-first crawl of same-host pages from the portfolio root.

        Pagination links are queued ahead of navigation links, and those
        ahead of links in the page content.
        """
        root_host = urlsplit(root_url).hostname
        queue = deque([root_url])
        visited = set()
        pages: List[PortfolioPage] = []

        while queue and len(pages) < PORTFOLIO_MAX_PAGES:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)

            body, _ = self.fetch_limited(current)
            soup = parse_html(body.decode("utf-8", errors="replace"))
            links = extract_links_by_type(soup, current).prioritized()
            pages.append(
                PortfolioPage(
                    url=current,
                    title=page_title(soup),
                    text_snippet=page_markdown(soup)[:PAGE_SNIPPET_CHARS],
                )
            )

            for link in links:
                normalized = normalize_url(link)
                if not normalized or normalized in visited:
                    continue
                if urlsplit(normalized).hostname != root_host:
                    continue
                queue.append(normalized)
                if len(queue) + len(pages) > PORTFOLIO_MAX_PAGES * 2:
                    break

        return PortfolioEvidence(root_url=root_url, pages=pages)

    def collect(self, application: ApplicationSnapshot) -> Enrichment:
        """Gather all evidence for an application."""
        excerpt, resume_links = self.fetch_resume(application.resume_url)
        urls = collect_evidence_urls(application.github_url, application.portfolio_url, resume_links)
        enrichment = Enrichment(
            used_urls=urls,
            extracted_resume_links=resume_links,
            resume_text_excerpt=excerpt,
        )
        if not self.enable_scraping:
            return enrichment

        github_target = next((u for u in urls if u.kind in ("github_profile", "github_repo")), None)
        portfolio_target = next((u for u in urls if u.kind == "portfolio"), None)

        if github_target is not None:
            try:
                enrichment.github = self.retry_once(self.scrape_github, github_target.normalized_url)
            except (requests.RequestException, RuntimeError, ValueError) as exc:
                enrichment.failures.append(
                    EvidenceFailure(source="github", url=github_target.normalized_url, reason=str(exc) or "GITHUB_SCRAPE_FAILED")
                )

        if portfolio_target is not None:
            try:
                enrichment.portfolio = self.retry_once(self.scrape_portfolio, portfolio_target.normalized_url)
            except (requests.RequestException, RuntimeError, ValueError) as exc:
                enrichment.failures.append(
                    EvidenceFailure(source="portfolio", url=portfolio_target.normalized_url, reason=str(exc) or "PORTFOLIO_SCRAPE_FAILED")
                )

        for failure in enrichment.failures:
            logger.info(f"Evidence {failure.source} unavailable for {failure.url}: {failure.reason}")
        return enrichment
