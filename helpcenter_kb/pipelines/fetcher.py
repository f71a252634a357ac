"""Help-center content API client for helpcenter-kb.

Pulls every published article of a source page by page, plus the section and
category listings used to label them, with retry and backoff on throttling and
transient failures.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from helpcenter_kb import __version__
from helpcenter_kb.config.settings import SourceConfig, SyncConfig
from helpcenter_kb.errors import FetchError, RateLimitError

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 origin timestamp into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class HelpCenterArticle:
    """One article as returned by the origin's listing."""
    id: int
    title: str
    body: str
    section_id: Optional[int]
    updated_at: datetime
    html_url: str
    draft: bool = False
    promoted: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HelpCenterArticle':
        return cls(
            id=int(data['id']),
            title=data.get('title') or '',
            body=data.get('body') or '',
            section_id=data.get('section_id'),
            updated_at=parse_timestamp(data['updated_at']),
            html_url=data.get('html_url') or '',
            draft=bool(data.get('draft', False)),
            promoted=bool(data.get('promoted', False)),
        )


@dataclass
class HelpCenterSection:
    id: int
    name: str
    category_id: Optional[int] = None


@dataclass
class FetchedSource:
    """Everything one fetch pass learned about a source."""
    articles: List[HelpCenterArticle]
    sections: Dict[int, HelpCenterSection] = field(default_factory=dict)
    categories: Dict[int, str] = field(default_factory=dict)

    @property
    def section_names(self) -> Dict[int, str]:
        return {section_id: section.name for section_id, section in self.sections.items()}

    def section_name(self, article: HelpCenterArticle) -> Optional[str]:
        section = self.sections.get(article.section_id)
        return section.name if section else None

    def category_name(self, article: HelpCenterArticle) -> Optional[str]:
        """Category of the article's section; articles only reference sections directly."""
        section = self.sections.get(article.section_id)
        if section is None or section.category_id is None:
            return None
        return self.categories.get(section.category_id)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: initial delay, doubling, capped."""
    max_retries: int = 5
    initial_delay: float = 1.0
    max_delay: float = 60.0

    @classmethod
    def from_sync_config(cls, config: SyncConfig) -> 'RetryPolicy':
        return cls(
            max_retries=config.max_retries,
            initial_delay=config.initial_retry_delay,
            max_delay=config.max_retry_delay,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retrying after the given (0-based) attempt."""
        return min(self.initial_delay * (2 ** attempt), self.max_delay)


def _retry_after_seconds(header: Optional[str]) -> Optional[float]:
    if not header:
        return None
    try:
        seconds = float(header.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def articles_url(source: SourceConfig, per_page: int = PAGE_SIZE) -> str:
    return f"{source.base_url}/api/v2/help_center/{source.locale}/articles.json?per_page={per_page}"


def sections_url(source: SourceConfig) -> str:
    return f"{source.base_url}/api/v2/help_center/{source.locale}/sections.json?per_page={PAGE_SIZE}"


def categories_url(source: SourceConfig) -> str:
    return f"{source.base_url}/api/v2/help_center/{source.locale}/categories.json?per_page={PAGE_SIZE}"


class HelpCenterClient:
    """Asynchronous help-center API client.

    Pages of one listing are requested strictly one after another; the next
    page is only requested once the previous one has been parsed.
    """

    def __init__(self,
                 session: Optional[aiohttp.ClientSession] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 page_delay: float = 0.1,
                 request_timeout: float = 30.0,
                 user_agent: Optional[str] = None):
        """Initialize client.

        Args:
            session: Existing session to use; the client will not close it
            retry_policy: Backoff settings for throttled and failed requests
            page_delay: Pause between page requests (seconds)
            request_timeout: Total timeout per request attempt (seconds)
            user_agent: User agent string
        """
        self.session = session
        self._owns_session = session is None
        self.retry_policy = retry_policy or RetryPolicy()
        self.page_delay = page_delay
        self.request_timeout = request_timeout
        self.user_agent = user_agent or f"helpcenter-kb/{__version__}"

    @classmethod
    def from_config(cls, config: SyncConfig) -> 'HelpCenterClient':
        return cls(
            retry_policy=RetryPolicy.from_sync_config(config),
            page_delay=config.page_delay,
            request_timeout=config.request_timeout,
        )

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the client session if this client created it."""
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers={'User-Agent': self.user_agent, 'Accept': 'application/json'},
            )
            self._owns_session = True
        return self.session

    async def _get_json(self, url: str, source: SourceConfig) -> Dict[str, Any]:
        """GET a JSON document, retrying throttled, 5xx and network failures."""
        session = self._ensure_session()
        policy = self.retry_policy
        last_error: Optional[FetchError] = None

        for attempt in range(policy.max_retries + 1):
            try:
                async with session.get(url) as response:
                    if response.status == 429:
                        if attempt >= policy.max_retries:
                            raise RateLimitError(
                                f"Rate limit exceeded for {source.name} after "
                                f"{policy.max_retries} retries. Please try again later.",
                                source=source.id,
                                status=429,
                            )
                        wait = _retry_after_seconds(response.headers.get('Retry-After'))
                        if wait is None:
                            wait = policy.delay_for(attempt)
                        wait = min(wait, policy.max_delay)
                        logger.warning(f"Rate limited by {source.base_url}, waiting {wait:.1f}s "
                                       f"(retry {attempt + 1}/{policy.max_retries})")
                        await asyncio.sleep(wait)
                        continue

                    if response.status >= 500:
                        last_error = FetchError(
                            f"HTTP {response.status}: {response.reason}",
                            source=source.id,
                            status=response.status,
                        )
                    elif response.status >= 400:
                        raise FetchError(
                            f"HTTP {response.status} from {url}. Make sure the URL is correct "
                            f"and the help center is publicly accessible.",
                            source=source.id,
                            status=response.status,
                        )
                    else:
                        try:
                            return await response.json(content_type=None)
                        except ValueError as e:
                            raise FetchError(f"Invalid JSON from {url}: {e}", source=source.id,
                                             status=response.status) from e

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = FetchError(f"{type(e).__name__}: {e}", source=source.id)
                last_error.__cause__ = e

            if attempt >= policy.max_retries:
                break

            wait = policy.delay_for(attempt)
            logger.warning(f"Request to {url} failed ({last_error}), retrying in {wait:.1f}s "
                           f"(attempt {attempt + 1}/{policy.max_retries})")
            await asyncio.sleep(wait)

        raise FetchError(
            f"Failed to fetch from {source.name} after {policy.max_retries + 1} attempts: {last_error}",
            source=source.id,
            status=last_error.status if last_error else None,
        ) from last_error

    async def _paginate(self, first_url: str, key: str, source: SourceConfig,
                        on_page: Optional[Callable[[List[Dict[str, Any]]], None]] = None
                        ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        seen_pages = set()
        next_page: Optional[str] = first_url

        while next_page:
            if next_page in seen_pages:
                logger.warning(f"Pagination loop detected at {next_page}, stopping")
                break
            seen_pages.add(next_page)

            data = await self._get_json(next_page, source)
            if not isinstance(data, dict):
                raise FetchError(f"Unexpected payload from {next_page}: expected a JSON object",
                                 source=source.id)
            page_items = data.get(key) or []
            if not isinstance(page_items, list):
                raise FetchError(f"Unexpected payload from {next_page}: '{key}' is not a list",
                                 source=source.id)
            items.extend(page_items)
            if on_page:
                on_page(page_items)

            next_page = data.get('next_page')
            if next_page and self.page_delay:
                await asyncio.sleep(self.page_delay)

        return items

    async def fetch_all_articles(self, source: SourceConfig,
                                 on_progress: Optional[Callable[[int], None]] = None
                                 ) -> List[HelpCenterArticle]:
        """Fetch every published (non-draft) article of a source.

        Args:
            source: Source to fetch
            on_progress: Called with the number of published articles fetched so far

        Raises:
            FetchError: on a terminal HTTP status or when retries run out
            RateLimitError: when the origin keeps throttling
        """
        articles: List[HelpCenterArticle] = []

        def collect(page: List[Dict[str, Any]]):
            for raw in page:
                article = HelpCenterArticle.from_dict(raw)
                if not article.draft:
                    articles.append(article)
            if on_progress:
                on_progress(len(articles))

        try:
            await self._paginate(articles_url(source), 'articles', source, on_page=collect)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise FetchError(f"Unexpected article payload from {source.name}: {e}",
                             source=source.id) from e

        logger.info(f"Fetched {len(articles)} published articles from {source.name}")
        return articles

    async def fetch_sections(self, source: SourceConfig) -> Dict[int, HelpCenterSection]:
        """Best-effort section listing; any failure yields an empty mapping."""
        try:
            raw_sections = await self._paginate(sections_url(source), 'sections', source)
            return {
                int(raw['id']): HelpCenterSection(
                    id=int(raw['id']),
                    name=raw.get('name') or '',
                    category_id=raw.get('category_id'),
                )
                for raw in raw_sections
            }
        except (FetchError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Could not fetch sections for {source.name}, continuing without them: {e}")
            return {}

    async def fetch_categories(self, source: SourceConfig) -> Dict[int, str]:
        """Best-effort category listing; any failure yields an empty mapping."""
        try:
            raw_categories = await self._paginate(categories_url(source), 'categories', source)
            return {int(raw['id']): raw.get('name') or '' for raw in raw_categories}
        except (FetchError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Could not fetch categories for {source.name}, continuing without them: {e}")
            return {}

    async def fetch_source(self, source: SourceConfig,
                           on_progress: Optional[Callable[[int], None]] = None) -> FetchedSource:
        """Fetch articles, then the section and category metadata, for one source."""
        articles = await self.fetch_all_articles(source, on_progress)
        sections = await self.fetch_sections(source)
        categories = await self.fetch_categories(source)
        return FetchedSource(articles=articles, sections=sections, categories=categories)

    async def test_connection(self, source: SourceConfig) -> bool:
        """Check that the source's article listing answers with a 2xx status."""
        session = self._ensure_session()
        try:
            async with session.get(articles_url(source, per_page=1)) as response:
                return 200 <= response.status < 300
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Connection test for {source.name} failed: {e}")
            return False
