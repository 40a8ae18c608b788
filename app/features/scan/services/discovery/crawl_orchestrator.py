import time
from collections import deque
from typing import Callable, Deque, Iterator, List, Optional, Set, Tuple
from urllib.parse import urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup

from app.features.scan.services.budget.budget_policy import CrawlBudget
from app.features.scan.services.fetch.safe_fetcher import SafeFetcher
from app.platform.exceptions import SafetyRejection, TransientFetchError
from app.platform.logger import get_logger
from app.platform.utils.url_safety import UrlSafetyFilter

logger = get_logger(__name__)

IGNORED_EXTENSIONS = {
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".ico", ".css", ".js",
    ".woff", ".woff2", ".ttf", ".zip", ".tar", ".gz", ".mp4", ".mp3", ".wav", ".xml", ".json",
}
IGNORED_HREF_PREFIXES = ("mailto:", "tel:", "javascript:", "data:", "#")

# Child sitemaps followed from a sitemap index
MAX_CHILD_SITEMAPS = 5


def normalize_page_url(url: str, base_url: Optional[str] = None) -> Optional[str]:
    """
    Canonical form used for the visited set, or None when the URL is not a
    crawlable page (non-http scheme, asset extension, unparsable).
    """
    try:
        if base_url:
            url = urljoin(base_url, url.strip())
        parsed = urlparse(url.strip())
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            return None

        path = parsed.path or "/"
        if any(path.lower().endswith(ext) for ext in IGNORED_EXTENSIONS):
            return None
        if path != "/" and path.endswith("/"):
            path = path.rstrip("/")

        return urlunparse((
            parsed.scheme.lower(),
            parsed.netloc.lower(),
            path,
            parsed.params,
            parsed.query,
            "",  # No fragment
        ))
    except ValueError:
        return None


def is_same_host(url: str, host: str) -> bool:
    """Exact hostname match; subdomains count as different hosts."""
    try:
        return (urlparse(url).hostname or "").lower() == host
    except ValueError:
        return False


class CrawlOrchestrator:
    """
    Breadth-first, single-host page discovery under a CrawlBudget.

    discover() is a generator: each call crawls from scratch, and URLs are
    produced one at a time so the caller can audit a page before the next one
    is discovered. Every URL goes through the safety filter before it is
    yielded or fetched.
    """

    def __init__(
        self,
        fetcher: Optional[SafeFetcher] = None,
        safety: Optional[UrlSafetyFilter] = None,
        clock: Callable[[], float] = time.monotonic,
        use_sitemap: bool = True,
    ):
        self.safety = safety or UrlSafetyFilter()
        self.fetcher = fetcher or SafeFetcher(safety=self.safety)
        self.clock = clock
        self.use_sitemap = use_sitemap
        # Distinct URLs queued so far by the running discover() call
        self.discovered = 0

    def discover(self, start_url: str, budget: CrawlBudget) -> Iterator[str]:
        start = normalize_page_url(start_url)
        if start is None:
            logger.warning(f"Start URL is not crawlable: {start_url}")
            return
        host = urlparse(start).hostname.lower()
        deadline = self.clock() + budget.max_time_seconds

        visited: Set[str] = set()
        queued: Set[str] = {start}
        frontier: Deque[Tuple[str, int]] = deque([(start, 0)])
        self.discovered = 1

        if self.use_sitemap and budget.max_depth > 0 and budget.max_pages > 1:
            for url in self._sitemap_urls(start, host, limit=budget.max_pages * 2):
                if url not in queued:
                    queued.add(url)
                    frontier.append((url, 1))
            self.discovered = len(queued)

        while frontier:
            if len(visited) >= budget.max_pages:
                break
            if self.clock() >= deadline:
                logger.info(f"Crawl time budget exhausted for {start} after {len(visited)} pages")
                break

            url, depth = frontier.popleft()
            if url in visited or depth > budget.max_depth:
                continue
            if not self.safety.is_allowed(url):
                continue

            visited.add(url)
            yield url

            if depth < budget.max_depth and len(visited) < budget.max_pages:
                for link in self._page_links(url):
                    if link in queued or not is_same_host(link, host):
                        continue
                    queued.add(link)
                    frontier.append((link, depth + 1))
                self.discovered = len(queued)

        logger.info(f"Crawl of {start} finished: {len(visited)} pages visited")

    def _page_links(self, url: str) -> List[str]:
        try:
            result = self.fetcher.get(url)
        except (TransientFetchError, SafetyRejection) as e:
            logger.warning(f"Link discovery failed for {url}: {e.message}")
            return []
        if not result.is_html:
            return []
        try:
            return extract_links(result.text, result.final_url)
        except Exception as e:
            logger.warning(f"Could not parse links on {url}: {e}")
            return []

    def _sitemap_urls(self, start: str, host: str, limit: int) -> List[str]:
        """Best effort: robots.txt Sitemap: entries, falling back to /sitemap.xml."""
        parsed = urlparse(start)
        root = f"{parsed.scheme}://{parsed.netloc}"

        sitemap_locations: List[str] = []
        try:
            robots = self.fetcher.get(f"{root}/robots.txt")
            sitemap_locations = parse_robots_sitemaps(robots.text)
        except (TransientFetchError, SafetyRejection) as e:
            logger.debug(f"No robots.txt for {root}: {e.message}")

        if not sitemap_locations:
            sitemap_locations = [f"{root}/sitemap.xml"]

        urls: List[str] = []
        pending = list(sitemap_locations)
        children_followed = 0
        while pending and len(urls) < limit:
            location = pending.pop(0)
            try:
                body = self.fetcher.get(location).text
            except (TransientFetchError, SafetyRejection) as e:
                logger.debug(f"Sitemap {location} unavailable: {e.message}")
                continue

            page_locs, child_sitemaps = parse_sitemap(body)
            for child in child_sitemaps:
                if children_followed < MAX_CHILD_SITEMAPS:
                    pending.append(child)
                    children_followed += 1
            for loc in page_locs:
                normalized = normalize_page_url(loc)
                if normalized and is_same_host(normalized, host) and normalized not in urls:
                    urls.append(normalized)
                    if len(urls) >= limit:
                        break

        if urls:
            logger.info(f"Sitemap seeded {len(urls)} URLs for {root}")
        return urls


def extract_links(html: str, page_url: str) -> List[str]:
    soup = BeautifulSoup(html, "html.parser")
    base = soup.find("base", href=True)
    base_url = urljoin(page_url, base["href"]) if base else page_url

    links: List[str] = []
    for anchor in soup.find_all("a", href=True):
        href = (anchor.get("href") or "").strip()
        if not href or href.lower().startswith(IGNORED_HREF_PREFIXES):
            continue
        normalized = normalize_page_url(href, base_url)
        if normalized and normalized not in links:
            links.append(normalized)
    return links


def parse_robots_sitemaps(robots_txt: str) -> List[str]:
    sitemaps = []
    for line in robots_txt.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip().lower() == "sitemap" and value.strip():
            sitemaps.append(value.strip())
    return sitemaps


def parse_sitemap(body: str) -> Tuple[List[str], List[str]]:
    """Returns (page URLs, child sitemap URLs)."""
    soup = BeautifulSoup(body, "html.parser")
    locs = [loc.get_text(strip=True) for loc in soup.find_all("loc") if loc.get_text(strip=True)]
    if soup.find("sitemapindex") is not None:
        return [], locs
    return locs, []
