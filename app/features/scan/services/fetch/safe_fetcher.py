from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from urllib.parse import urljoin

import httpx

from app.platform.config import settings
from app.platform.exceptions import TransientFetchError
from app.platform.logger import get_logger
from app.platform.utils.url_safety import UrlSafetyFilter

logger = get_logger(__name__)

REDIRECT_STATUSES = {301, 302, 303, 307, 308}


@dataclass
class FetchResult:
    url: str
    final_url: str
    status_code: int
    text: str
    content_type: str = ""

    @property
    def is_html(self) -> bool:
        return "html" in self.content_type.lower() or not self.content_type


class SafeFetcher:
    """
    HTTP GET that never follows a redirect blindly.

    Redirects are handled by hand so that every hop goes back through the URL
    safety filter before it is requested. Safety rejections propagate as
    SafetyRejection; everything else that keeps us from a 2xx body becomes
    TransientFetchError.
    """

    def __init__(
        self,
        safety: Optional[UrlSafetyFilter] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = None,
        max_redirects: int = None,
        user_agent: str = None,
    ):
        self.safety = safety or UrlSafetyFilter()
        self.max_redirects = settings.MAX_REDIRECTS if max_redirects is None else max_redirects
        self._owns_client = client is None
        self.client = client or httpx.Client(
            timeout=timeout or settings.FETCH_TIMEOUT_SECONDS,
            follow_redirects=False,
            headers={"User-Agent": user_agent or settings.CRAWLER_USER_AGENT},
        )

    def get(self, url: str, headers: Optional[Dict[str, str]] = None) -> FetchResult:
        response, final_url = self._follow(url, headers, stream=False)
        if not 200 <= response.status_code < 300:
            raise TransientFetchError(
                f"HTTP {response.status_code} fetching {final_url}", url=final_url, status=response.status_code
            )
        return FetchResult(
            url=url,
            final_url=final_url,
            status_code=response.status_code,
            text=response.text,
            content_type=response.headers.get("content-type", ""),
        )

    def resolve(self, url: str) -> str:
        """
        Where url ends up after its HTTP redirects, every hop checked on the way.
        Bodies are never downloaded and error statuses are not rejected, so the
        browser can go straight to the returned URL.
        """
        response, final_url = self._follow(url, None, stream=True)
        response.close()
        return final_url

    def _follow(self, url: str, headers: Optional[Dict[str, str]], stream: bool) -> Tuple[httpx.Response, str]:
        current = url
        for _hop in range(self.max_redirects + 1):
            self.safety.check_url(current)
            try:
                request = self.client.build_request("GET", current, headers=headers)
                response = self.client.send(request, stream=stream)
            except httpx.TimeoutException as e:
                raise TransientFetchError(f"Timeout fetching {current}: {e}", url=current)
            except httpx.HTTPError as e:
                raise TransientFetchError(f"Error fetching {current}: {e}", url=current)

            if response.status_code not in REDIRECT_STATUSES:
                return response, current

            response.close()
            location = response.headers.get("location")
            if not location:
                raise TransientFetchError(
                    f"Redirect without Location from {current}", url=current, status=response.status_code
                )
            current = urljoin(current, location)
            logger.debug(f"Redirect {response.status_code}: -> {current}")

        raise TransientFetchError(f"Too many redirects starting from {url}", url=url)

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
