from typing import Callable, Optional

from selenium import webdriver
from selenium.common.exceptions import TimeoutException, WebDriverException
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service

from app.features.scan.services.audit.dom_snapshot import DomSnapshot
from app.features.scan.services.fetch.safe_fetcher import SafeFetcher
from app.platform.config import settings
from app.platform.exceptions import TransientFetchError
from app.platform.logger import get_logger
from app.platform.utils.url_safety import UrlSafetyFilter

logger = get_logger(__name__)

MAX_ELEMENTS = 5000

# Flattens the rendered DOM into the payload DomSnapshot.from_payload reads
EXTRACT_SCRIPT = """
const limit = arguments[0];
const nodes = Array.from(document.querySelectorAll('*')).slice(0, limit);
const index = new Map(nodes.map((el, i) => [el, i]));
const elements = nodes.map((el) => {
  const s = getComputedStyle(el);
  const r = el.getBoundingClientRect();
  const attributes = {};
  for (const a of el.attributes) attributes[a.name] = a.value;
  let text = '';
  for (const child of el.childNodes) {
    if (child.nodeType === Node.TEXT_NODE) text += child.textContent + ' ';
  }
  const parent = el.parentElement && index.has(el.parentElement) ? index.get(el.parentElement) : null;
  return {
    tag: el.tagName.toLowerCase(),
    attributes: attributes,
    text: text.trim(),
    parent: parent,
    style: {
      'color': s.color,
      'background-color': s.backgroundColor,
      'font-size': s.fontSize,
      'font-weight': s.fontWeight,
      'display': s.display,
      'visibility': s.visibility,
    },
    rect: {width: r.width, height: r.height},
    html: el.outerHTML.slice(0, 400),
  };
});
return {url: location.href, title: document.title, elements: elements};
"""


def build_driver() -> webdriver.Remote:
    chrome_options = Options()
    chrome_options.add_argument('--headless=new')
    chrome_options.add_argument('--no-sandbox')
    chrome_options.add_argument('--disable-dev-shm-usage')
    chrome_options.add_argument('--disable-gpu')
    chrome_options.add_argument(f'--user-agent={settings.CRAWLER_USER_AGENT}')

    if settings.BROWSERLESS_URL:
        return webdriver.Remote(command_executor=settings.BROWSERLESS_URL, options=chrome_options)
    if settings.CHROMEDRIVER_PATH:
        driver_service = Service(executable_path=settings.CHROMEDRIVER_PATH)
        return webdriver.Chrome(service=driver_service, options=chrome_options)
    return webdriver.Chrome(options=chrome_options)


class BrowserSession:
    """
    One headless browser for the lifetime of a scan.

    Use as a context manager so the driver is quit however the scan ends.
    Chrome follows redirects without asking, so render() first walks the HTTP
    redirect chain with SafeFetcher, checking every hop, and navigates to where
    it ends. The URL Chrome lands on is checked again after navigation.
    """

    def __init__(
        self,
        safety: Optional[UrlSafetyFilter] = None,
        driver_factory: Callable[[], webdriver.Remote] = build_driver,
        navigation_timeout: int = None,
        fetcher: Optional[SafeFetcher] = None,
    ):
        self.safety = safety or UrlSafetyFilter()
        self._owns_fetcher = fetcher is None
        self.fetcher = fetcher or SafeFetcher(safety=self.safety)
        self.driver_factory = driver_factory
        self.navigation_timeout = navigation_timeout or settings.NAVIGATION_TIMEOUT_SECONDS
        self.driver = None

    def open(self) -> "BrowserSession":
        if self.driver is None:
            try:
                self.driver = self.driver_factory()
            except WebDriverException as e:
                raise TransientFetchError(f"Could not start browser: {e.msg or e}")
            self.driver.set_page_load_timeout(self.navigation_timeout)
        return self

    def render(self, url: str) -> DomSnapshot:
        self.safety.check_url(url)
        target = self.fetcher.resolve(url)
        self.open()
        try:
            self.driver.get(target)
            final_url = self.driver.current_url
        except TimeoutException:
            raise TransientFetchError(f"Timed out loading {url}", url=url)
        except WebDriverException as e:
            raise TransientFetchError(f"Browser could not load {url}: {e.msg or e}", url=url)

        self.safety.check_url(final_url)

        try:
            payload = self.driver.execute_script(EXTRACT_SCRIPT, MAX_ELEMENTS)
        except WebDriverException as e:
            raise TransientFetchError(f"Could not read DOM of {url}: {e.msg or e}", url=url)

        snapshot = DomSnapshot.from_payload(payload or {}, url=final_url)
        logger.debug(f"Rendered {final_url}: {len(snapshot)} elements")
        return snapshot

    def close(self) -> None:
        if self._owns_fetcher:
            self.fetcher.close()
        if self.driver is None:
            return
        try:
            self.driver.quit()
        except WebDriverException as e:
            logger.warning(f"Error quitting browser: {e}")
        finally:
            self.driver = None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
