"""HTTP fetcher for ICS calendar feeds."""
import logging
import time
from dataclasses import dataclass
from typing import Optional

import requests

logger = logging.getLogger(__name__)

USER_AGENT = 'Mozilla/5.0 (compatible; FamilyHQ/1.0)'


def normalize_url(url: str) -> str:
    """Rewrite a webcal:// URL to https://."""
    url = url.strip()
    if url.lower().startswith('webcal://'):
        return 'https://' + url[len('webcal://'):]
    return url


@dataclass
class FetchResult:
    """Outcome of fetching one feed."""
    status: str
    text: Optional[str] = None
    detail: Optional[str] = None
    http_status: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status == 'success'


class IcsFetcher:
    """Fetches raw ICS text for configured feeds."""

    BASE_DELAY = 1  # seconds

    def __init__(self, timeout: int = 10, max_retries: int = 3,
                 user_agent: str = USER_AGENT):
        """
        Initialize the fetcher.

        Args:
            timeout: HTTP request timeout in seconds (default: 10)
            max_retries: Attempts per feed for transport errors and 5xx responses
            user_agent: Value of the User-Agent header
        """
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.user_agent = user_agent

    def fetch(self, url: str) -> FetchResult:
        """
        Fetch a feed and return its body as text.

        Failures are reported in the returned FetchResult; this method does
        not raise for HTTP or transport errors.

        Args:
            url: Feed URL, http(s):// or webcal://

        Returns:
            FetchResult with status 'success' or 'error'
        """
        target = normalize_url(url)
        headers = {'User-Agent': self.user_agent, 'Accept': 'text/calendar, */*'}
        result = FetchResult(status='error', detail='No attempt made')

        for attempt in range(self.max_retries):
            try:
                logger.info(
                    f"Fetching feed (attempt {attempt + 1}/{self.max_retries})",
                    extra={'url': target[:50]}
                )
                response = requests.get(target, headers=headers, timeout=self.timeout)
            except requests.RequestException as e:
                result = FetchResult(status='error', detail=str(e) or type(e).__name__)
            else:
                if response.ok:
                    return FetchResult(
                        status='success',
                        text=response.text,
                        http_status=response.status_code
                    )
                result = FetchResult(
                    status='error',
                    detail=f"HTTP {response.status_code}",
                    http_status=response.status_code
                )
                if response.status_code < 500:
                    logger.warning(f"Feed request rejected: {result.detail}")
                    return result

            if attempt < self.max_retries - 1:
                delay = self.BASE_DELAY * (2 ** attempt)
                logger.warning(
                    f"Request failed (attempt {attempt + 1}/{self.max_retries}): "
                    f"{result.detail}. Retrying in {delay} seconds..."
                )
                time.sleep(delay)

        logger.error(
            f"All {self.max_retries} fetch attempts failed. Last error: {result.detail}"
        )
        return result
