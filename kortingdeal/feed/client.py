from __future__ import annotations

import gzip
import logging
import zlib
from dataclasses import dataclass, field
from typing import List, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from kortingdeal.exceptions import ConfigurationError, DecodeFailure, FeedUnavailable
from kortingdeal.feed.csv_parser import ParseStats, RawFeedRow, find_header, parse_csv_window, split_lines
from kortingdeal.settings import settings

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
REQUIRED_COLUMNS = ("aw_product_id", "product_name")


class _RetryableFeedError(RuntimeError):
    """5xx or transport failure; retried by tenacity, then mapped to FeedUnavailable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


@dataclass
class FeedChunk:
    rows: List[RawFeedRow]
    chunk_index: int
    total_count: int
    has_more: bool
    stats: ParseStats = field(default_factory=ParseStats)

    @property
    def next_chunk_index(self) -> int | None:
        return self.chunk_index + 1 if self.has_more else None


def decode_feed(content: bytes) -> str:
    """
    Decompress a gzip body, falling back to reading it as plain text.

    Raises DecodeFailure when the result has no data line or lacks the
    required Awin columns.
    """
    text: str | None = None
    if content[:2] == GZIP_MAGIC:
        try:
            text = gzip.decompress(content).decode("utf-8", errors="replace")
        except (OSError, EOFError, zlib.error) as e:
            logger.warning(f"[FEED] gzip decompression failed, reading body as plain text: {e}")
    if text is None:
        text = content.decode("utf-8", errors="replace")

    lines = split_lines(text)
    found = find_header(lines)
    if found is None or not any(line.strip() for line in lines[found[0] + 1:]):
        raise DecodeFailure(f"Feed contains no product lines ({len(content)} bytes received)")
    missing = [col for col in REQUIRED_COLUMNS if col not in found[1]]
    if missing:
        raise DecodeFailure(f"Feed header is missing columns: {', '.join(missing)}")
    return text


class FeedClient:
    """
    Downloads the Awin gzip CSV feed and serves it in line-range chunks.

    The decoded text is cached per instance, so looping over chunks costs
    one download. A fresh instance (one per stateless invocation) downloads again.
    """

    def __init__(
        self,
        feed_url: str,
        timeout_seconds: float | None = None,
        user_agent: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._feed_url = feed_url
        self._timeout = httpx.Timeout(timeout_seconds or settings.feed_timeout_seconds, connect=10.0)
        self._user_agent = user_agent or settings.feed_user_agent
        self._transport = transport
        self._text: str | None = None
        self._lines: List[str] | None = None
        self._total_count: int | None = None

    @retry(
        stop=stop_after_attempt(settings.feed_retry_count),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type(_RetryableFeedError),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            f"[FEED] Retrying feed download (attempt {retry_state.attempt_number}): {retry_state.outcome.exception()}"
        ),
    )
    def _send(self) -> bytes:
        headers = {"Accept-Encoding": "gzip", "User-Agent": self._user_agent}
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport, follow_redirects=True) as client:
                resp = client.get(self._feed_url, headers=headers)
        except httpx.TransportError as e:
            raise _RetryableFeedError(f"Feed request failed: {e}") from e

        if resp.status_code >= 500:
            raise _RetryableFeedError(f"Feed source returned HTTP {resp.status_code}", status_code=resp.status_code)
        if not resp.is_success:
            raise FeedUnavailable(f"Feed source returned HTTP {resp.status_code}", status_code=resp.status_code)
        return resp.content

    def download(self) -> str:
        if self._text is not None:
            return self._text

        if not self._feed_url:
            raise ConfigurationError("Feed URL not configured")

        logger.info("[FEED] Fetching feed...")
        try:
            content = self._send()
        except _RetryableFeedError as e:
            raise FeedUnavailable(str(e), status_code=e.status_code) from e

        logger.info(f"[FEED] Received {len(content)} bytes")
        self._text = decode_feed(content)
        self._lines = split_lines(self._text)
        logger.info(f"[FEED] Decoded to {len(self._text)} chars, {len(self._lines)} lines")
        return self._text

    def lines(self) -> List[str]:
        if self._lines is None:
            self.download()
        return self._lines

    def total_count(self) -> int:
        if self._total_count is None:
            lines = self.lines()
            header_idx, _ = find_header(lines)
            self._total_count = sum(1 for line in lines[header_idx + 1:] if line.strip())
        return self._total_count

    def fetch_chunk(self, chunk_index: int, chunk_size: int) -> FeedChunk:
        """
        Parse one window of ``chunk_size`` lines after the header.

        Only the window is split into fields; the rest of the feed is untouched.
        """
        if chunk_index < 0 or chunk_size < 1:
            raise ValueError("chunk_index must be >= 0 and chunk_size >= 1")

        lines = self.lines()
        header_idx, header = find_header(lines)
        start = header_idx + 1 + chunk_index * chunk_size
        end = min(start + chunk_size, len(lines))

        stats = ParseStats()
        rows = parse_csv_window(lines, header, start, end, stats=stats)
        has_more = end < len(lines)
        logger.info(
            f"[FEED] Chunk {chunk_index}: lines {start}..{end} of {len(lines)}, "
            f"parsed={stats.parsed} malformed={stats.malformed} hasMore={has_more}"
        )
        return FeedChunk(
            rows=rows,
            chunk_index=chunk_index,
            total_count=self.total_count(),
            has_more=has_more,
            stats=stats,
        )
