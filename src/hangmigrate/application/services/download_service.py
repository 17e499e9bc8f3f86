from __future__ import annotations

import functools
import logging
import operator
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import closing
from dataclasses import dataclass, field
from enum import Enum
from types import TracebackType
from typing import Any

import requests
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    stop_never,
    wait_exponential,
)

from hangmigrate.core.errors import (
    AttachmentExistsError,
    AttachmentNotFoundError,
    AttachmentStoreError,
    ConfigurationError,
    DownloadError,
)
from hangmigrate.core.media_types import parse_media_type
from hangmigrate.infrastructure.attachments.store import AttachmentStore
from hangmigrate.infrastructure.http.session import build_session

logger = logging.getLogger(__name__)

COPY_BUFFER_SIZE = 4 * 1024 * 1024
DEFAULT_TIMEOUT: tuple[float, float] = (10.0, 60.0)

# 501 means the server will never support the request; every other 5xx and
# rate limiting are worth another attempt.
DEFAULT_TRANSIENT_STATUSES = frozenset({429} | {code for code in range(500, 600) if code != 501})

# Request errors that no amount of retrying can fix.
_PERMANENT_REQUEST_ERRORS = (
    requests.exceptions.InvalidURL,
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
    requests.exceptions.InvalidHeader,
    requests.exceptions.TooManyRedirects,
)


class DownloadState(str, Enum):
    DISCOVERED = "discovered"
    SKIPPED = "skipped"
    QUEUED = "queued"
    FETCHING = "fetching"
    STORED = "stored"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff and ceiling for retrying one candidate URL.

    ``max_attempts`` and ``max_elapsed`` default to ``None``, which retries a
    transient failure forever; set either to bound the worst-case time spent on
    one URL.
    """

    wait_min: float = 5.0
    wait_max: float = 60.0
    max_attempts: int | None = None
    max_elapsed: float | None = None
    transient_statuses: frozenset[int] = DEFAULT_TRANSIENT_STATUSES

    def is_transient_status(self, status_code: int) -> bool:
        return status_code in self.transient_statuses

    def stop_condition(self):
        stops = []
        if self.max_attempts:
            stops.append(stop_after_attempt(self.max_attempts))
        if self.max_elapsed is not None:
            stops.append(stop_after_delay(self.max_elapsed))
        if not stops:
            return stop_never
        return functools.reduce(operator.or_, stops)


@dataclass(slots=True)
class DownloadStats:
    submitted: int = 0
    skipped: int = 0
    stored: int = 0
    existing: int = 0
    failed: int = 0
    outcomes: dict[str, DownloadState] = field(default_factory=dict)


def _is_retryable_error(exc: BaseException) -> bool:
    return isinstance(exc, requests.RequestException) and not isinstance(exc, _PERMANENT_REQUEST_ERRORS)


def _last_outcome(retry_state: RetryCallState) -> Any:
    # Hand the final response back to the caller instead of raising RetryError;
    # a final exception is re-raised by result().
    return retry_state.outcome.result()


class AttachmentDownloader:
    """Fetch attachments into an :class:`AttachmentStore` with bounded concurrency.

    :meth:`submit` blocks while ``concurrency`` fetches are in flight, so a
    caller looping over thousands of attachments never queues more work than
    the pool can run. Each item tries its candidate URLs in order; transient
    failures on one URL are retried per :class:`RetryPolicy`, anything else
    moves on to the next candidate. Call :meth:`await_idle` (or :meth:`close`)
    before persisting the store's snapshot.
    """

    def __init__(
        self,
        store: AttachmentStore,
        *,
        session: requests.Session | None = None,
        cookies: Mapping[str, str] | None = None,
        concurrency: int = 5,
        retry: RetryPolicy | None = None,
        copy_buffer_size: int = COPY_BUFFER_SIZE,
        timeout: float | tuple[float, float] = DEFAULT_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if concurrency < 1:
            raise ConfigurationError(f"Download concurrency must be at least 1, got {concurrency}")
        if copy_buffer_size < 1:
            raise ConfigurationError(f"Copy buffer size must be positive, got {copy_buffer_size}")

        self.store = store
        self.concurrency = concurrency
        self.retry = retry or RetryPolicy()
        self.copy_buffer_size = copy_buffer_size
        self.timeout = timeout
        self._sleep = sleep

        self._owns_session = session is None
        self.session = session if session is not None else build_session(cookies)
        if session is not None and cookies:
            for name, value in cookies.items():
                session.cookies.set(name, value)

        self.stats = DownloadStats()
        self._lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(concurrency)
        self._executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="attachment-download")
        self._errors: list[BaseException] = []
        self._closed = False

    def submit(self, key: str, candidate_urls: Iterable[str]) -> bool:
        """Schedule ``key`` for download; returns False when no work was scheduled."""
        if self._closed:
            raise DownloadError("Downloader is closed.")
        self._set_state(key, DownloadState.DISCOVERED)

        try:
            existing = self.store.scan_for_key(key)
        except AttachmentNotFoundError:
            pass
        except AttachmentStoreError as exc:
            logger.error("Could not scan for key %s, downloading anyway: %s", key, exc)
        else:
            logger.info("File for %s already exists, skipping: %s", key, existing)
            self._finish(key, DownloadState.SKIPPED)
            return False

        urls = _dedupe_urls(candidate_urls)
        if not urls:
            logger.warning("No download URL for %s", key)
            self._finish(key, DownloadState.FAILED)
            return False

        self._slots.acquire()
        try:
            future = self._executor.submit(self._download, key, urls)
        except BaseException:
            self._slots.release()
            raise
        with self._lock:
            self.stats.submitted += 1
            if self.stats.outcomes.get(key) is DownloadState.DISCOVERED:
                self.stats.outcomes[key] = DownloadState.QUEUED
        future.add_done_callback(self._on_done)
        return True

    def await_idle(self) -> None:
        """Block until every scheduled fetch has released its slot.

        Raises :class:`DownloadError` if a worker hit a store failure that
        could not be handled per item.
        """
        for _ in range(self.concurrency):
            self._slots.acquire()
        for _ in range(self.concurrency):
            self._slots.release()

        with self._lock:
            errors, self._errors = self._errors, []
        if errors:
            raise DownloadError(
                f"{len(errors)} attachment download(s) failed with store errors; first: {errors[0]}"
            ) from errors[0]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.await_idle()
        finally:
            self._executor.shutdown(wait=True)
            if self._owns_session:
                self.session.close()

    def __enter__(self) -> AttachmentDownloader:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _on_done(self, future: Future) -> None:
        exc = None if future.cancelled() else future.exception()
        if exc is not None:
            with self._lock:
                self._errors.append(exc)
        self._slots.release()

    def _download(self, key: str, urls: list[str]) -> DownloadState:
        self._set_state(key, DownloadState.FETCHING)
        for index, url in enumerate(urls):
            try:
                wrote = self._try_url(key, url)
            except DownloadError as exc:
                logger.warning("Failed to download key #%d %r at %s: %s", index, key, url, exc)
                continue
            except AttachmentStoreError:
                self._finish(key, DownloadState.FAILED)
                raise
            self._finish(key, DownloadState.STORED, existing=not wrote)
            return DownloadState.STORED

        logger.error("Unable to download meaningful content for key %s, tried: %s", key, urls)
        self._finish(key, DownloadState.FAILED)
        return DownloadState.FAILED

    def _try_url(self, key: str, url: str) -> bool:
        """Fetch one candidate; True when a new file was written, False when one already existed."""
        try:
            response = self._get(url)
        except requests.RequestException as exc:
            raise DownloadError(f"request failed: {exc}") from exc

        with closing(response):
            if response.status_code != 200:
                raise DownloadError(f"non-OK status code {response.status_code}: {response.reason}")

            media_type = parse_media_type(response.headers.get("Content-Type"))
            if media_type == "text/html":
                # Attachments are never HTML; this is a login or error page.
                raise DownloadError(f"got media type {media_type!r}, probably an error page")

            try:
                writer = self.store.reserve_write(key, media_type)
            except AttachmentExistsError:
                logger.info("An attachment already exists for %r, skipping.", key)
                return False

            written = 0
            try:
                with writer:
                    for chunk in response.iter_content(chunk_size=self.copy_buffer_size):
                        if chunk:
                            written += writer.write(chunk)
            except (requests.RequestException, OSError) as exc:
                raise DownloadError(f"could not write file for {key}: {exc}") from exc

        logger.info(
            "Successfully downloaded %s (%s) (%d byte(s)) from %s to %s",
            key,
            media_type or "unknown type",
            written,
            url,
            writer.path,
        )
        return True

    def _get(self, url: str) -> requests.Response:
        retrying = Retrying(
            retry=(
                retry_if_exception(_is_retryable_error)
                | retry_if_result(lambda response: self.retry.is_transient_status(response.status_code))
            ),
            wait=wait_exponential(
                multiplier=self.retry.wait_min,
                min=self.retry.wait_min,
                max=self.retry.wait_max,
            ),
            stop=self.retry.stop_condition(),
            sleep=self._sleep,
            before_sleep=self._before_sleep,
            retry_error_callback=_last_outcome,
        )
        return retrying(self.session.get, url, stream=True, timeout=self.timeout)

    @staticmethod
    def _before_sleep(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        url = retry_state.args[0] if retry_state.args else "?"
        delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
        if outcome is not None and outcome.failed:
            reason = repr(outcome.exception())
        else:
            response = outcome.result() if outcome is not None else None
            reason = f"status {getattr(response, 'status_code', '?')}"
            if response is not None:
                response.close()
        logger.info(
            "Retrying %s (attempt %d) in %.1fs: %s",
            url,
            retry_state.attempt_number,
            delay,
            reason,
        )

    def _set_state(self, key: str, state: DownloadState) -> None:
        with self._lock:
            self.stats.outcomes[key] = state

    def _finish(self, key: str, state: DownloadState, *, existing: bool = False) -> None:
        with self._lock:
            self.stats.outcomes[key] = state
            if state is DownloadState.SKIPPED:
                self.stats.skipped += 1
            elif state is DownloadState.FAILED:
                self.stats.failed += 1
            elif existing:
                self.stats.existing += 1
            else:
                self.stats.stored += 1


def _dedupe_urls(urls: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    normalized: list[str] = []
    for url in urls:
        clean = (url or "").strip()
        if not clean or clean in seen:
            continue
        seen.add(clean)
        normalized.append(clean)
    return normalized
