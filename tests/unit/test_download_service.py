from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest
import requests

from hangmigrate.application.services.download_service import (
    AttachmentDownloader,
    DownloadState,
    RetryPolicy,
)
from hangmigrate.core.errors import DownloadError
from hangmigrate.core.hashing import fingerprint_key
from hangmigrate.infrastructure.attachments.store import AttachmentStore
from hangmigrate.infrastructure.http.session import build_session


class _DummyResponse:
    def __init__(
        self,
        *,
        status_code: int = 200,
        body: bytes = b"",
        content_type: str | None = "image/jpeg",
        reason: str = "OK",
    ) -> None:
        self.status_code = status_code
        self.reason = reason
        self.headers = {"Content-Type": content_type} if content_type else {}
        self._body = body
        self.closed = False

    def iter_content(self, chunk_size: int = 1):
        for start in range(0, len(self._body), chunk_size):
            yield self._body[start : start + chunk_size]

    def close(self) -> None:
        self.closed = True


class _FakeSession:
    """Serves scripted responses per URL; the last scripted entry repeats."""

    def __init__(self, routes: dict[str, list[object]], delay: float = 0.0) -> None:
        self.routes = {url: list(items) for url, items in routes.items()}
        self.cookies = requests.cookies.RequestsCookieJar()
        self.calls: list[str] = []
        self.delay = delay
        self.in_flight = 0
        self.peak_in_flight = 0
        self._lock = threading.Lock()

    def get(self, url: str, **kwargs):  # type: ignore[no-untyped-def]
        with self._lock:
            self.calls.append(url)
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            script = self.routes.get(url) or [_DummyResponse(status_code=404, reason="Not Found")]
            item = script.pop(0) if len(script) > 1 else script[0]
        try:
            if self.delay:
                time.sleep(self.delay)
            if isinstance(item, BaseException):
                raise item
            return item
        finally:
            with self._lock:
                self.in_flight -= 1

    def close(self) -> None:
        pass


def _downloader(store: AttachmentStore, session: _FakeSession, **kwargs) -> tuple[AttachmentDownloader, list[float]]:
    sleeps: list[float] = []
    kwargs.setdefault("retry", RetryPolicy(wait_min=0.01, wait_max=0.05, max_attempts=5))
    downloader = AttachmentDownloader(store, session=session, sleep=sleeps.append, **kwargs)
    return downloader, sleeps


def test_submit_downloads_and_records_attachment(tmp_path: Path) -> None:
    store = AttachmentStore(tmp_path)
    session = _FakeSession({"https://x/a": [_DummyResponse(body=b"jpeg-bytes" * 100)]})
    downloader, _ = _downloader(store, session, copy_buffer_size=7)

    with downloader:
        assert downloader.submit("album:a", ["https://x/a"]) is True

    path = store.get_path("album:a")
    assert path == str(tmp_path / f"{fingerprint_key('album:a')}.jpg")
    assert Path(path).read_bytes() == b"jpeg-bytes" * 100
    assert downloader.stats.stored == 1
    assert downloader.stats.outcomes["album:a"] is DownloadState.STORED


def test_rate_limited_item_succeeds_and_unreachable_item_is_dropped(tmp_path: Path, caplog) -> None:
    store = AttachmentStore(tmp_path)
    session = _FakeSession(
        {
            "https://x/ok": [_DummyResponse(body=b"ok")],
            "https://x/limited": [
                _DummyResponse(status_code=429, reason="Too Many Requests"),
                _DummyResponse(body=b"limited", content_type="image/png"),
            ],
            "https://x/missing": [_DummyResponse(status_code=404, reason="Not Found")],
        }
    )
    downloader, sleeps = _downloader(store, session)

    with caplog.at_level("INFO"):
        with downloader:
            assert downloader.submit("ok", ["https://x/ok"])
            assert downloader.submit("limited", ["https://x/limited"])
            assert downloader.submit("missing", ["https://x/missing"])

    assert session.calls.count("https://x/limited") == 2
    assert session.calls.count("https://x/missing") == 1
    assert len(sleeps) == 1
    assert Path(store.get_path("limited") or "").read_bytes() == b"limited"

    snapshot = store.save_snapshot()["entries"]
    assert sorted(snapshot) == ["limited", "ok"]
    assert downloader.stats.stored == 2
    assert downloader.stats.failed == 1
    assert downloader.stats.outcomes["missing"] is DownloadState.FAILED
    assert "Unable to download meaningful content for key missing" in caplog.text


def test_html_response_falls_through_to_next_candidate(tmp_path: Path) -> None:
    store = AttachmentStore(tmp_path)
    session = _FakeSession(
        {
            "https://x/login": [_DummyResponse(body=b"<html>", content_type="text/html; charset=utf-8")],
            "https://x/real": [_DummyResponse(body=b"gif", content_type="image/gif")],
        }
    )
    downloader, _ = _downloader(store, session)

    with downloader:
        downloader.submit("k", ["https://x/login", "https://x/real"])

    assert session.calls == ["https://x/login", "https://x/real"]
    assert (store.get_path("k") or "").endswith(".gif")


def test_transient_network_errors_are_retried(tmp_path: Path) -> None:
    store = AttachmentStore(tmp_path)
    session = _FakeSession(
        {
            "https://x/flaky": [
                requests.ConnectionError("reset"),
                requests.Timeout("slow"),
                _DummyResponse(body=b"finally"),
            ]
        }
    )
    downloader, sleeps = _downloader(store, session)

    with downloader:
        downloader.submit("k", ["https://x/flaky"])

    assert len(session.calls) == 3
    assert len(sleeps) == 2
    assert Path(store.get_path("k") or "").read_bytes() == b"finally"


def test_retry_ceiling_bounds_attempts_per_url(tmp_path: Path) -> None:
    store = AttachmentStore(tmp_path)
    session = _FakeSession({"https://x/down": [_DummyResponse(status_code=503, reason="Unavailable")]})
    downloader, sleeps = _downloader(store, session, retry=RetryPolicy(wait_min=0, wait_max=0, max_attempts=3))

    with downloader:
        downloader.submit("k", ["https://x/down"])

    assert len(session.calls) == 3
    assert len(sleeps) == 2
    assert not store.has_mapping("k")
    assert downloader.stats.failed == 1


def test_non_transient_status_is_not_retried(tmp_path: Path) -> None:
    store = AttachmentStore(tmp_path)
    session = _FakeSession({"https://x/nope": [_DummyResponse(status_code=501, reason="Not Implemented")]})
    downloader, sleeps = _downloader(store, session)

    with downloader:
        downloader.submit("k", ["https://x/nope"])

    assert session.calls == ["https://x/nope"]
    assert sleeps == []


def test_already_stored_key_is_skipped_without_fetching(tmp_path: Path) -> None:
    (tmp_path / f"{fingerprint_key('k')}.jpg").write_bytes(b"old")
    store = AttachmentStore(tmp_path)
    session = _FakeSession({})
    downloader, _ = _downloader(store, session)

    with downloader:
        assert downloader.submit("k", ["https://x/k"]) is False

    assert session.calls == []
    assert downloader.stats.skipped == 1
    assert downloader.stats.outcomes["k"] is DownloadState.SKIPPED


def test_item_without_candidates_is_not_scheduled(tmp_path: Path) -> None:
    store = AttachmentStore(tmp_path)
    downloader, _ = _downloader(store, _FakeSession({}))

    with downloader:
        assert downloader.submit("k", []) is False
        assert downloader.submit("k2", ["", "  "]) is False

    assert downloader.stats.submitted == 0


def test_concurrent_fetches_never_exceed_limit(tmp_path: Path) -> None:
    store = AttachmentStore(tmp_path)
    routes = {f"https://x/{i}": [_DummyResponse(body=str(i).encode())] for i in range(20)}
    session = _FakeSession(routes, delay=0.02)
    downloader, _ = _downloader(store, session, concurrency=5)

    with downloader:
        for i in range(20):
            assert downloader.submit(f"item-{i}", [f"https://x/{i}"])

    assert session.peak_in_flight <= 5
    assert len(store.entries()) == 20
    assert downloader.stats.stored == 20


def test_key_claimed_by_another_writer_is_a_no_op(tmp_path: Path) -> None:
    store = AttachmentStore(tmp_path)

    class _RacingSession(_FakeSession):
        def get(self, url: str, **kwargs):  # type: ignore[no-untyped-def]
            # Another worker finishes the same key while this request is in flight.
            with store.reserve_write("k", "image/jpeg") as writer:
                writer.write(b"winner")
            return super().get(url, **kwargs)

    session = _RacingSession({"https://x/k": [_DummyResponse(body=b"loser")]})
    downloader, _ = _downloader(store, session)

    with downloader:
        assert downloader.submit("k", ["https://x/k"])

    assert Path(store.get_path("k") or "").read_bytes() == b"winner"
    assert downloader.stats.existing == 1
    assert downloader.stats.failed == 0
    assert downloader.stats.outcomes["k"] is DownloadState.STORED


def test_store_failure_surfaces_from_await_idle(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("file", encoding="utf-8")
    store = AttachmentStore(blocker)
    session = _FakeSession({"https://x/k": [_DummyResponse(body=b"x")]})
    downloader, _ = _downloader(store, session)

    downloader.submit("k", ["https://x/k"])
    with pytest.raises(DownloadError):
        downloader.await_idle()
    downloader.close()

    assert downloader.stats.outcomes["k"] is DownloadState.FAILED


def test_submit_after_close_is_rejected(tmp_path: Path) -> None:
    downloader, _ = _downloader(AttachmentStore(tmp_path), _FakeSession({}))
    downloader.close()
    with pytest.raises(DownloadError):
        downloader.submit("k", ["https://x/k"])


def test_build_session_attaches_cookies() -> None:
    session = build_session({"SID": "abc", "HSID": "def"})
    try:
        assert session.cookies.get("SID") == "abc"
        assert session.cookies.get("HSID") == "def"
    finally:
        session.close()


class _BrokenStreamResponse(_DummyResponse):
    def iter_content(self, chunk_size: int = 1):
        yield b"part"
        raise requests.exceptions.ChunkedEncodingError("connection broken mid-body")


def test_interrupted_transfer_leaves_no_partial_file_and_tries_next_candidate(tmp_path: Path) -> None:
    store = AttachmentStore(tmp_path)
    session = _FakeSession(
        {
            "https://x/broken": [_BrokenStreamResponse(body=b"ignored", content_type="image/png")],
            "https://x/mirror": [_DummyResponse(body=b"partrest", content_type="image/png")],
        }
    )
    downloader, _ = _downloader(store, session)

    with downloader:
        downloader.submit("k", ["https://x/broken", "https://x/mirror"])

    digest = fingerprint_key("k")
    assert session.calls == ["https://x/broken", "https://x/mirror"]
    assert [p.name for p in tmp_path.iterdir()] == [f"{digest}.png"]
    assert (tmp_path / f"{digest}.png").read_bytes() == b"partrest"
    assert downloader.stats.stored == 1


def test_backoff_doubles_from_minimum_up_to_maximum(tmp_path: Path) -> None:
    store = AttachmentStore(tmp_path)
    session = _FakeSession({"https://x/busy": [_DummyResponse(status_code=503, reason="Unavailable")]})
    downloader, sleeps = _downloader(
        store, session, retry=RetryPolicy(wait_min=5, wait_max=60, max_attempts=8)
    )

    with downloader:
        downloader.submit("k", ["https://x/busy"])

    assert sleeps == [5, 10, 20, 40, 60, 60, 60]
    assert len(session.calls) == 8
