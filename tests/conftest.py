import threading

import pytest

import page_ripper as pr


class FakeClient:
    """Serves canned bodies by URL; anything unknown or listed in ``fail`` fails every relay."""

    def __init__(self, responses=None, fail=()):
        self.responses = dict(responses or {})
        self.fail = set(fail)
        self.calls = []
        self._lock = threading.Lock()

    def fetch(self, url, binary=False):
        with self._lock:
            self.calls.append((url, binary))
        if url in self.fail or url not in self.responses:
            raise pr.AllRelaysFailedError(url, RuntimeError("Status 404"))
        body = self.responses[url]
        if binary:
            return body.encode("utf-8") if isinstance(body, str) else body
        return body.decode("utf-8") if isinstance(body, bytes) else body

    def fetched(self, url):
        return [c for c in self.calls if c[0] == url]


class RecordingReporter(pr.Reporter):
    def __init__(self):
        self.entries = []
        self.snapshots = []
        self.states = []

    def log(self, entry):
        self.entries.append(entry)

    def update_stats(self, stats):
        self.snapshots.append(stats)

    def set_state(self, state):
        self.states.append(state)

    def messages(self, level=None):
        return [e.message for e in self.entries if level is None or e.level is level]


@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture
def make_session(tmp_path, reporter):
    def _make(page_url, responses, fail=(), concurrency=5):
        client = FakeClient(responses, fail)
        session = pr.CrawlSession(
            page_url,
            settings=pr.Settings(concurrency=concurrency, output_dir=str(tmp_path)),
            client=client,
            reporter=reporter,
        )
        return session, client

    return _make
