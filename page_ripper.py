#!/usr/bin/env python3
"""
Rip a single web page into a self-contained offline ZIP archive.

The page is fetched through a chain of relay endpoints, every linked
stylesheet, script, image and media file is downloaded with a bounded
number of requests in flight, stylesheets get their url(...) references
downloaded and rewritten, and the page markup is rewritten to point at the
local copies before everything is packed into <host>_source.zip.
"""
import argparse
import itertools
import logging
import os
import posixpath
import re
import sys
import time
import tomllib
import uuid
import zipfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from threading import Event, Lock
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple, Union
from urllib.parse import quote, unquote, urljoin, urlparse

import requests
import yaml
from bs4 import BeautifulSoup, Tag
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

# {url} is replaced with the percent-encoded target, {raw_url} with the target as is
DEFAULT_RELAYS = (
    "https://api.allorigins.win/raw?url={url}",
    "https://corsproxy.io/?{url}",
    "https://api.codetabs.com/v1/proxy?quest={url}",
)
DIRECT_RELAY = "{raw_url}"

DEFAULT_CONCURRENCY = 5

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
ARCHIVE_NAME_RE = re.compile(r"[^a-z0-9]", re.IGNORECASE)

STRIP_ON_REWRITE = ("integrity", "crossorigin", "referrerpolicy")

# -------------------- Settings --------------------


@dataclass
class Settings:
    timeout: float = 15.0
    concurrency: int = DEFAULT_CONCURRENCY
    relays: List[str] = field(default_factory=lambda: list(DEFAULT_RELAYS))
    output_dir: str = "."
    headers: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))


# -------------------- Errors --------------------


class RipperError(Exception):
    pass


class InvalidUrlError(RipperError):
    pass


class ResolutionError(RipperError):
    pass


class ArchiveFinalizeError(RipperError):
    pass


class InvalidRelayError(RipperError):
    pass


class AllRelaysFailedError(RipperError):
    def __init__(self, url: str, last_error: Optional[BaseException]):
        super().__init__(f"All relays failed to fetch {url}. Last error: {last_error}")
        self.url = url
        self.last_error = last_error


# -------------------- Model --------------------


class AssetKind(str, Enum):
    IMAGE = "image"
    STYLESHEET = "stylesheet"
    SCRIPT = "script"
    FONT = "font"
    VIDEO = "video"
    OTHER = "other"


class LogLevel(str, Enum):
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"


class SessionState(str, Enum):
    IDLE = "IDLE"
    CRAWLING = "CRAWLING"
    PROCESSING = "PROCESSING"
    COMPRESSING = "COMPRESSING"
    FINISHED = "FINISHED"
    ERROR = "ERROR"


@dataclass(frozen=True)
class Asset:
    original_url: str
    filename: str
    kind: AssetKind
    archive_path: str


@dataclass(frozen=True)
class DownloadTask:
    url: str
    kind: AssetKind


@dataclass(frozen=True)
class CrawlStats:
    pages_scanned: int = 0
    assets_found: int = 0
    assets_downloaded: int = 0
    total_bytes: int = 0


@dataclass(frozen=True)
class LogEntry:
    id: str
    timestamp: float
    message: str
    level: LogLevel


@dataclass
class TaskOutcome:
    task: DownloadTask
    asset: Optional[Asset] = None
    nbytes: int = 0
    skipped: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.asset is not None


LogFn = Callable[[str, LogLevel], None]
Content = Union[bytes, str]

# -------------------- Utils --------------------


def sanitize_filename(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    name = name or "file"
    if name.startswith("."):
        name = "_" + name[1:]
    return name[:200]


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def shorten(url: str, limit: int = 50) -> str:
    return url if len(url) <= limit else url[:limit] + "..."


def content_size(content: Content) -> int:
    if isinstance(content, str):
        return len(content.encode("utf-8"))
    return len(content)


def validate_page_url(url: str) -> str:
    try:
        u = url.strip()
        p = urlparse(u)
        host = p.hostname
    except (AttributeError, ValueError) as e:
        raise InvalidUrlError(f"Invalid URL provided: {url!r}") from e
    if p.scheme not in ("http", "https") or not host:
        raise InvalidUrlError(f"Invalid URL provided: {url!r}")
    return u


def archive_name_for(page_url: str) -> str:
    host = urlparse(page_url).hostname or "site"
    return f"{ARCHIVE_NAME_RE.sub('_', host)}_source.zip"


# -------------------- Reference resolution --------------------


def is_excluded_reference(ref: Optional[str]) -> bool:
    if not ref:
        return True
    r = ref.strip()
    return not r or r.startswith("#") or r[:5].lower() == "data:"


def resolve_reference(ref: str, base: str) -> str:
    """Resolve ``ref`` against ``base`` into an absolute http(s) URL.

    Fragment-only and ``data:`` references are rejected, as is anything
    that does not end up as an http(s) URL with a host.
    """
    if is_excluded_reference(ref):
        raise ResolutionError(f"excluded reference: {(ref or '')[:40]!r}")
    ref = ref.strip()
    try:
        absu = urljoin(base, ref)
        p = urlparse(absu)
        host = p.hostname
        p.port  # raises ValueError on a malformed port
    except ValueError as e:
        raise ResolutionError(f"cannot resolve {ref!r}: {e}") from e
    if p.scheme not in ("http", "https") or not host:
        raise ResolutionError(f"not an http(s) reference: {ref!r}")
    return absu


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        try:
            return resolve_reference(tag["href"], fallback)
        except ResolutionError:
            logging.debug("ignoring unusable <base href=%r>", tag["href"])
    return fallback


# -------------------- Naming --------------------

DEFAULT_EXTENSIONS = {
    AssetKind.STYLESHEET: ".css",
    AssetKind.SCRIPT: ".js",
    AssetKind.IMAGE: ".png",
}

KIND_FOLDERS = {
    AssetKind.STYLESHEET: "css",
    AssetKind.SCRIPT: "js",
    AssetKind.IMAGE: "images",
    AssetKind.FONT: "fonts",
}


def filename_for_url(url: str, kind: AssetKind) -> str:
    segment = urlparse(url).path.split("/")[-1]
    name = sanitize_filename(unquote(segment)) if segment else "index"
    if not posixpath.splitext(name)[1]:
        name += DEFAULT_EXTENSIONS.get(kind, ".dat")
    return name


def folder_for_kind(kind: AssetKind) -> str:
    return KIND_FOLDERS.get(kind, "assets")


def archive_path_for(url: str, kind: AssetKind) -> str:
    return f"{folder_for_kind(kind)}/{filename_for_url(url, kind)}"


# -------------------- Registry --------------------


class AssetRegistry:
    """Per-session map of absolute URL to stored asset plus the visited set.

    ``claim`` is the only way a URL enters the visited set, so two
    concurrent tasks can never both win the same URL. The winner must
    call ``settle`` once the URL is stored or has failed; ``wait`` blocks
    until then.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._visited: Dict[str, Event] = {}
        self._assets: Dict[str, Asset] = {}

    def claim(self, url: str) -> bool:
        with self._lock:
            if url in self._visited:
                return False
            self._visited[url] = Event()
            return True

    def is_visited(self, url: str) -> bool:
        with self._lock:
            return url in self._visited

    def settle(self, url: str) -> None:
        with self._lock:
            done = self._visited.get(url)
        if done is not None:
            done.set()

    def wait(self, url: str, timeout: Optional[float] = None) -> Optional[Asset]:
        with self._lock:
            done = self._visited.get(url)
        if done is not None and not done.wait(timeout):
            logging.debug("gave up waiting for %s", url)
        return self.get(url)

    def register(self, url: str, kind: AssetKind) -> Asset:
        with self._lock:
            existing = self._assets.get(url)
            if existing is not None:
                return existing
            asset = Asset(
                original_url=url,
                filename=filename_for_url(url, kind),
                kind=kind,
                archive_path=archive_path_for(url, kind),
            )
            self._assets[url] = asset
            return asset

    def get(self, url: str) -> Optional[Asset]:
        with self._lock:
            return self._assets.get(url)

    def assets(self) -> List[Asset]:
        with self._lock:
            return list(self._assets.values())

    def __contains__(self, url: str) -> bool:
        return self.get(url) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._assets)


# -------------------- Relay fetch --------------------


def build_session(headers: Optional[Dict[str, str]] = None) -> requests.Session:
    s = requests.Session()
    # one attempt per relay; falling through to the next relay is the retry
    retry = Retry(total=0, raise_on_status=False)
    adapter = HTTPAdapter(max_retries=retry, pool_connections=32, pool_maxsize=32)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS if headers is None else headers)
    return s


def decode_text(resp: requests.Response) -> str:
    if not resp.encoding:
        resp.encoding = resp.apparent_encoding or "utf-8"
    return resp.text


class RelayClient:
    def __init__(
        self,
        relays: Sequence[str] = DEFAULT_RELAYS,
        *,
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ):
        if not relays:
            raise ValueError("at least one relay is required")
        self.relays = list(relays)
        for template in self.relays:
            self.check_template(template)
        self.timeout = timeout
        self.session = session if session is not None else build_session()

    @classmethod
    def check_template(cls, template: str) -> None:
        if "{url}" not in template and "{raw_url}" not in template:
            raise InvalidRelayError(f"relay template {template!r} has no {{url}} or {{raw_url}}")
        cls.relay_url(template, "http://example.com/")

    @staticmethod
    def relay_url(template: str, url: str) -> str:
        try:
            return template.format(url=quote(url, safe=""), raw_url=url)
        except (KeyError, IndexError, ValueError) as e:
            raise InvalidRelayError(
                f"bad relay template {template!r}: use {{url}} or {{raw_url}}"
            ) from e

    def fetch(self, url: str, binary: bool = False) -> Content:
        last_error: Optional[BaseException] = None
        for template in self.relays:
            target = self.relay_url(template, url)
            try:
                r = self.session.get(target, timeout=self.timeout)
                r.raise_for_status()
            except requests.RequestException as e:
                logging.debug("relay %s failed for %s: %s", template, url, e)
                last_error = e
                continue
            return r.content if binary else decode_text(r)
        raise AllRelaysFailedError(url, last_error)


# -------------------- Archive --------------------


class ZipArchive:
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._entries: Dict[str, Content] = {}
        self._lock = Lock()

    def add(self, path: str, content: Content) -> None:
        with self._lock:
            if path in self._entries:
                logging.debug("overwriting archive entry %s", path)
            self._entries[path] = content

    def get(self, path: str) -> Optional[Content]:
        with self._lock:
            return self._entries.get(path)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def finalize(self) -> Path:
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            ensure_parent_dir(self.path)
            with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for name, content in self.names_and_content():
                    zf.writestr(name, content)
            os.replace(tmp, self.path)
        except (OSError, ValueError, zipfile.BadZipFile) as e:
            raise ArchiveFinalizeError(f"failed to write {self.path}: {e}") from e
        return self.path

    def names_and_content(self) -> List[Tuple[str, Content]]:
        with self._lock:
            return list(self._entries.items())


# -------------------- Reporting --------------------

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

_LOGGING_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: SUCCESS,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class Reporter:
    def log(self, entry: LogEntry) -> None:
        raise NotImplementedError

    def update_stats(self, stats: CrawlStats) -> None:
        raise NotImplementedError

    def set_state(self, state: SessionState) -> None:
        pass


class LoggingReporter(Reporter):
    def log(self, entry: LogEntry) -> None:
        logging.log(_LOGGING_LEVELS[entry.level], "%s", entry.message)

    def update_stats(self, stats: CrawlStats) -> None:
        logging.debug(
            "stats: pages=%d found=%d downloaded=%d bytes=%d",
            stats.pages_scanned,
            stats.assets_found,
            stats.assets_downloaded,
            stats.total_bytes,
        )

    def set_state(self, state: SessionState) -> None:
        logging.debug("state -> %s", state.value)


# -------------------- HTML --------------------


def parse_html(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


def serialize_html(soup: BeautifulSoup) -> str:
    return soup.decode(formatter="html")


def _rels(tag: Tag) -> Set[str]:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return {r.lower() for r in rel}


def iter_asset_references(soup: BeautifulSoup) -> Iterator[Tuple[Tag, str, AssetKind]]:
    """Yield (element, attribute, kind) for every reference we archive, in document order."""
    for tag in soup.find_all(["link", "script", "img", "video", "audio", "source"]):
        name = tag.name
        if name == "link":
            if not tag.has_attr("href"):
                continue
            rels = _rels(tag)
            if "stylesheet" in rels:
                yield tag, "href", AssetKind.STYLESHEET
            elif "icon" in rels or "apple-touch-icon" in rels:
                yield tag, "href", AssetKind.IMAGE
            elif "preload" in rels and (tag.get("as") or "").lower() == "font":
                yield tag, "href", AssetKind.FONT
        elif not tag.has_attr("src"):
            continue
        elif name == "script":
            yield tag, "src", AssetKind.SCRIPT
        elif name == "img":
            yield tag, "src", AssetKind.IMAGE
        elif name in ("video", "audio"):
            yield tag, "src", AssetKind.VIDEO
        elif tag.find_parent(["video", "audio"]) is not None:
            yield tag, "src", AssetKind.VIDEO


# -------------------- Discovery --------------------


def discover_assets(soup: BeautifulSoup, base_url: str) -> List[DownloadTask]:
    tasks: List[DownloadTask] = []
    seen: Set[str] = set()
    for tag, attr, kind in iter_asset_references(soup):
        ref = tag.get(attr)
        if is_excluded_reference(ref):
            continue
        try:
            absu = resolve_reference(ref, base_url)
        except ResolutionError as e:
            logging.debug("skip <%s %s>: %s", tag.name, attr, e)
            continue
        if absu in seen:
            continue
        seen.add(absu)
        tasks.append(DownloadTask(url=absu, kind=kind))
    return tasks


# -------------------- CSS --------------------


def extract_css_references(css_text: str, css_url: str) -> List[str]:
    urls: List[str] = []
    for m in CSS_URL_RE.finditer(css_text):
        try:
            absu = resolve_reference(m.group(2), css_url)
        except ResolutionError:
            continue
        if absu not in urls:
            urls.append(absu)
    return urls


def rewrite_css_text(
    css_text: str, css_url: str, css_archive_path: str, registry: AssetRegistry
) -> str:
    css_dir = posixpath.dirname(css_archive_path) or "."

    def repl_url(m: re.Match) -> str:
        q = m.group(1)
        try:
            absu = resolve_reference(m.group(2), css_url)
        except ResolutionError:
            return m.group(0)
        asset = registry.get(absu)
        if asset is None:
            return m.group(0)
        return f"url({q}{posixpath.relpath(asset.archive_path, css_dir)}{q})"

    return CSS_URL_RE.sub(repl_url, css_text)


class CssRewriter:
    """Downloads the url(...) dependencies of a stylesheet and points them at the archive.

    Every dependency has to be settled before the text is rewritten since
    the replacement is the dependency's archive path. Dependencies claimed
    by another task are waited for, up to ``wait_timeout`` seconds each.
    """

    def __init__(
        self,
        client,
        registry: AssetRegistry,
        archive,
        log: LogFn,
        wait_timeout: Optional[float] = 60.0,
    ):
        self.client = client
        self.registry = registry
        self.archive = archive
        self.log = log
        self.wait_timeout = wait_timeout

    def rewrite(self, css_text: str, css_url: str, css_archive_path: str) -> Tuple[str, int]:
        nbytes = 0
        claimed_elsewhere: List[str] = []
        for u in extract_css_references(css_text, css_url):
            if not self.registry.claim(u):
                # a stylesheet referencing itself is never settled while we run
                if u != css_url:
                    claimed_elsewhere.append(u)
                continue
            try:
                data = self.client.fetch(u, binary=True)
                asset = self.registry.register(u, AssetKind.OTHER)
                self.archive.add(asset.archive_path, data)
            except Exception as e:
                self.log(f"Failed CSS asset {u}: {e}", LogLevel.WARNING)
                continue
            finally:
                self.registry.settle(u)
            nbytes += content_size(data)
            self.log(f"Downloaded CSS asset: {shorten(u, 30)}", LogLevel.INFO)
        for u in claimed_elsewhere:
            self.registry.wait(u, self.wait_timeout)
        return rewrite_css_text(css_text, css_url, css_archive_path, self.registry), nbytes


# -------------------- Downloader --------------------


class BoundedDownloader:
    def __init__(
        self,
        client,
        registry: AssetRegistry,
        archive,
        log: LogFn,
        concurrency: int = DEFAULT_CONCURRENCY,
        wait_timeout: Optional[float] = 60.0,
    ):
        self.client = client
        self.registry = registry
        self.archive = archive
        self.log = log
        self.concurrency = max(1, concurrency)
        self.css = CssRewriter(client, registry, archive, log, wait_timeout)

    def chunks(self, tasks: Sequence[DownloadTask]) -> Iterator[Sequence[DownloadTask]]:
        for i in range(0, len(tasks), self.concurrency):
            yield tasks[i : i + self.concurrency]

    def run(
        self,
        tasks: Sequence[DownloadTask],
        on_outcome: Optional[Callable[[TaskOutcome], None]] = None,
    ) -> List[TaskOutcome]:
        outcomes: List[TaskOutcome] = []
        if not tasks:
            return outcomes
        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            for chunk in self.chunks(tasks):
                futures = [pool.submit(self.download_one, t) for t in chunk]
                # as_completed drains the whole chunk before the next one is submitted
                for fut in as_completed(futures):
                    outcome = fut.result()
                    outcomes.append(outcome)
                    if on_outcome is not None:
                        on_outcome(outcome)
        return outcomes

    def download_one(self, task: DownloadTask) -> TaskOutcome:
        if not self.registry.claim(task.url):
            logging.debug("already fetched: %s", task.url)
            return TaskOutcome(task, skipped=True)
        self.log(f"Fetching {shorten(task.url)}", LogLevel.INFO)
        try:
            content, nbytes = self._fetch(task)
            asset = self.registry.register(task.url, task.kind)
            self.archive.add(asset.archive_path, content)
        except Exception as e:
            self.log(f"Failed to download {task.url}: {e}", LogLevel.WARNING)
            return TaskOutcome(task, error=str(e))
        finally:
            self.registry.settle(task.url)
        self.log(f"Saved {asset.archive_path}", LogLevel.SUCCESS)
        return TaskOutcome(task, asset=asset, nbytes=nbytes)

    def _fetch(self, task: DownloadTask) -> Tuple[Content, int]:
        if task.kind is AssetKind.STYLESHEET:
            text = self.client.fetch(task.url)
            css_path = archive_path_for(task.url, task.kind)
            rewritten, sub_bytes = self.css.rewrite(text, task.url, css_path)
            return rewritten, content_size(text) + sub_bytes
        if task.kind is AssetKind.SCRIPT:
            text = self.client.fetch(task.url)
            return text, content_size(text)
        data = self.client.fetch(task.url, binary=True)
        return data, content_size(data)


# -------------------- Document rewrite --------------------


def rewrite_document(soup: BeautifulSoup, base_url: str, registry: AssetRegistry) -> int:
    count = 0
    for tag, attr, _ in list(iter_asset_references(soup)):
        ref = tag.get(attr)
        if is_excluded_reference(ref):
            continue
        try:
            absu = resolve_reference(ref, base_url)
        except ResolutionError:
            continue
        asset = registry.get(absu)
        if asset is None:
            continue
        tag[attr] = asset.archive_path
        for rm in STRIP_ON_REWRITE:
            if rm in tag.attrs:
                del tag.attrs[rm]
        count += 1
    # local paths are relative to index.html, not to the original base
    for base in soup.find_all("base"):
        base.decompose()
    return count


# -------------------- Session --------------------


class CrawlSession:
    """One run of the pipeline for a single page URL; not reusable."""

    def __init__(
        self,
        page_url: str,
        *,
        settings: Optional[Settings] = None,
        client=None,
        archive=None,
        reporter: Optional[Reporter] = None,
    ):
        self.page_url = validate_page_url(page_url)
        self.settings = settings or Settings()
        self.reporter = reporter or LoggingReporter()
        if client is None:
            client = RelayClient(
                self.settings.relays,
                timeout=self.settings.timeout,
                session=build_session(self.settings.headers),
            )
        self.client = client
        if archive is None:
            archive = ZipArchive(
                Path(self.settings.output_dir) / archive_name_for(self.page_url)
            )
        self.archive = archive
        self.registry = AssetRegistry()
        self.stats = CrawlStats()
        self.state = SessionState.IDLE
        self._lock = Lock()
        self._seq = itertools.count(1)

    def _log(self, message: str, level: LogLevel = LogLevel.INFO) -> None:
        with self._lock:
            entry = LogEntry(
                id=f"{next(self._seq)}-{uuid.uuid4().hex[:8]}",
                timestamp=time.time(),
                message=message,
                level=level,
            )
            self.reporter.log(entry)

    def _update_stats(self, **changes: int) -> None:
        with self._lock:
            self.stats = replace(self.stats, **changes)
            self.reporter.update_stats(self.stats)

    def _set_state(self, state: SessionState) -> None:
        with self._lock:
            self.state = state
            self.reporter.set_state(state)

    def _on_outcome(self, outcome: TaskOutcome) -> None:
        if outcome.ok:
            self._update_stats(
                assets_downloaded=self.stats.assets_downloaded + 1,
                total_bytes=self.stats.total_bytes + outcome.nbytes,
            )

    def start(self) -> Path:
        if self.state is not SessionState.IDLE:
            raise RuntimeError("a crawl session can only be started once")
        self._set_state(SessionState.CRAWLING)
        self._log(f"Starting crawl for {self.page_url}...")
        try:
            html = self.client.fetch(self.page_url)
            self._log("Main HTML downloaded successfully.", LogLevel.SUCCESS)
            self._update_stats(
                pages_scanned=1, total_bytes=self.stats.total_bytes + content_size(html)
            )
            soup = parse_html(html)
            base_url = effective_base_url(soup, self.page_url)

            tasks = discover_assets(soup, base_url)
            self._update_stats(assets_found=len(tasks))
            self._log(f"Found {len(tasks)} linked assets. Downloading...")

            self._set_state(SessionState.PROCESSING)
            downloader = BoundedDownloader(
                self.client,
                self.registry,
                self.archive,
                self._log,
                self.settings.concurrency,
                wait_timeout=2 * self.settings.timeout * len(self.settings.relays),
            )
            downloader.run(tasks, self._on_outcome)
            rewritten = rewrite_document(soup, base_url, self.registry)
            logging.debug("rewrote %d references", rewritten)
            self.archive.add("index.html", serialize_html(soup))
            self._log("Generated index.html", LogLevel.SUCCESS)

            self._set_state(SessionState.COMPRESSING)
            self._log("Compressing files...")
            path = self.archive.finalize()
        except Exception as e:
            self._log(f"Crawl failed: {e}", LogLevel.ERROR)
            self._set_state(SessionState.ERROR)
            raise
        self._log(f"Archive written: {path}", LogLevel.SUCCESS)
        self._set_state(SessionState.FINISHED)
        return path


def start(page_url: str, **kwargs) -> Path:
    return CrawlSession(page_url, **kwargs).start()


# -------------------- Config loader --------------------

CONFIG_GROUPS = ("general", "network", "relay", "output")


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


def flatten_config(cfg: Dict) -> Dict:
    flat = {k: v for k, v in cfg.items() if not isinstance(v, dict)}
    for g in CONFIG_GROUPS:
        if isinstance(cfg.get(g), dict):
            flat.update(cfg[g])
    # kept apart from the --relay append action so command line relays replace these
    for key in ("relays", "relay"):
        if key in flat:
            relays = flat.pop(key)
            flat["config_relays"] = [relays] if isinstance(relays, str) else list(relays)
    if "user-agent" in flat:
        flat["user_agent"] = flat.pop("user-agent")
    if "output_dir" in flat:
        flat["output_folder"] = flat.pop("output_dir")
    return flat


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Archive a single web page and its assets into a ZIP file.",
        add_help=True,
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("url", help="http(s) URL of the page")
    p.add_argument(
        "output_folder", nargs="?", default=".", help="where the ZIP is written"
    )
    p.add_argument(
        "--timeout", type=float, default=15.0, help="per-request timeout seconds"
    )
    p.add_argument(
        "--concurrency",
        type=int,
        default=DEFAULT_CONCURRENCY,
        help="max downloads in flight",
    )
    p.add_argument(
        "--relay",
        action="append",
        default=None,
        help="relay URL template with {url} or {raw_url}; replaces the defaults",
    )
    p.add_argument(
        "--direct", action="store_true", help="try a direct request before relays"
    )
    p.add_argument(
        "--user-agent", type=str, default=None, help="User-Agent header sent to relays"
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            parser.set_defaults(**flatten_config(cfg))
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    relays = list(args.relay or getattr(args, "config_relays", None) or DEFAULT_RELAYS)
    if args.direct and DIRECT_RELAY not in relays:
        relays.insert(0, DIRECT_RELAY)
    headers = dict(DEFAULT_HEADERS)
    if args.user_agent:
        headers["User-Agent"] = args.user_agent
    return Settings(
        timeout=max(1.0, args.timeout),
        concurrency=max(1, args.concurrency),
        relays=relays,
        output_dir=args.output_folder,
        headers=headers,
    )


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    settings = settings_from_args(args)
    try:
        session = CrawlSession(args.url, settings=settings)
    except InvalidUrlError as e:
        print(f"{e}. Use http:// or https://")
        sys.exit(2)
    except InvalidRelayError as e:
        print(e)
        sys.exit(2)

    print("Reminder: only archive content you own or have permission to copy.")
    try:
        path = session.start()
    except RipperError:
        sys.exit(1)
    print(f"Saved to: {path}")


if __name__ == "__main__":
    main()
