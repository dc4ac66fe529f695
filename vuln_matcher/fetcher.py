# vuln_matcher/fetcher.py
import logging
import os
import queue
import shutil
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import unquote, urlparse

import requests

from . import ecosystem
from .config import Settings
from .errors import (DatabaseError, DownloadFailedError, ExceptionCollection, FeedParseError,
                     StoreClosedError, UpdateError)
from .feed import matches_cpe_filter, open_item_source, parse_cve_item
from .vulndb import VulnerabilityStore

logger = logging.getLogger(__name__)

USER_AGENT = "vuln-matcher"
CHUNK_SIZE = 1024 * 1024
# only application CPEs are relevant when matching dependencies
DEFAULT_CPE_FILTER = "cpe:2.3:a:"


@dataclass(frozen=True)
class FeedFile:
    id: str
    url: str
    last_modified: str | None = None


@dataclass
class DownloadResult:
    feed: FeedFile
    path: Path | None = None
    error: BaseException | None = None
    elapsed_ms: int = 0


@dataclass
class ProcessResult:
    feed: FeedFile
    items: int = 0
    stored: int = 0
    skipped: int = 0
    failed_items: list = field(default_factory=list)
    error: BaseException | None = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.cancelled


class Downloader:
    """Fetches feed files and meta documents over HTTP(S) or from file:// URLs."""

    def __init__(self, settings: Settings, session: requests.Session | None = None):
        self.settings = settings
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)
        if settings.nvd_api_key:
            self.session.headers["apiKey"] = settings.nvd_api_key

    def fetch_file(self, url: str, destination: Path) -> Path:
        parsed = urlparse(url)
        if parsed.scheme == "file":
            source = Path(unquote(parsed.path))
            try:
                shutil.copyfile(source, destination)
            except OSError as e:
                raise DownloadFailedError(f"Unable to copy {url}: {e}") from e
            return destination
        try:
            with self.session.get(url, stream=True, timeout=self.settings.download_timeout) as response:
                response.raise_for_status()
                with open(destination, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
        except requests.exceptions.Timeout as e:
            raise DownloadFailedError(f"Timed out downloading {url}") from e
        except requests.exceptions.RequestException as e:
            raise DownloadFailedError(f"Error downloading {url}: {e}") from e
        except OSError as e:
            raise DownloadFailedError(f"Unable to write {destination}: {e}") from e
        return destination

    def fetch_content(self, url: str) -> str:
        parsed = urlparse(url)
        if parsed.scheme == "file":
            try:
                return Path(unquote(parsed.path)).read_text(encoding="utf-8")
            except OSError as e:
                raise DownloadFailedError(f"Unable to read {url}: {e}") from e
        try:
            response = self.session.get(url, timeout=self.settings.download_timeout)
            response.raise_for_status()
            return response.text
        except requests.exceptions.RequestException as e:
            raise DownloadFailedError(f"Error fetching {url}: {e}") from e

    def fetch_feed_meta(self, url: str) -> dict[str, str]:
        """Reads an NVD ``.meta`` document (``key:value`` lines) into a dict."""
        meta = {}
        for line in self.fetch_content(url).splitlines():
            key, sep, value = line.partition(":")
            if sep:
                meta[key.strip()] = value.strip()
        return meta


def meta_url_for(feed_url: str) -> str:
    for suffix in (".json.gz", ".jsonarray.gz", ".gz", ".json"):
        if feed_url.endswith(suffix):
            return feed_url[: -len(suffix)] + ".meta"
    return feed_url + ".meta"


class UpdatePipeline:
    """Downloads feed files and stores their items, in two chained concurrent stages.

    A pool of download threads places each finished download on a bounded queue;
    a fixed set of processing threads takes results off the queue, streams the
    file's items into the store and commits. A failed download or feed file is
    reported without affecting the others.
    """

    def __init__(self, store: VulnerabilityStore, settings: Settings, downloader: Downloader | None = None,
                 classifier=ecosystem.classify, cpe_filter: str | None = DEFAULT_CPE_FILTER):
        self.store = store
        self.settings = settings
        self.downloader = downloader or Downloader(settings)
        self.classifier = classifier
        self.cpe_filter = cpe_filter
        self._cancelled = threading.Event()
        self._commit_lock = threading.Lock()

    def cancel(self) -> None:
        logger.info("Update cancelled; finishing the records in progress")
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    # --- Freshness ---
    def updates_needed(self, feed_files: list[FeedFile], force: bool = False) -> list[FeedFile]:
        """Feeds whose last_modified differs from the value stored by the previous update."""
        if force:
            return list(feed_files)
        properties = self.store.get_database_properties()
        needed = []
        for feed in feed_files:
            stored = properties.get_feed_last_modified(feed.id)
            if feed.last_modified and stored == feed.last_modified:
                logger.info(f"Feed {feed.id} is up to date (last modified {stored})")
                continue
            needed.append(feed)
        return needed

    def resolve_last_modified(self, feed: FeedFile) -> FeedFile:
        """Fills in last_modified from the feed's .meta document when it is not already known."""
        if feed.last_modified:
            return feed
        try:
            meta = self.downloader.fetch_feed_meta(meta_url_for(feed.url))
        except DownloadFailedError as e:
            logger.warning(f"Could not read meta data for feed {feed.id}: {e}")
            return feed
        return FeedFile(feed.id, feed.url, meta.get("lastModifiedDate"))

    # --- Stages ---
    def _download(self, feed: FeedFile) -> DownloadResult:
        if self.cancelled:
            return DownloadResult(feed, error=UpdateError(f"Download of {feed.id} cancelled"))
        start = time.monotonic()
        name = Path(urlparse(feed.url).path).name or f"{feed.id}.json"
        try:
            fd, tmp = tempfile.mkstemp(prefix="vulnmatch-", suffix=f"-{name}", dir=self.settings.temp_directory)
            os.close(fd)
        except OSError as e:
            return DownloadResult(feed, error=DownloadFailedError(f"Unable to create a temporary file for {feed.id}: {e}"))
        path = Path(tmp)
        try:
            logger.info(f"Download Started for NVD feed {feed.id}")
            self.downloader.fetch_file(feed.url, path)
        except DownloadFailedError as e:
            logger.warning(f"Download failed for NVD feed {feed.id}: {e}")
            path.unlink(missing_ok=True)
            return DownloadResult(feed, error=e)
        except BaseException:
            path.unlink(missing_ok=True)
            raise
        elapsed = int((time.monotonic() - start) * 1000)
        logger.info(f"Download Complete for NVD feed {feed.id} ({elapsed} ms)")
        return DownloadResult(feed, path=path, elapsed_ms=elapsed)

    def process(self, download: DownloadResult) -> ProcessResult:
        """Streams one downloaded feed file into the store. The temp file is always removed."""
        feed = download.feed
        result = ProcessResult(feed)
        if download.error is not None:
            result.error = download.error
            return result
        start = time.monotonic()
        try:
            with open_item_source(download.path, self.settings.feed_array_field) as source:
                for item in source:
                    if self.cancelled:
                        result.cancelled = True
                        break
                    result.items += 1
                    self._store_item(item, result)
            with self._commit_lock:
                self.store.commit()
                if result.succeeded and feed.last_modified:
                    self.store.get_database_properties().save_feed_last_modified(feed.id, feed.last_modified)
                    self.store.commit()
        except FeedParseError as e:
            logger.warning(f"Unable to process NVD feed {feed.id}: {e}")
            result.error = UpdateError(f"Feed {feed.id} could not be parsed: {e}")
            result.error.__cause__ = e
        except DatabaseError as e:
            result.error = e
        finally:
            if download.path is not None:
                download.path.unlink(missing_ok=True)
        elapsed = int((time.monotonic() - start) * 1000)
        logger.info(f"Processing Complete for NVD feed {feed.id}: {result.stored} stored, "
                    f"{len(result.failed_items)} failed ({elapsed} ms)")
        return result

    def _store_item(self, item: dict, result: ProcessResult) -> None:
        cve = item.get("cve", item)
        cve_id = cve.get("id") if isinstance(cve, dict) else None
        cve_id = str(cve_id) if cve_id else "<unknown>"
        try:
            if not matches_cpe_filter(item, self.cpe_filter):
                result.skipped += 1
                return
            vulnerability = parse_cve_item(item)
            self.store.update_vulnerability(vulnerability, self.classifier(vulnerability))
            result.stored += 1
        except StoreClosedError:
            raise
        except (FeedParseError, DatabaseError) as e:
            logger.warning(f"Failed to store {cve_id} from NVD feed {result.feed.id}: {e}")
            result.failed_items.append(cve_id)

    # --- Orchestration ---
    def run(self, feed_files: list[FeedFile], force: bool = False) -> list[ProcessResult]:
        """Updates the store from the given feeds.

        Returns one ProcessResult per feed that needed updating. Raises an
        ExceptionCollection if any feed failed; ``fatal`` is set when the store itself failed.
        """
        self.store.open()
        feeds = self.updates_needed(feed_files, force=force)
        if not feeds:
            logger.info("NVD data is up to date")
            return []

        channel: queue.Queue = queue.Queue(maxsize=self.settings.processing_queue_size)
        results: list[ProcessResult] = []
        results_lock = threading.Lock()

        def worker():
            while True:
                download = channel.get()
                try:
                    if download is None:
                        return
                    try:
                        outcome = self.process(download)
                    except Exception as e:
                        logger.error(f"Unexpected error processing NVD feed {download.feed.id}: {e}", exc_info=True)
                        outcome = ProcessResult(download.feed, error=UpdateError(f"Feed {download.feed.id} failed: {e}"))
                        outcome.error.__cause__ = e
                    with results_lock:
                        results.append(outcome)
                finally:
                    channel.task_done()

        workers = [threading.Thread(target=worker, name=f"nvd-process-{i}", daemon=True)
                   for i in range(self.settings.processing_threads)]
        for thread in workers:
            thread.start()

        executor = ThreadPoolExecutor(max_workers=self.settings.download_threads, thread_name_prefix="nvd-download")
        try:
            futures = [executor.submit(self._download, feed) for feed in feeds]
            for future in as_completed(futures):
                channel.put(future.result())
        except BaseException:
            # stop queued downloads and let the processing threads finish the current record
            self.cancel()
            executor.shutdown(wait=False, cancel_futures=True)
            raise
        else:
            executor.shutdown()
        finally:
            for _ in workers:
                channel.put(None)
            for thread in workers:
                thread.join()

        errors = ExceptionCollection(message="One or more NVD feeds failed to update")
        for outcome in results:
            if outcome.error is not None:
                errors.add_exception(outcome.error, fatal=isinstance(outcome.error, DatabaseError))
        if not self.cancelled:
            with self._commit_lock:
                self.store.get_database_properties().save_last_checked()
                self.store.commit()
        if errors.exceptions:
            raise errors
        return results


def feeds_from_settings(settings: Settings) -> list[FeedFile]:
    return [FeedFile(feed_id, url) for feed_id, url in sorted(settings.feed_urls.items())]
