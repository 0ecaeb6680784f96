from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
import copy, json, os, tempfile, threading, time
from errors import CacheCorrupt, NetworkError
from logging_config import setup_logger
from operation import EventStream
from options import Options
from progress_parser import Advisory

logger = setup_logger(__name__)

CACHE_FORMAT_VERSION = 1
RETRY_AFTER_FAILURE = 60


@dataclass
class CacheEntry:
    topic: str
    payload: object
    fetched_at: float
    ttl: float
    version: int = CACHE_FORMAT_VERSION

    def is_stale(self, now) -> bool:
        return now - self.fetched_at >= self.ttl

    def age(self, now) -> float:
        return max(0.0, now - self.fetched_at)

    def to_dict(self):
        return {"topic": self.topic, "fetched_at": self.fetched_at, "ttl": self.ttl,
                "payload": self.payload, "version": self.version}

    @classmethod
    def from_dict(cls, data, topic):
        if not isinstance(data, dict):
            raise CacheCorrupt(f"{topic}: expected an object")
        if data.get("version") != CACHE_FORMAT_VERSION:
            raise CacheCorrupt(f"{topic}: unsupported cache version {data.get('version')!r}")
        if data.get("topic") != topic or "payload" not in data:
            raise CacheCorrupt(f"{topic}: topic mismatch or missing payload")
        fetched_at, ttl = data.get("fetched_at"), data.get("ttl")
        if not isinstance(fetched_at, (int, float)) or not isinstance(ttl, (int, float)):
            raise CacheCorrupt(f"{topic}: invalid timestamps")
        return cls(topic, data["payload"], float(fetched_at), float(ttl))


class _Flight:
    def __init__(self):
        self.done = threading.Event()
        self.entry = None
        self.error = None


class CacheManager:
    """Read-through cache of remote metadata, one JSON file per topic.

    ``get`` never waits on the network while any entry exists. Stale entries are
    served as-is and trigger a single background refresh. Refresh failures keep
    the old entry and are reported as ``Advisory`` events to subscribers.
    """

    def __init__(self, cache_dir=None, clock=time.time, retry_after=RETRY_AFTER_FAILURE):
        self.cache_dir = Path(cache_dir or Options.cache_dir)
        self.clock = clock
        self.retry_after = retry_after
        self._topics = {}
        self._entries = {}
        self._inflight = {}
        self._last_failure = {}
        self._subscribers = []
        self._lock = threading.Lock()

    def register(self, topic, fetcher, ttl=None):
        ttl = Options.ttl_for(topic) if ttl is None else ttl
        with self._lock:
            self._topics[topic] = (fetcher, ttl)
        logger.debug(f"Registered cache topic '{topic}' (ttl {ttl}s)")

    def topics(self):
        with self._lock:
            return list(self._topics)

    def path_for(self, topic) -> Path:
        return self.cache_dir / f"{topic}.json"

    def subscribe(self) -> EventStream:
        stream = EventStream("cache")
        with self._lock:
            self._subscribers.append(stream)
        return stream

    def _publish(self, event):
        with self._lock:
            subscribers = list(self._subscribers)
        for stream in subscribers:
            stream.put(event)

    def _fetcher(self, topic):
        with self._lock:
            registration = self._topics.get(topic)
        if registration is None:
            raise KeyError(f"Unknown cache topic: {topic}")
        return registration

    def get(self, topic) -> CacheEntry:
        self._fetcher(topic)
        entry = self._cached_entry(topic)
        if entry is None:
            logger.info(f"No cached data for '{topic}', fetching")
            return self.refresh(topic)
        now = self.clock()
        if entry.is_stale(now) and self._may_retry(topic, now):
            self._schedule_refresh(topic)
        return self._copy(entry)

    def peek(self, topic):
        """Cached entry without any fetching, or None."""
        entry = self._cached_entry(topic)
        return self._copy(entry) if entry else None

    def _cached_entry(self, topic):
        with self._lock:
            entry = self._entries.get(topic)
        if entry is not None:
            return entry
        entry = self._load(topic)
        if entry is not None:
            with self._lock:
                entry = self._entries.setdefault(topic, entry)
        return entry

    def _may_retry(self, topic, now) -> bool:
        failed_at = self._last_failure.get(topic)
        return failed_at is None or now - failed_at >= self.retry_after

    def _load(self, topic):
        path = self.path_for(topic)
        if not path.exists():
            return None
        try:
            with open(path, encoding='utf-8') as file:
                return CacheEntry.from_dict(json.load(file), topic)
        except (OSError, ValueError, CacheCorrupt) as e:
            logger.warning(f"{CacheCorrupt.__name__}: ignoring unreadable cache file {path}: {e}")
            return None

    def _write(self, entry: CacheEntry):
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        temp_path = None
        try:
            with tempfile.NamedTemporaryFile(dir=self.cache_dir, prefix=f".{entry.topic}.", suffix=".tmp",
                                             delete=False, mode='w', encoding='utf-8') as temp_file:
                temp_path = temp_file.name
                json.dump(entry.to_dict(), temp_file, ensure_ascii=False)
                temp_file.flush()
                os.fsync(temp_file.fileno())
            os.replace(temp_path, self.path_for(entry.topic))
        except (OSError, TypeError, ValueError):
            if temp_path and os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    def _begin_flight(self, topic):
        with self._lock:
            flight = self._inflight.get(topic)
            if flight is not None:
                return flight, False
            flight = _Flight()
            self._inflight[topic] = flight
            return flight, True

    def refresh(self, topic) -> CacheEntry:
        """Fetch now. Concurrent callers for one topic share a single fetch. Raises NetworkError on failure."""
        self._fetcher(topic)
        flight, leader = self._begin_flight(topic)
        if leader:
            self._run_flight(topic, flight)
        else:
            logger.debug(f"Joining in-flight refresh of '{topic}'")
            flight.done.wait()
        if flight.error is not None:
            raise flight.error
        return self._copy(flight.entry)

    def _schedule_refresh(self, topic):
        flight, leader = self._begin_flight(topic)
        if not leader:
            return
        logger.info(f"Cache '{topic}' is stale, refreshing in background")
        threading.Thread(target=self._run_flight, args=(topic, flight), daemon=True,
                         name=f"cache-refresh:{topic}").start()

    def _run_flight(self, topic, flight):
        fetcher, ttl = self._fetcher(topic)
        try:
            payload = fetcher()
            entry = CacheEntry(topic, copy.deepcopy(payload), self.clock(), ttl)
            try:
                self._write(entry)
            except (OSError, TypeError, ValueError) as e:
                logger.error(f"Could not persist cache '{topic}': {e}")
            with self._lock:
                self._entries[topic] = entry
            self._last_failure.pop(topic, None)
            flight.entry = entry
            logger.info(f"Refreshed cache '{topic}'")
        except Exception as e:
            flight.error = e if isinstance(e, NetworkError) else NetworkError(f"Refreshing '{topic}' failed: {e}")
            self._last_failure[topic] = self.clock()
            logger.warning(f"Cache refresh for '{topic}' failed: {e}")
            self._publish(Advisory(topic, str(flight.error)))
        finally:
            with self._lock:
                self._inflight.pop(topic, None)
            flight.done.set()

    def wait_idle(self, topic, timeout=None) -> bool:
        with self._lock:
            flight = self._inflight.get(topic)
        return True if flight is None else flight.done.wait(timeout)

    def invalidate(self, topic):
        with self._lock:
            self._entries.pop(topic, None)
        self._last_failure.pop(topic, None)
        try:
            self.path_for(topic).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove cache file for '{topic}': {e}")

    @staticmethod
    def _copy(entry: CacheEntry) -> CacheEntry:
        return CacheEntry(entry.topic, copy.deepcopy(entry.payload), entry.fetched_at, entry.ttl, entry.version)
