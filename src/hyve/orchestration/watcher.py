"""Re-run dependent services' pre-run steps when a trigger service's sources change.

Triggers are services with `watch_files`; dependents are services with a
`pre_run` and `pre_run_deps`. Each trigger is watched with a watchdog observer;
when the observer cannot watch a trigger directory, a stat-polling watcher
takes over for it. Changes are debounced per trigger: a burst of events yields
one reaction once the burst has been quiet for the debounce window.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..config import OrchestratorSettings, ServiceSpec
from .supervisor import ServiceSupervisor


logger = logging.getLogger(__name__)


IGNORED_DIRS = frozenset(
    {".git", ".hg", ".svn", "node_modules", "vendor", "dist", "build", ".next", "target", "__pycache__", ".venv", ".hyve"}
)

_WATCHED_EVENT_TYPES = frozenset({"created", "modified", "deleted", "moved"})


def glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """Translate a path glob (`**`, `*`, `?`, `[...]`, `{a,b}`) into an anchored regex.

    `*` and `?` never cross a `/`; `**/` matches zero or more directories.
    """
    p = str(pattern or "").strip().replace("\\", "/")
    if p.startswith("./"):
        p = p[2:]
    i, n = 0, len(p)
    out: List[str] = []
    brace_depth = 0
    while i < n:
        c = p[i]
        if c == "*":
            if p.startswith("**", i):
                i += 2
                if i < n and p[i] == "/":
                    i += 1
                    out.append("(?:.*/)?")
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            j = p.find("]", i + 1)
            if j == -1:
                out.append(re.escape(c))
            else:
                body = p[i + 1 : j]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body.replace(chr(92), chr(92) * 2)}]")
                i = j
        elif c == "{":
            brace_depth += 1
            out.append("(?:")
        elif c == "}" and brace_depth:
            brace_depth -= 1
            out.append(")")
        elif c == "," and brace_depth:
            out.append("|")
        else:
            out.append(re.escape(c))
        i += 1
    out.extend(")" * brace_depth)
    return re.compile("^" + "".join(out) + "$")


def _is_ignored(rel_parts: Sequence[str]) -> bool:
    return any(part in IGNORED_DIRS for part in rel_parts[:-1])


class GlobMatcher:
    def __init__(self, root: Path, patterns: Iterable[str]) -> None:
        self.root = Path(root)
        self.patterns = tuple(patterns)
        self._regexes = [glob_to_regex(p) for p in self.patterns]

    def relative(self, path: str) -> Optional[str]:
        try:
            rel = Path(path).resolve().relative_to(self.root.resolve())
        except (ValueError, OSError):
            return None
        return rel.as_posix()

    def matches(self, path: str) -> bool:
        rel = self.relative(path)
        if not rel or rel == ".":
            return False
        if _is_ignored(rel.split("/")):
            return False
        return any(rx.match(rel) for rx in self._regexes)


class Debouncer:
    """Trailing-edge debounce per key; events inside the window reschedule the pending call."""

    def __init__(self, window_s: float, callback: Callable[[str], None]) -> None:
        self._window_s = max(0.0, float(window_s))
        self._callback = callback
        self._lock = threading.Lock()
        self._timers: Dict[str, threading.Timer] = {}
        self._run_locks: Dict[str, threading.Lock] = {}
        self._closed = False

    def trigger(self, key: str) -> None:
        with self._lock:
            if self._closed:
                return
            pending = self._timers.get(key)
            if pending is not None:
                pending.cancel()
            t = threading.Timer(self._window_s, self._fire, args=(key,))
            t.daemon = True
            self._timers[key] = t
            t.start()

    def _fire(self, key: str) -> None:
        with self._lock:
            if self._closed:
                return
            # A superseded timer that fired before cancel() took effect.
            if self._timers.get(key) is not threading.current_thread():
                return
            self._timers.pop(key, None)
            run_lock = self._run_locks.setdefault(key, threading.Lock())
        # One reaction at a time per key; a burst during a reaction queues one more.
        with run_lock:
            try:
                self._callback(key)
            except Exception:
                logger.exception("Watch reaction for %s failed", key)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            for t in self._timers.values():
                t.cancel()
            self._timers.clear()


class _TriggerEventHandler(FileSystemEventHandler):
    def __init__(self, trigger: str, matcher: GlobMatcher, on_change: Callable[[str, str], None]) -> None:
        super().__init__()
        self._trigger = trigger
        self._matcher = matcher
        self._on_change = on_change

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _WATCHED_EVENT_TYPES:
            return
        paths = [str(event.src_path)]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(str(dest))
        for path in paths:
            if self._matcher.matches(path):
                self._on_change(self._trigger, path)
                return


class PollingWatcher:
    """Stat-snapshot watcher used when the native observer is unavailable."""

    def __init__(
        self,
        trigger: str,
        matcher: GlobMatcher,
        on_change: Callable[[str, str], None],
        *,
        interval_s: float = 1.0,
    ) -> None:
        self._trigger = trigger
        self._matcher = matcher
        self._on_change = on_change
        self._interval_s = max(0.05, float(interval_s))
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._snapshot: Dict[str, Tuple[int, int]] = {}

    def scan(self) -> Dict[str, Tuple[int, int]]:
        out: Dict[str, Tuple[int, int]] = {}
        root = str(self._matcher.root)
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if d not in IGNORED_DIRS]
            for fname in filenames:
                path = os.path.join(dirpath, fname)
                if not self._matcher.matches(path):
                    continue
                try:
                    st = os.stat(path)
                except OSError:
                    continue
                out[path] = (int(st.st_mtime_ns), int(st.st_size))
        return out

    def poll(self) -> List[str]:
        """Compare against the previous snapshot and report changed paths."""
        current = self.scan()
        previous = self._snapshot
        self._snapshot = current
        changed = [p for p, sig in current.items() if previous.get(p) != sig]
        changed.extend(p for p in previous if p not in current)
        for path in changed:
            self._on_change(self._trigger, path)
        return changed

    def start(self) -> None:
        self._snapshot = self.scan()
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"hyve-poll-{self._trigger}", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.wait(self._interval_s):
            try:
                self.poll()
            except Exception:
                logger.exception("Polling watcher for %s failed", self._trigger)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
        self._thread = None


@dataclass(frozen=True)
class WatchPlan:
    triggers: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    dependents: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def empty_reason(self) -> Optional[str]:
        if not self.triggers:
            return "No services declare watch_files; nothing to watch"
        if not any(self.dependents.get(t) for t in self.triggers):
            return "No services declare pre_run_deps on a watched service; nothing to re-run"
        return None

    @staticmethod
    def from_specs(specs: Mapping[str, ServiceSpec], requested: Sequence[str] = ()) -> "WatchPlan":
        names = [n for n in requested if n in specs] if requested else list(specs.keys())
        triggers = {n: specs[n].watch_globs for n in names if specs[n].watch_globs}
        dependents: Dict[str, List[str]] = {t: [] for t in triggers}
        for n in names:
            spec = specs[n]
            if not spec.prepare_command or not spec.prepare_triggers:
                continue
            for t in spec.prepare_triggers:
                if t in dependents:
                    dependents[t].append(n)
        return WatchPlan(triggers=triggers, dependents=dependents)


class WatchReactor:
    def __init__(
        self,
        *,
        supervisor: ServiceSupervisor,
        plan: WatchPlan,
        service_dir: Callable[[str], Path],
        settings: Optional[OrchestratorSettings] = None,
        observer_factory: Callable[[], object] = Observer,
        poll_interval_s: float = 1.0,
    ) -> None:
        self._supervisor = supervisor
        self._plan = plan
        self._service_dir = service_dir
        self._settings = settings or OrchestratorSettings()
        self._observer_factory = observer_factory
        self._poll_interval_s = poll_interval_s
        self._debouncer = Debouncer(self._settings.watch_debounce_s, self.react)
        self._observer: Optional[object] = None
        self._pollers: List[PollingWatcher] = []
        self.watched: Dict[str, str] = {}  # trigger -> "native"|"polling"

    @property
    def plan(self) -> WatchPlan:
        return self._plan

    def _on_change(self, trigger: str, path: str) -> None:
        logger.debug("Change in %s: %s", trigger, path)
        self._debouncer.trigger(trigger)

    def _start_observer(self) -> Optional[object]:
        try:
            observer = self._observer_factory()
            observer.start()  # type: ignore[attr-defined]
        except (OSError, RuntimeError) as e:
            logger.warning("Native file watcher unavailable (%s); falling back to polling", e)
            return None
        return observer

    def _start_polling(self, trigger: str, matcher: GlobMatcher) -> None:
        poller = PollingWatcher(trigger, matcher, self._on_change, interval_s=self._poll_interval_s)
        poller.start()
        self._pollers.append(poller)
        self.watched[trigger] = "polling"

    def start(self) -> bool:
        """Begin watching. Returns False (and logs why) when there is nothing to react to."""
        reason = self._plan.empty_reason
        if reason:
            logger.warning("Watch mode: %s", reason)
            return False

        self._observer = self._start_observer()
        for trigger, globs in self._plan.triggers.items():
            if not self._plan.dependents.get(trigger):
                continue
            root = self._service_dir(trigger)
            if not root.is_dir():
                logger.warning("Watch mode: %s directory not found (%s); skipping", trigger, root)
                continue
            matcher = GlobMatcher(root, globs)
            if self._observer is None:
                self._start_polling(trigger, matcher)
                continue
            handler = _TriggerEventHandler(trigger, matcher, self._on_change)
            try:
                self._observer.schedule(handler, str(root), recursive=True)  # type: ignore[attr-defined]
            except (OSError, RuntimeError) as e:
                logger.warning("Cannot watch %s natively (%s); falling back to polling", root, e)
                self._start_polling(trigger, matcher)
                continue
            self.watched[trigger] = "native"

        for trigger, mode in self.watched.items():
            logger.info(
                "Watching %s (%s) -> re-run pre-run for: %s",
                trigger,
                mode,
                ", ".join(self._plan.dependents.get(trigger, [])),
            )
        if not self.watched:
            logger.warning("Watch mode: no trigger directories could be watched")
            self.stop()
            return False
        return True

    def react(self, trigger: str) -> List[Tuple[str, bool]]:
        """Gate on the trigger's health, then run every dependent's pre-run in turn."""
        dependents = list(self._plan.dependents.get(trigger, []))
        if not dependents:
            return []
        logger.info("%s changed; waiting for it to be healthy...", trigger)
        if not self._supervisor.wait_healthy(trigger, self._settings.service_health_timeout_s):
            logger.warning("%s did not become healthy; skipping pre-run for %s", trigger, ", ".join(dependents))
            return []

        results: List[Tuple[str, bool]] = []
        for name in dependents:
            try:
                ok = self._supervisor.run_prepare(name)
            except Exception:
                logger.exception("Pre-run for %s raised", name)
                ok = False
            results.append((name, ok))
        return results

    def run_forever(self, stop: Optional[threading.Event] = None) -> None:
        stop_event = stop or threading.Event()
        try:
            while not stop_event.wait(0.5):
                pass
        finally:
            self.stop()

    def stop(self) -> None:
        self._debouncer.close()
        for poller in self._pollers:
            poller.stop()
        self._pollers.clear()
        if self._observer is not None:
            try:
                self._observer.stop()  # type: ignore[attr-defined]
                self._observer.join(timeout=5.0)  # type: ignore[attr-defined]
            except RuntimeError:
                pass
            self._observer = None
