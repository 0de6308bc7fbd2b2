"""Single-flight model loader — one shared load, retried from scratch on failure.

State machine:

  NOT_STARTED --ensure_loaded--> IN_FLIGHT --ok--> LOADED
                                     |
                                     +--error/cancel--> FAILED --ensure_loaded--> IN_FLIGHT

Callers that arrive while a load is IN_FLIGHT await the same task. The
backend's blocking load() runs in the default executor; its download
callbacks fire on that worker thread and are marshalled back onto the
event loop before they touch any reporter. Load progress goes to every
caller still waiting, so a caller that gives up stops hearing about it.
"""

import asyncio
import enum
import logging
from typing import List, Optional, Tuple

from .errors import LoadError
from .progress import BOOTSTRAP, DOWNLOAD, FINALIZE, ProgressReporter, Stage
from .types import MODEL_STATUS, EventSink, ModelHandle, discard_event

log = logging.getLogger("model_loader")


class LoadState(enum.Enum):
    NOT_STARTED = "not_started"
    IN_FLIGHT = "in_flight"
    LOADED = "loaded"
    FAILED = "failed"


class ModelLoader:
    """Memoizes the generation capability for the lifetime of the process."""

    def __init__(self, backend, emit: EventSink = discard_event):
        self.backend = backend
        self._emit = emit
        self._state = LoadState.NOT_STARTED
        self._task: Optional[asyncio.Task] = None
        self._handle: Optional[ModelHandle] = None
        self._listeners: List[ProgressReporter] = []
        self._last: Optional[Tuple[Stage, float, str]] = None
        self.attempts = 0

    @property
    def state(self) -> LoadState:
        return self._state

    @property
    def handle(self) -> Optional[ModelHandle]:
        return self._handle

    async def ensure_loaded(self, progress: Optional[ProgressReporter] = None) -> ModelHandle:
        """Return the loaded model, starting or joining a load if needed.

        While this caller waits, its reporter receives the load's progress.
        A caller joining mid-load first gets the latest step, then follows
        along with everyone else.

        Raises:
            LoadError: the attempt this caller awaited failed.
        """
        if self._state is LoadState.LOADED:
            return self._handle

        if progress is not None:
            self._listeners.append(progress)
        try:
            if self._state is not LoadState.IN_FLIGHT:
                # NOT_STARTED or FAILED: a fresh attempt
                self.attempts += 1
                self._state = LoadState.IN_FLIGHT
                self._last = None
                self._task = asyncio.ensure_future(self._load())
                self._task.add_done_callback(self._on_load_done)
                log.info("Model load #%d started", self.attempts)
            else:
                log.debug("Joining in-flight model load #%d", self.attempts)
                if progress is not None and self._last is not None:
                    progress.report(*self._last)

            # Shielded so one caller giving up never cancels everybody's load
            return await asyncio.shield(self._task)
        finally:
            if progress is not None:
                self._listeners.remove(progress)

    def _report(self, stage: Stage, percent: float, label: str):
        self._last = (stage, percent, label)
        for reporter in list(self._listeners):
            reporter.report(stage, percent, label)

    async def _load(self) -> ModelHandle:
        loop = asyncio.get_running_loop()
        name = getattr(self.backend, "model_id", "model")

        def on_download(loaded: int, total: int, label: str = ""):
            loop.call_soon_threadsafe(self._on_download, loaded, total, label)

        try:
            self._emit(MODEL_STATUS, {"status": "loading", "detail": f"Loading {name}"})
            self._report(BOOTSTRAP, 5, "Loading model runtime...")

            self._emit(MODEL_STATUS, {"status": "downloading", "detail": f"Downloading {name}"})
            self._report(DOWNLOAD, DOWNLOAD.start, "Downloading model...")

            handle = await loop.run_in_executor(None, self.backend.load, on_download)
        except Exception as e:
            self._state = LoadState.FAILED
            self._task = None
            log.error("Model load #%d failed: %s", self.attempts, e)
            if isinstance(e, LoadError):
                raise
            raise LoadError(f"Model load failed: {e}") from e

        self._handle = handle
        self._state = LoadState.LOADED
        self._task = None
        self._report(FINALIZE, FINALIZE.end, "Model ready")
        self._emit(MODEL_STATUS, {"status": "ready", "detail": handle.name or name})
        log.info("Model ready: %s (%d Hz)", handle.name or name, handle.sample_rate)
        return handle

    def _on_download(self, loaded: int, total: int, label: str):
        """Map a (possibly noisy) byte count onto the download stage."""
        if self._state is not LoadState.IN_FLIGHT:
            return
        text = f"Downloading model: {label}" if label else "Downloading model..."
        if total and total > 0:
            self._report(DOWNLOAD, DOWNLOAD.at(loaded / total), text)
        else:
            # Size unknown: hold the percent, refresh the label
            held = self._last[1] if self._last else DOWNLOAD.start
            self._report(DOWNLOAD, held, text)

    def _on_load_done(self, task: asyncio.Task):
        # Runs on every exit, including a cancel before _load ever started
        if task.cancelled():
            if self._task is task:
                self._state = LoadState.FAILED
                self._task = None
                log.warning("Model load #%d cancelled", self.attempts)
            return
        # Callers see the error through shield(); this stops the orphaned-task warning
        task.exception()
