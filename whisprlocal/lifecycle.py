"""
Model lifecycle manager

Owns managed storage and the single active recognizer handle:
- Download with progress tracking (one session at a time)
- Atomic install of primary artifacts and Core ML sidecars
- Activation / unload of exactly one model
- Deletion guarded against the active model

State changes are published through one listener channel; consumers can also
poll state, progress and last_error.
"""

import gc
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

import requests

from whisprlocal.catalog import ModelDescriptor, SizeClass
from whisprlocal.config import DownloadConfig, TranscriptionConfig
from whisprlocal.download import (
    DownloadSession,
    DownloadState,
    extract_archive,
    fetch,
    locate_bundle,
    validate_bundle,
)
from whisprlocal.errors import (
    ActivationFailure,
    AlreadyInProgress,
    CannotDeleteActive,
    DownloadCancelled,
    ModelNotFound,
    ValidationWarning,
)
from whisprlocal.recognizer import SpeechRecognizer
from whisprlocal.storage import InstalledModel, ModelStorage, discard

logger = logging.getLogger(__name__)

PROGRESS_EVENT_STEP = 0.01


@dataclass(frozen=True)
class LifecycleEvent:
    """Notification published on every lifecycle change"""
    kind: str
    state: DownloadState
    progress: float
    model: Optional[InstalledModel] = None
    error: Optional[Exception] = None


EventCallback = Callable[[LifecycleEvent], None]


class ModelLifecycleManager:
    """
    Downloads, installs, activates and deletes whisper.cpp models

    Thread model:
    - downloads run on one worker thread; a second download() while one is
      in flight is rejected with AlreadyInProgress
    - activations run on another single worker, so back-to-back requests
      are serialized
    - the handle lock serializes activate/unload/delete against transcribe
      calls that borrow the handle through lend_handle()
    """

    def __init__(
        self,
        storage: ModelStorage,
        recognizer: SpeechRecognizer,
        download_config: Optional[DownloadConfig] = None,
        transcription_config: Optional[TranscriptionConfig] = None,
        http: Optional[requests.Session] = None,
        on_event: Optional[EventCallback] = None,
    ):
        """
        Initialize manager

        Args:
            storage: Managed model storage
            recognizer: Recognizer used to load/unload handles
            download_config: Download settings
            transcription_config: Unload settings (release passes, settle delay)
            http: HTTP session for downloads (default: new requests.Session)
            on_event: Listener for lifecycle events
        """
        self.storage = storage
        self.recognizer = recognizer
        self.download_config = download_config or DownloadConfig()
        self.transcription_config = transcription_config or TranscriptionConfig()
        self.http = http if http is not None else requests.Session()

        self._lock = threading.RLock()
        self._notify_lock = threading.Lock()
        self._handle_lock = threading.RLock()

        self._listeners: List[EventCallback] = []
        if on_event is not None:
            self._listeners.append(on_event)

        self._session: Optional[DownloadSession] = None
        self._state = DownloadState.IDLE
        self._progress = 0.0
        self._last_emitted_progress = 0.0
        self._last_error: Optional[Exception] = None
        self._last_warning: Optional[ValidationWarning] = None

        self._handle: Any = None
        self._active: Optional[InstalledModel] = None

        self._download_executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="model-download"
        )
        self._activation_executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="model-activate"
        )

        self.storage.ensure_dirs()
        self.storage.purge_staging()

    # Observation

    def subscribe(self, callback: EventCallback) -> None:
        with self._notify_lock:
            self._listeners.append(callback)

    @property
    def state(self) -> DownloadState:
        with self._lock:
            return self._state

    @property
    def progress(self) -> float:
        with self._lock:
            return self._progress

    @property
    def last_error(self) -> Optional[Exception]:
        with self._lock:
            return self._last_error

    @property
    def last_warning(self) -> Optional[ValidationWarning]:
        with self._lock:
            return self._last_warning

    @property
    def is_downloading(self) -> bool:
        with self._lock:
            return self._session is not None

    @property
    def active_model(self) -> Optional[InstalledModel]:
        return self._active

    def status(self) -> Dict[str, Any]:
        """Snapshot for status displays"""
        with self._lock:
            session = self._session
            return {
                "state": self._state.value,
                "progress": round(self._progress, 4),
                "downloading": session.descriptor.filename if session else None,
                "active": self._active.filename if self._active else None,
                "last_error": str(self._last_error) if self._last_error else None,
                "last_warning": str(self._last_warning) if self._last_warning else None,
            }

    def _emit(self, kind: str, model: Optional[InstalledModel] = None, error: Optional[Exception] = None) -> None:
        with self._lock:
            event = LifecycleEvent(kind, self._state, self._progress, model, error)
        with self._notify_lock:
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception as e:
                    logger.error(f"Error in lifecycle listener: {e}")

    def _transition(
        self,
        session: Optional[DownloadSession],
        state: DownloadState,
        progress: Optional[float] = None,
        error: Optional[Exception] = None,
    ) -> None:
        with self._lock:
            self._state = state
            if progress is not None:
                self._progress = progress
                self._last_emitted_progress = progress
            if session is not None:
                session.state = state
                session.progress = self._progress
        logger.debug(f"Download state -> {state.value}")
        self._emit("state", error=error)

    def _report_progress(self, session: DownloadSession, fraction: float) -> None:
        with self._lock:
            self._progress = fraction
            session.progress = fraction
            step = abs(fraction - self._last_emitted_progress)
            if step < PROGRESS_EVENT_STEP and fraction not in (0.0, 1.0):
                return
            self._last_emitted_progress = fraction
        self._emit("progress")

    # Storage queries

    def list_installed(self) -> Set[InstalledModel]:
        """Rescan managed storage"""
        return self.storage.scan()

    def get_last_activated(self) -> Optional[InstalledModel]:
        """Model named by the persisted pointer, if it is still installed"""
        filename = self.storage.read_pointer()
        if not filename:
            return None
        return self.storage.find(filename)

    # Download

    def download(self, descriptor: ModelDescriptor) -> "Future[InstalledModel]":
        """
        Start downloading a model

        Returns:
            Future resolving to the InstalledModel, or failing with the
            error that stopped the session

        Raises:
            AlreadyInProgress: If another download session is running
        """
        with self._lock:
            if self._session is not None:
                raise AlreadyInProgress(
                    f"Already downloading {self._session.descriptor.filename}"
                )
            session = DownloadSession(descriptor=descriptor)
            self._session = session
            self._last_error = None
            self._last_warning = None

        logger.info(f"Downloading {descriptor.filename} ({descriptor.size_class.value})")
        self._transition(session, DownloadState.DOWNLOADING_PRIMARY, progress=0.0)
        return self._download_executor.submit(self._run_download, session)

    def cancel_download(self) -> bool:
        """
        Request cancellation of the in-flight session

        The worker stops at the next chunk or step boundary, purges staging
        and returns to Idle.

        Returns:
            True if a session was running
        """
        with self._lock:
            session = self._session
        if session is None:
            return False
        session.cancel_event.set()
        logger.info(f"Cancelling download of {session.descriptor.filename}")
        return True

    def _run_download(self, session: DownloadSession) -> InstalledModel:
        descriptor = session.descriptor
        try:
            self._relieve_memory_pressure(descriptor)
            primary_path = self._download_primary(session)

            sidecar_path = None
            if self.download_config.fetch_sidecar:
                sidecar_path = self._download_sidecar(session)

            model = InstalledModel(primary_path=primary_path, sidecar_path=sidecar_path)
            self._transition(session, DownloadState.COMPLETED, progress=1.0)
            logger.info(f"Download complete: {descriptor.filename}")
            self._emit("installed", model=model)
            return model

        except DownloadCancelled as e:
            session.error = e
            self.storage.purge_staging()
            self._transition(session, DownloadState.CANCELLED, progress=0.0, error=e)
            logger.info(f"Download of {descriptor.filename} cancelled")
            raise

        except Exception as e:
            session.error = e
            with self._lock:
                self._last_error = e
            logger.error(f"Download of {descriptor.filename} failed: {e}")
            self._transition(session, DownloadState.FAILED, progress=0.0, error=e)
            raise

        finally:
            with self._lock:
                self._session = None
            if session.state in (DownloadState.FAILED, DownloadState.CANCELLED):
                self._transition(None, DownloadState.IDLE, progress=0.0)

    def _relieve_memory_pressure(self, descriptor: ModelDescriptor) -> None:
        """Collect garbage before fetching models above the size threshold"""
        threshold = SizeClass(self.download_config.pressure_threshold)
        if descriptor.size_class.rank <= threshold.rank:
            return
        collected = 0
        for _ in range(self.download_config.pressure_release_passes):
            collected += gc.collect()
        logger.info(f"Released memory before {descriptor.size_class.value} download ({collected} objects)")

    def _fetch(self, session: DownloadSession, url: str) -> Path:
        return fetch(
            self.http,
            url,
            self.storage,
            max_redirects=self.download_config.max_redirects,
            chunk_size=self.download_config.chunk_size,
            timeout=(self.download_config.connect_timeout, self.download_config.read_timeout),
            session=session,
            on_progress=partial(self._report_progress, session),
        )

    def _download_primary(self, session: DownloadSession) -> Path:
        descriptor = session.descriptor
        staged = self._fetch(session, descriptor.url)
        try:
            session.check_cancelled()
            self._transition(session, DownloadState.INSTALLING_PRIMARY)
            return self.storage.install_file(staged, descriptor.filename)
        finally:
            discard(staged)

    def _download_sidecar(self, session: DownloadSession) -> Path:
        descriptor = session.descriptor
        self._transition(session, DownloadState.DOWNLOADING_SIDECAR, progress=0.0)
        archive = self._fetch(session, descriptor.sidecar_url)
        extract_dir = None
        try:
            session.check_cancelled()
            self._transition(session, DownloadState.INSTALLING_SIDECAR)

            extract_dir = self.storage.new_staging_dir()
            extract_archive(archive, extract_dir)
            session.check_cancelled()

            bundle = locate_bundle(extract_dir, descriptor.sidecar_name)
            warning = validate_bundle(bundle)
            if warning is not None:
                session.warnings.append(warning)
                with self._lock:
                    self._last_warning = warning
                self._emit("warning", error=warning)

            return self.storage.install_dir(bundle, descriptor.sidecar_name)
        finally:
            discard(archive)
            if extract_dir is not None:
                discard(extract_dir)

    # Activation

    def activate(self, model: InstalledModel) -> "Future[InstalledModel]":
        """
        Load a model as the single active handle

        Any current handle is unloaded first. A missing file is rejected
        before that, so the current model stays active. Activation cannot be
        cancelled; wait on the returned future before relying on the model.

        Returns:
            Future resolving to the activated model, or failing with
            ModelNotFound / ActivationFailure
        """
        return self._activation_executor.submit(self._activate, model)

    def _activate(self, model: InstalledModel) -> InstalledModel:
        with self._handle_lock:
            # The working model stays loaded when the replacement is missing
            if not model.primary_path.is_file():
                error = ModelNotFound(f"Model file not found: {model.primary_path}")
                with self._lock:
                    self._last_error = error
                raise error

            self._unload_locked()

            try:
                handle = self.recognizer.load(model.primary_path, model.sidecar_path)
            except Exception as e:
                error = ActivationFailure(f"Failed to load {model.filename}: {e}")
                with self._lock:
                    self._last_error = error
                logger.error(error.message)
                raise error from e

            self._handle = handle
            self._active = model

        try:
            self.storage.write_pointer(model.filename)
        except OSError as e:
            logger.warning(f"Could not persist last activated model: {e}")

        logger.info(f"Activated {model.filename}")
        self._emit("activated", model=model)
        return model

    def unload(self) -> None:
        """Release the active handle, if any"""
        with self._handle_lock:
            self._unload_locked()

    def _unload_locked(self) -> None:
        if self._handle is None:
            return

        handle, model = self._handle, self._active
        self._handle = None
        self._active = None

        try:
            self.recognizer.unload(handle)
        except Exception as e:
            logger.warning(f"Recognizer unload failed: {e}")
        del handle

        for _ in range(self.transcription_config.release_passes):
            gc.collect()

        # Model weights can be gigabytes; give teardown time to finish
        # before a following load allocates again.
        settle = self.transcription_config.unload_settle_seconds
        if settle > 0:
            time.sleep(settle)

        logger.info(f"Unloaded {model.filename if model else 'model'}")
        self._emit("unloaded", model=model)

    @contextmanager
    def lend_handle(self) -> Iterator[Any]:
        """
        Borrow the active handle for one transcribe call

        Raises:
            ModelNotFound: If no model is active
        """
        with self._handle_lock:
            if self._handle is None:
                raise ModelNotFound("No model is active")
            yield self._handle

    # Deletion

    def delete(self, model: InstalledModel) -> None:
        """
        Remove an installed model from storage

        Raises:
            CannotDeleteActive: If model backs the active handle
            ModelNotFound: If the model is no longer installed
        """
        with self._handle_lock:
            active = self._active
            if active is not None and active.primary_path == model.primary_path:
                raise CannotDeleteActive(f"{model.filename} is the active model")

            current = self.storage.find(model.filename)
            if current is None or current.primary_path != model.primary_path:
                raise ModelNotFound(f"{model.filename} is not installed")

            self.storage.remove(current)

        if self.storage.read_pointer() == model.filename:
            self.storage.write_pointer(None)

        self._emit("deleted", model=current)

    def shutdown(self) -> None:
        """Cancel downloads, unload the model and stop worker threads"""
        self.cancel_download()
        self._download_executor.shutdown(wait=True)
        self._activation_executor.shutdown(wait=True)
        self.unload()
        self.http.close()
