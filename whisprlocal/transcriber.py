"""
Transcription orchestrator

Drives record -> buffer -> transcribe -> publish for push-to-talk style
sessions: audio accumulates between begin_session() and end_session(), then
the whole utterance is transcribed with the active model.
"""

import logging
import threading
import time
from typing import Callable, Iterable, List, Optional, Tuple

from whisprlocal.audio import AudioSampleBuffer, Samples
from whisprlocal.buffer import (
    TranscriptHistory,
    TranscriptionEntry,
    build_discard_set,
    normalize_phrase,
)
from whisprlocal.config import AudioConfig, ServerConfig, TranscriptionConfig
from whisprlocal.errors import AlreadyInProgress, TranscriptionFailure, WhisprError
from whisprlocal.lifecycle import ModelLifecycleManager
from whisprlocal.recognizer import Segment, SpeechRecognizer

logger = logging.getLogger(__name__)

# Markers whisper.cpp emits instead of text when it hears no speech
NO_SPEECH_SENTINELS = ("[BLANK_AUDIO]", "[NO_SPEECH]", "[SILENCE]")

Sink = Callable[[str], None]


class TranscriptionOrchestrator:
    """
    Session-based transcriber

    Features:
    - Bounded sliding-window audio buffer fed from the capture callback
    - Single-flight finalize (overlapping triggers produce one entry)
    - Sentinel and discard-phrase filtering
    - Bounded transcript history and callback-based publishing
    """

    def __init__(
        self,
        models: ModelLifecycleManager,
        recognizer: SpeechRecognizer,
        audio_config: Optional[AudioConfig] = None,
        transcription_config: Optional[TranscriptionConfig] = None,
        server_config: Optional[ServerConfig] = None,
        sinks: Iterable[Sink] = (),
        history: Optional[TranscriptHistory] = None,
    ):
        """
        Initialize orchestrator

        Args:
            models: Lifecycle manager that lends the active handle
            recognizer: Recognizer that runs inference on the handle
            audio_config: Sample rate and buffer window
            transcription_config: Prompt settings
            server_config: History size and discard phrases
            sinks: Callbacks receiving each finalized transcript
            history: Shared transcript history (created if omitted)
        """
        audio_config = audio_config or AudioConfig()
        server_config = server_config or ServerConfig()

        self.models = models
        self.recognizer = recognizer
        self.transcription_config = transcription_config or TranscriptionConfig()
        self.buffer = AudioSampleBuffer(
            capacity=audio_config.buffer_capacity,
            sample_rate=audio_config.sample_rate,
        )
        self.history = history if history is not None else TranscriptHistory(
            capacity=server_config.history_size
        )
        self._sinks: List[Sink] = list(sinks)
        self._discard = build_discard_set(
            list(NO_SPEECH_SENTINELS) + list(server_config.discard_phrases)
        )

        # State
        self.is_recording = False
        self.last_error: Optional[WhisprError] = None
        self._finalize_lock = threading.Lock()
        self._session_started = 0.0

        # Statistics
        self.transcription_count = 0
        self.failure_count = 0

    def add_sink(self, sink: Sink) -> None:
        self._sinks.append(sink)

    @property
    def is_finalizing(self) -> bool:
        return self._finalize_lock.locked()

    def begin_session(self) -> None:
        """
        Start recording a new utterance

        Raises:
            AlreadyInProgress: If the previous utterance is still being transcribed
        """
        if self.is_recording:
            logger.warning("Session already active")
            return
        if self.is_finalizing:
            raise AlreadyInProgress("Previous session is still being transcribed")

        self.buffer.clear()
        self.last_error = None
        self._session_started = time.time()
        self.is_recording = True
        logger.info("Recording started")

    def on_audio_chunk(self, samples: Samples) -> None:
        """Capture callback entry point; must never block"""
        if not self.is_recording:
            return
        self.buffer.append(samples)

    def end_session(self) -> Optional[TranscriptionEntry]:
        """Stop recording and transcribe what was captured"""
        if not self.is_recording:
            logger.debug("end_session without active session")

        # Hold the finalize lock before recording stops so begin_session
        # cannot start a new utterance on a buffer that is about to drain
        if not self._finalize_lock.acquire(blocking=False):
            self.is_recording = False
            logger.debug("Finalize already running, ignoring trigger")
            return None
        try:
            self.is_recording = False
            duration = time.time() - self._session_started if self._session_started else 0.0
            logger.info(f"Recording stopped ({duration:.2f}s, {self.buffer.duration_seconds:.2f}s buffered)")
            return self._finalize_locked()
        finally:
            self._finalize_lock.release()

    def cancel_session(self) -> None:
        """Stop recording and discard captured audio"""
        self.is_recording = False
        self.buffer.clear()
        logger.info("Recording cancelled")

    def finalize(self) -> Optional[TranscriptionEntry]:
        """
        Transcribe and publish the buffered utterance

        A call made while another finalize is running returns None
        immediately. The buffer is always cleared afterwards.

        Returns:
            The new history entry, or None if nothing was published
        """
        if not self._finalize_lock.acquire(blocking=False):
            logger.debug("Finalize already running, ignoring trigger")
            return None
        try:
            return self._finalize_locked()
        finally:
            self._finalize_lock.release()

    def _finalize_locked(self) -> Optional[TranscriptionEntry]:
        try:
            self.last_error = None
            if self.buffer.is_empty:
                logger.debug("Nothing buffered to transcribe")
                return None

            samples = self.buffer.drain_all()
            try:
                with self.models.lend_handle() as handle:
                    segments = self.recognizer.transcribe(
                        handle, samples, prompt=self.transcription_config.prompt
                    )
            except Exception as e:
                self.failure_count += 1
                if isinstance(e, WhisprError):
                    self.last_error = e
                else:
                    self.last_error = TranscriptionFailure(f"Transcription failed: {e}")
                logger.error(f"Transcription error: {e}")
                return None

            text = self._join_segments(segments)
            if not text:
                logger.info("No speech recognized")
                return None

            entry = self.history.add(text)
            self.transcription_count += 1
            logger.info(f"Transcribed: {len(text.split())} words")
            self._publish(text)
            return entry
        finally:
            self.buffer.clear()

    def _join_segments(self, segments: Iterable[Segment]) -> str:
        parts = []
        for segment in segments:
            text = segment.text.strip()
            if not text or normalize_phrase(text) in self._discard:
                continue
            parts.append(text)
        return " ".join(parts).strip()

    def _publish(self, text: str) -> None:
        for sink in list(self._sinks):
            try:
                sink(text)
            except Exception as e:
                logger.error(f"Error in transcription sink: {e}")

    def get_history(self) -> Tuple[TranscriptionEntry, ...]:
        """Transcripts, most recent first"""
        return self.history.entries()

    def get_stats(self) -> dict:
        """Get orchestrator statistics"""
        return {
            "transcription_count": self.transcription_count,
            "failure_count": self.failure_count,
            "is_recording": self.is_recording,
            "is_finalizing": self.is_finalizing,
            "buffered_seconds": round(self.buffer.duration_seconds, 2),
            "last_error": str(self.last_error) if self.last_error else None,
        }
