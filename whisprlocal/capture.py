"""
Microphone capture source

Runs a sounddevice input stream on a background thread and pushes mono
float32 chunks to a callback (normally TranscriptionOrchestrator.on_audio_chunk).
"""

import logging
import threading
import time
from typing import Callable, Optional

import numpy as np

from whisprlocal.config import AudioConfig

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[np.ndarray], None]


class CaptureSource:
    """Continuous microphone capture"""

    def __init__(self, audio_config: AudioConfig, on_chunk: ChunkCallback):
        """
        Args:
            audio_config: Sample rate, block size and device
            on_chunk: Receives each mono chunk; called on the audio thread
        """
        self.audio_config = audio_config
        self.on_chunk = on_chunk
        self.is_running = False
        self._thread: Optional[threading.Thread] = None
        self._mic_device: Optional[int] = None
        self.chunk_count = 0

    def start(self) -> None:
        """Start capturing"""
        if self.is_running:
            logger.warning("Capture already running")
            return

        import sounddevice as sd

        self.is_running = True

        if self.audio_config.mic_device is None:
            self._mic_device = self._auto_detect_microphone(sd)
        else:
            self._mic_device = self.audio_config.mic_device

        self._thread = threading.Thread(
            target=self._capture_worker,
            args=(sd,),
            name="audio-capture",
            daemon=True,
        )
        self._thread.start()

        logger.info(f"Capture started (mic device: {self._mic_device})")

    def stop(self) -> None:
        """Stop capturing"""
        if not self.is_running:
            return

        self.is_running = False

        if self._thread:
            self._thread.join(timeout=2.0)

        logger.info(f"Capture stopped (chunks: {self.chunk_count})")

    def _auto_detect_microphone(self, sd) -> int:
        """Auto-detect default microphone device"""
        try:
            default_idx = sd.default.device[0]
            device_info = sd.query_devices(default_idx)
            if device_info['max_input_channels'] > 0:
                logger.info(f"Auto-detected microphone: [{default_idx}] {device_info['name']}")
                return default_idx
        except Exception as e:
            logger.warning(f"Could not auto-detect default mic: {e}")

        try:
            devices = sd.query_devices()
            for idx, device in enumerate(devices):
                if device['max_input_channels'] > 0:
                    logger.info(f"Using first available mic: [{idx}] {device['name']}")
                    return idx
        except Exception as e:
            logger.error(f"Could not detect any microphone: {e}")

        return 0

    def _capture_worker(self, sd) -> None:
        """Capture worker thread - owns the input stream"""

        def audio_callback(indata, frames, time_info, status):
            if status:
                logger.warning(f"Audio status: {status}")
            self.chunk_count += 1
            try:
                self.on_chunk(indata[:, 0].copy())
            except Exception as e:
                logger.error(f"Error handling audio chunk: {e}")

        try:
            with sd.InputStream(
                device=self._mic_device,
                channels=1,
                samplerate=self.audio_config.sample_rate,
                blocksize=self.audio_config.buffer_size,
                dtype="float32",
                callback=audio_callback,
            ):
                logger.info("Audio stream started")
                while self.is_running:
                    time.sleep(0.1)
        except Exception as e:
            logger.error(f"Capture worker error: {e}")
            self.is_running = False
