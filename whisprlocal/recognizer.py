"""
Speech recognizer collaborators

Provides the interface the lifecycle manager and orchestrator talk to, and a
whisper.cpp implementation backed by pywhispercpp.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Segment:
    """One recognized segment"""
    text: str
    start: float = 0.0
    end: float = 0.0


class SpeechRecognizer(ABC):
    """Abstract base class for speech recognizers"""

    name: str = "unknown"

    @abstractmethod
    def load(self, primary_path: Path, accelerator_path: Optional[Path] = None) -> Any:
        """Load a model file and return an opaque handle"""

    @abstractmethod
    def unload(self, handle: Any) -> None:
        """Release a handle returned by load()"""

    @abstractmethod
    def transcribe(
        self,
        handle: Any,
        samples: np.ndarray,
        prompt: Optional[str] = None,
    ) -> List[Segment]:
        """Transcribe a whole utterance of mono float32 samples"""


class WhisperCppRecognizer(SpeechRecognizer):
    """whisper.cpp backend via pywhispercpp"""

    name = "whisper.cpp"

    def __init__(self, language: str = "auto", n_threads: int = 4):
        self.language = language
        self.n_threads = n_threads

    def load(self, primary_path: Path, accelerator_path: Optional[Path] = None) -> Any:
        from pywhispercpp.model import Model

        if accelerator_path is not None:
            # whisper.cpp picks up <model>-encoder.mlmodelc next to the model
            # file on its own when built with Core ML support.
            logger.info(f"Core ML encoder available: {accelerator_path.name}")

        logger.info(f"Loading whisper.cpp model: {primary_path.name}")
        model = Model(
            str(primary_path),
            n_threads=self.n_threads,
            language=self.language,
            print_progress=False,
            print_realtime=False,
        )
        logger.info(f"whisper.cpp model loaded: {primary_path.name}")
        return model

    def unload(self, handle: Any) -> None:
        # pywhispercpp frees the whisper context when the Model is collected
        del handle

    def transcribe(
        self,
        handle: Any,
        samples: np.ndarray,
        prompt: Optional[str] = None,
    ) -> List[Segment]:
        params = {}
        if prompt:
            params["initial_prompt"] = prompt

        segments = handle.transcribe(samples.astype(np.float32, copy=False), **params)

        # whisper.cpp timestamps are in centiseconds
        return [
            Segment(text=segment.text, start=segment.t0 / 100.0, end=segment.t1 / 100.0)
            for segment in segments
        ]
