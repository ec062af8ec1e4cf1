"""
Error taxonomy for whisprlocal

Every failure the model lifecycle manager or the transcription pipeline
reports derives from WhisprError and carries a short machine-readable kind,
which the IPC layer forwards to clients.
"""

from typing import Optional


class WhisprError(Exception):
    """Base exception for whisprlocal errors"""

    kind = "error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NetworkFailure(WhisprError):
    """Remote repository answered with an unusable status or was unreachable"""

    kind = "network_failure"

    def __init__(self, message: str, url: str = "", status_code: Optional[int] = None):
        self.url = url
        self.status_code = status_code
        super().__init__(message)


class ArchiveExtractionFailure(WhisprError):
    """Sidecar archive could not be unpacked"""

    kind = "archive_extraction_failure"


class ArtifactNotFound(WhisprError):
    """Expected artifact missing from a downloaded archive"""

    kind = "artifact_not_found"


class ValidationWarning(WhisprError):
    """
    Soft structural problem with an installed sidecar

    Recorded and published, never raised: sidecar layouts differ between
    encoder toolchain versions.
    """

    kind = "validation_warning"


class ActivationFailure(WhisprError):
    """Recognizer rejected a model file"""

    kind = "activation_failure"


class ModelNotFound(WhisprError):
    """Model artifact is missing, or no model is active"""

    kind = "model_not_found"


class CannotDeleteActive(WhisprError):
    """Attempt to delete the model backing the active handle"""

    kind = "cannot_delete_active"


class AlreadyInProgress(WhisprError):
    """A download or transcription is already running"""

    kind = "already_in_progress"


class InvalidAudioFormat(WhisprError):
    """Audio chunk is not mono float samples"""

    kind = "invalid_audio_format"


class DownloadCancelled(WhisprError):
    """Download session was cancelled by the caller"""

    kind = "cancelled"


class TranscriptionFailure(WhisprError):
    """Recognizer failed while transcribing a session"""

    kind = "transcription_failure"
