"""
whisprlocal server

Main server daemon that:
- Owns managed model storage and the single active whisper.cpp model
- Captures microphone audio for push-to-talk sessions
- Keeps a bounded history of finalized transcripts
- Handles client requests via Unix socket
"""

import logging
import signal
import socket
import threading
from typing import Callable, Dict, Optional

from whisprlocal import catalog
from whisprlocal.buffer import TranscriptHistory
from whisprlocal.capture import CaptureSource
from whisprlocal.clipboard import ClipboardSink
from whisprlocal.config import Config
from whisprlocal.errors import ModelNotFound, WhisprError
from whisprlocal.ipc import (
    create_server_socket,
    make_error_response,
    make_ok_response,
    recv_message,
    send_message,
)
from whisprlocal.lifecycle import LifecycleEvent, ModelLifecycleManager
from whisprlocal.recognizer import SpeechRecognizer, WhisperCppRecognizer
from whisprlocal.storage import InstalledModel, ModelStorage
from whisprlocal.transcriber import TranscriptionOrchestrator

logger = logging.getLogger(__name__)

Handler = Callable[[dict], dict]


class Server:
    """
    whisprlocal server daemon

    Manages:
    - Model lifecycle (download, activate, delete)
    - Session transcription and transcript history
    - Client connections via Unix socket
    """

    def __init__(
        self,
        config: Config,
        verbose: bool = False,
        recognizer: Optional[SpeechRecognizer] = None,
        http=None,
    ):
        """
        Initialize server

        Args:
            config: Server configuration
            verbose: Enable verbose logging
            recognizer: Speech recognizer (default: whisper.cpp bindings)
            http: HTTP session for model downloads (default: requests.Session)
        """
        self.config = config
        self.verbose = verbose
        self._recognizer = recognizer
        self._http = http
        self._running = False
        self._server_socket: Optional[socket.socket] = None

        self.models: Optional[ModelLifecycleManager] = None
        self.history: Optional[TranscriptHistory] = None
        self.orchestrator: Optional[TranscriptionOrchestrator] = None
        self.capture: Optional[CaptureSource] = None

        self._handlers: Dict[str, Handler] = {
            "begin": self._cmd_begin,
            "end": self._cmd_end,
            "toggle": self._cmd_toggle,
            "cancel": self._cmd_cancel,
            "history": self._cmd_history,
            "set": self._cmd_set,
            "get": self._cmd_get,
            "status": self._cmd_status,
            "models": self._cmd_models,
            "download": self._cmd_download,
            "cancel-download": self._cmd_cancel_download,
            "activate": self._cmd_activate,
            "delete": self._cmd_delete,
        }

    def setup(self) -> None:
        """Construct and wire all components (no socket, no audio device)"""
        storage = ModelStorage(self.config.get_models_dir(), self.config.get_state_file())
        recognizer = self._recognizer or WhisperCppRecognizer(
            language=self.config.transcription.language,
            n_threads=self.config.transcription.n_threads,
        )

        self.models = ModelLifecycleManager(
            storage,
            recognizer,
            download_config=self.config.downloads,
            transcription_config=self.config.transcription,
            http=self._http,
            on_event=self._on_lifecycle_event,
        )
        logger.info(f"Model storage: {storage.models_dir}")

        self.history = TranscriptHistory(capacity=self.config.server.history_size)
        logger.info(f"History initialized (size: {self.config.server.history_size})")

        self.orchestrator = TranscriptionOrchestrator(
            self.models,
            recognizer,
            audio_config=self.config.audio,
            transcription_config=self.config.transcription,
            server_config=self.config.server,
            sinks=[self._on_transcription],
            history=self.history,
        )
        if self.config.server.copy_to_clipboard:
            self.orchestrator.add_sink(ClipboardSink())
            logger.info("Transcripts will be copied to the clipboard")

        self.capture = CaptureSource(self.config.audio, on_chunk=self.orchestrator.on_audio_chunk)

    def run(self) -> None:
        """Run the server (blocking)"""
        self._running = True

        # Setup signal handlers
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        self.setup()
        self._restore_last_model()
        self.capture.start()

        # Setup socket
        socket_path = self.config.get_socket_path()
        self._server_socket = create_server_socket(socket_path)
        self._server_socket.listen(5)
        self._server_socket.settimeout(1.0)  # Allow periodic shutdown check

        logger.info(f"Server listening on {socket_path}")

        # Accept connections in main thread
        self._accept_connections()

        # Cleanup
        self._cleanup()

    def _signal_handler(self, signum: int, frame) -> None:
        """Handle termination signals"""
        logger.info(f"Received signal {signum}, shutting down...")
        self._running = False

    def _restore_last_model(self) -> None:
        """Re-activate the model that was active when the server last ran"""
        model = self.models.get_last_activated()
        if model is None:
            logger.info("No previously activated model; use 'whisprlocal models activate'")
            return
        try:
            self.models.activate(model).result()
        except WhisprError as e:
            logger.warning(f"Could not restore {model.filename}: {e}")

    def _on_transcription(self, text: str) -> None:
        """Sink for finalized transcripts"""
        word_count = len(text.split())
        if self.verbose:
            logger.info(f"Transcript ({word_count} words): {text}")
        else:
            logger.info(f"Transcript: {word_count} words")

    def _on_lifecycle_event(self, event: LifecycleEvent) -> None:
        """Listener for model lifecycle changes"""
        if event.kind == "progress":
            logger.debug(f"Download {event.state.value}: {event.progress:.0%}")
            return
        name = event.model.filename if event.model else ""
        message = f"Model {event.kind}: {event.state.value} {name}".rstrip()
        if event.error is not None:
            logger.warning(f"{message} ({event.error})")
        else:
            logger.info(message)

    def _accept_connections(self) -> None:
        """Accept and handle client connections"""
        while self._running:
            try:
                client_sock, _ = self._server_socket.accept()
                # Handle client in separate thread
                threading.Thread(
                    target=self._handle_client,
                    args=(client_sock,),
                    daemon=True,
                ).start()
            except socket.timeout:
                continue
            except OSError as e:
                if self._running:
                    logger.error(f"Accept error: {e}")
                break

    def _handle_client(self, client_sock: socket.socket) -> None:
        """Handle a single client connection"""
        try:
            request = recv_message(client_sock)
            if not request:
                return

            response = self.process_request(request)
            send_message(client_sock, response)

        except (OSError, ValueError) as e:
            logger.error(f"Client handler error: {e}")
        finally:
            client_sock.close()

    def process_request(self, request: dict) -> dict:
        """Process a client request and return response"""
        command = request.get("command")
        if not command:
            return make_error_response("missing 'command' field", "bad_request")

        handler = self._handlers.get(command)
        if handler is None:
            return make_error_response(f"unknown command: {command}", "bad_request")

        try:
            return handler(request)
        except WhisprError as e:
            logger.warning(f"{command} failed: {e.message}")
            return make_error_response(e.message, e.kind)

    # Session commands

    def _cmd_begin(self, request: dict) -> dict:
        self.orchestrator.begin_session()
        return make_ok_response(recording=True)

    def _cmd_end(self, request: dict) -> dict:
        entry = self.orchestrator.end_session()
        error = self.orchestrator.last_error
        if error is not None:
            return make_error_response(error.message, error.kind)
        return make_ok_response(text=entry.text if entry else "")

    def _cmd_toggle(self, request: dict) -> dict:
        if self.orchestrator.is_recording:
            return self._cmd_end(request)
        return self._cmd_begin(request)

    def _cmd_cancel(self, request: dict) -> dict:
        self.orchestrator.cancel_session()
        return make_ok_response(recording=False)

    # History commands

    def _cmd_history(self, request: dict) -> dict:
        return make_ok_response(entries=[e.to_dict() for e in self.history.entries()])

    def _cmd_set(self, request: dict) -> dict:
        uid = request.get("uid")
        if not uid:
            return make_error_response("missing 'uid' field", "bad_request")
        self.history.set_marker(uid)
        if self.verbose:
            logger.info(f"Set marker for '{uid}'")
        return make_ok_response()

    def _cmd_get(self, request: dict) -> dict:
        uid = request.get("uid")
        if not uid:
            return make_error_response("missing 'uid' field", "bad_request")
        text = self.history.get_since_marker(uid)
        if self.verbose:
            line_count = len(text.split('\n')) if text else 0
            logger.info(f"Get for '{uid}': {line_count} transcripts")
        return make_ok_response(text=text)

    # Model commands

    def _cmd_status(self, request: dict) -> dict:
        return make_ok_response(
            models=self.models.status(),
            transcriber=self.orchestrator.get_stats(),
            history=self.history.get_stats(),
        )

    def _cmd_models(self, request: dict) -> dict:
        installed = sorted(self.models.list_installed(), key=lambda m: m.filename)
        active = self.models.active_model
        return make_ok_response(
            installed=[m.to_dict() for m in installed],
            active=active.filename if active else None,
        )

    def _cmd_download(self, request: dict) -> dict:
        name = request.get("model")
        if not name:
            return make_error_response("missing 'model' field", "bad_request")
        descriptor = catalog.find(name)
        if descriptor is None:
            raise ModelNotFound(f"No catalog entry named '{name}'")
        # Runs in the background; progress is visible through 'status'
        self.models.download(descriptor)
        return make_ok_response(downloading=descriptor.filename)

    def _cmd_cancel_download(self, request: dict) -> dict:
        return make_ok_response(cancelled=self.models.cancel_download())

    def _cmd_activate(self, request: dict) -> dict:
        if not request.get("filename"):
            return make_error_response("missing 'filename' field", "bad_request")
        model = self._installed(request["filename"])
        activated = self.models.activate(model).result()
        return make_ok_response(active=activated.filename)

    def _cmd_delete(self, request: dict) -> dict:
        if not request.get("filename"):
            return make_error_response("missing 'filename' field", "bad_request")
        model = self._installed(request["filename"])
        self.models.delete(model)
        return make_ok_response(deleted=model.filename)

    def _installed(self, filename: str) -> InstalledModel:
        model = self.models.storage.find(filename)
        if model is None:
            raise ModelNotFound(f"{filename} is not installed")
        return model

    def _cleanup(self) -> None:
        """Cleanup resources"""
        logger.info("Cleaning up...")

        if self.capture:
            self.capture.stop()

        if self.models:
            self.models.shutdown()

        # Close socket
        if self._server_socket:
            self._server_socket.close()

        # Remove socket file
        socket_path = self.config.get_socket_path()
        try:
            socket_path.unlink()
        except FileNotFoundError:
            pass

        logger.info("Server stopped")


def run_server(config: Config, verbose: bool = False) -> None:
    """
    Run the whisprlocal server

    Args:
        config: Server configuration
        verbose: Enable verbose logging
    """
    server = Server(config, verbose=verbose)
    server.run()
