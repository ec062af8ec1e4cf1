"""
Configuration management for whisprlocal
"""

import logging
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from whisprlocal.catalog import SizeClass

logger = logging.getLogger(__name__)


@dataclass
class ServerConfig:
    """Server configuration"""
    socket_path: str = "whisprlocal.sock"
    history_size: int = 10
    discard_phrases: List[str] = field(default_factory=list)
    copy_to_clipboard: bool = False


@dataclass
class StorageConfig:
    """Managed model storage"""
    models_dir: str = "~/.local/share/whisprlocal/models"
    state_file: str = "~/.local/share/whisprlocal/state.yml"


@dataclass
class DownloadConfig:
    """Model download settings"""
    max_redirects: int = 5
    connect_timeout: float = 30.0
    read_timeout: float = 600.0
    chunk_size: int = 1024 * 1024
    fetch_sidecar: bool = True
    # Size classes above this one get a memory release pass before downloading
    pressure_threshold: str = SizeClass.SMALL.value
    pressure_release_passes: int = 3


@dataclass
class AudioConfig:
    """Audio configuration"""
    sample_rate: int = 16000
    buffer_size: int = 1600
    mic_device: Optional[int] = None
    max_buffer_seconds: float = 120.0

    @property
    def buffer_capacity(self) -> int:
        """Sliding-window capacity in samples"""
        return int(self.sample_rate * self.max_buffer_seconds)


@dataclass
class TranscriptionConfig:
    """Transcription configuration"""
    language: str = "auto"
    n_threads: int = 4
    prompt: Optional[str] = None
    release_passes: int = 3
    unload_settle_seconds: float = 0.5


@dataclass
class Config:
    """Main configuration container"""
    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    downloads: DownloadConfig = field(default_factory=DownloadConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    config_path: Path = field(default_factory=Path.cwd)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """
        Load configuration from YAML file

        Args:
            config_path: Path to config file. If None, searches for config.yml
                        in the project root (relative to package location).

        Returns:
            Config object

        Raises:
            SystemExit: If config file not found
        """
        if config_path is not None:
            resolved_path = config_path
        else:
            package_dir = Path(__file__).parent
            project_root = package_dir.parent
            resolved_path = project_root / "config.yml"

        if not resolved_path.exists():
            logger.error(f"Config file not found: {resolved_path}")
            logger.error("Please copy config.example.yml to config.yml and customize it.")
            sys.exit(1)

        config_data = _load_yaml(resolved_path)
        logger.info(f"Loaded config from {resolved_path}")

        return cls.from_dict(config_data, resolved_path.parent)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], config_path: Path) -> "Config":
        """Build config from parsed YAML; omitted sections use defaults"""
        return cls(
            server=_section(ServerConfig, data.get("server")),
            storage=_section(StorageConfig, data.get("storage")),
            downloads=_section(DownloadConfig, data.get("downloads")),
            audio=_section(AudioConfig, data.get("audio")),
            transcription=_section(TranscriptionConfig, data.get("transcription")),
            config_path=config_path,
        )

    def resolve_path(self, value: str) -> Path:
        """Expand ~ and resolve relative paths against the config directory"""
        path = Path(value).expanduser()
        if path.is_absolute():
            return path
        return self.config_path / path

    def get_socket_path(self) -> Path:
        """Get the absolute path to the socket file"""
        return self.resolve_path(self.server.socket_path)

    def get_models_dir(self) -> Path:
        return self.resolve_path(self.storage.models_dir)

    def get_state_file(self) -> Path:
        return self.resolve_path(self.storage.state_file)


def _section(section_cls, values: Optional[Dict[str, Any]]):
    """Instantiate a config section, warning about unknown keys"""
    values = dict(values or {})
    known = {f.name for f in fields(section_cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        logger.warning(f"Ignoring unknown {section_cls.__name__} keys: {', '.join(unknown)}")
    return section_cls(**{k: v for k, v in values.items() if k in known})


def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file and return as dict"""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
            return data if data else {}
    except Exception as e:
        logger.error(f"Error loading config file {path}: {e}")
        sys.exit(1)
