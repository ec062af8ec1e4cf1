"""
Managed on-disk model storage

Layout:
    <models_dir>/
        ggml-base.en.bin                      primary artifacts
        ggml-base.en-encoder.mlmodelc/        Core ML sidecar bundles
        .staging/                             in-flight downloads and extractions

Installed models are derived by scanning the directory on demand, never
from a stored index. Nothing under .staging/ is ever reported as installed,
and artifacts only leave staging through a rename on the same filesystem.
"""

import logging
import os
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Set

import yaml

from whisprlocal.catalog import PRIMARY_SUFFIX, ModelClass, classify, sidecar_name

logger = logging.getLogger(__name__)

STAGING_DIRNAME = ".staging"
POINTER_KEY = "last_activated"


@dataclass(frozen=True)
class InstalledModel:
    """A primary artifact in managed storage plus its optional sidecar"""
    primary_path: Path
    sidecar_path: Optional[Path] = None

    @property
    def filename(self) -> str:
        return self.primary_path.name

    @property
    def model_class(self) -> Optional[ModelClass]:
        return classify(self.filename)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "path": str(self.primary_path),
            "sidecar": str(self.sidecar_path) if self.sidecar_path else None,
        }


class ModelStorage:
    """
    Filesystem operations on the managed model directory

    Only the lifecycle manager mutates storage; everything else reads it
    through scan().
    """

    def __init__(self, models_dir: Path, state_file: Path):
        """
        Args:
            models_dir: Directory holding primary artifacts and sidecars
            state_file: YAML file holding the last-activated pointer
        """
        self.models_dir = models_dir
        self.state_file = state_file
        self._pointer_lock = threading.Lock()

    @property
    def staging_dir(self) -> Path:
        return self.models_dir / STAGING_DIRNAME

    def ensure_dirs(self) -> None:
        self.models_dir.mkdir(parents=True, exist_ok=True)
        self.staging_dir.mkdir(parents=True, exist_ok=True)

    def scan(self) -> Set[InstalledModel]:
        """Rescan storage for installed models"""
        if not self.models_dir.is_dir():
            return set()

        installed = set()
        for path in sorted(self.models_dir.glob(f"*{PRIMARY_SUFFIX}")):
            if path.is_file():
                installed.add(self._model_for(path))
        return installed

    def find(self, filename: str) -> Optional[InstalledModel]:
        """Look up an installed model by its primary filename"""
        if not filename or Path(filename).name != filename:
            return None
        path = self.models_dir / filename
        if not path.is_file():
            return None
        return self._model_for(path)

    def _model_for(self, primary_path: Path) -> InstalledModel:
        model_class = classify(primary_path.name)
        sidecar = None
        if model_class is not None:
            candidate = self.models_dir / sidecar_name(
                model_class.size_class,
                model_class.language_scope,
                model_class.quantization,
                model_class.revision,
            )
            if candidate.is_dir():
                sidecar = candidate
        return InstalledModel(primary_path=primary_path, sidecar_path=sidecar)

    # Staging

    def new_staging_file(self, suffix: str = ".part") -> Path:
        """Create an empty temp file inside staging"""
        self.ensure_dirs()
        fd, name = tempfile.mkstemp(dir=self.staging_dir, suffix=suffix)
        os.close(fd)
        return Path(name)

    def new_staging_dir(self, prefix: str = "extract-") -> Path:
        """Create an isolated temp directory inside staging"""
        self.ensure_dirs()
        return Path(tempfile.mkdtemp(dir=self.staging_dir, prefix=prefix))

    def purge_staging(self) -> None:
        """Remove everything left in staging"""
        if not self.staging_dir.exists():
            return
        for entry in self.staging_dir.iterdir():
            discard(entry)
        logger.debug(f"Purged staging area {self.staging_dir}")

    # Installation

    def install_file(self, staged: Path, filename: str) -> Path:
        """Move a staged file into storage, replacing any same-named file"""
        self.ensure_dirs()
        final_path = self.models_dir / filename
        os.replace(staged, final_path)
        logger.info(f"Installed {final_path}")
        return final_path

    def install_dir(self, staged: Path, name: str) -> Path:
        """
        Move a staged directory into storage, replacing any same-named one

        The old directory is renamed aside first and restored if the final
        rename fails, so the destination is never half-written.
        """
        self.ensure_dirs()
        final_dir = self.models_dir / name
        backup_dir: Optional[Path] = None

        if final_dir.exists():
            backup_dir = self.staging_dir / f"{name}.backup-{os.getpid()}-{time.time_ns()}"
            os.rename(final_dir, backup_dir)

        try:
            os.rename(staged, final_dir)
        except OSError:
            if backup_dir is not None and backup_dir.exists() and not final_dir.exists():
                os.rename(backup_dir, final_dir)
            raise

        if backup_dir is not None:
            discard(backup_dir)

        logger.info(f"Installed {final_dir}")
        return final_dir

    def remove(self, model: InstalledModel) -> None:
        """Delete a model's primary artifact and sidecar bundle"""
        model.primary_path.unlink()
        if model.sidecar_path is not None and model.sidecar_path.exists():
            shutil.rmtree(model.sidecar_path)
        logger.info(f"Removed {model.filename}")

    # Last-activated pointer

    def read_pointer(self) -> Optional[str]:
        """Filename of the last activated model, if recorded"""
        with self._pointer_lock:
            if not self.state_file.exists():
                return None
            try:
                with open(self.state_file, "r") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Could not read state file {self.state_file}: {e}")
                return None
        value = data.get(POINTER_KEY) if isinstance(data, dict) else None
        return str(value) if value else None

    def write_pointer(self, filename: Optional[str]) -> None:
        """Persist the last activated filename (None clears it)"""
        with self._pointer_lock:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.state_file.with_name(self.state_file.name + ".tmp")
            with open(tmp_path, "w") as f:
                yaml.safe_dump({POINTER_KEY: filename}, f)
            os.replace(tmp_path, self.state_file)


def discard(path: Path) -> None:
    """Remove a file or directory tree, best-effort"""
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()
    except OSError as e:
        logger.warning(f"Could not remove {path}: {e}")
