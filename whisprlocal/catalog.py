"""
Model catalog and filename classification

Static descriptors of the whisper.cpp models that can be downloaded, plus the
one function that understands the ggml naming convention. Anything that needs
to know what a model file *is* (size class, English-only, quantized, which
Core ML encoder belongs to it) goes through classify() and sidecar_name().
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple


REPOSITORY_URL = "https://huggingface.co/ggerganov/whisper.cpp/resolve/main"

PRIMARY_SUFFIX = ".bin"
SIDECAR_SUFFIX = ".mlmodelc"
SIDECAR_ARCHIVE_SUFFIX = ".zip"

DEFAULT_LARGE_REVISION = "v3"


class SizeClass(str, Enum):
    """Coarse capacity tier of a model"""
    TINY = "tiny"
    BASE = "base"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"

    @property
    def rank(self) -> int:
        return list(SizeClass).index(self)


class LanguageScope(str, Enum):
    """Languages a model was trained for"""
    MULTILINGUAL = "multilingual"
    ENGLISH_ONLY = "english"


@dataclass(frozen=True)
class ModelClass:
    """Result of classifying a model filename"""
    size_class: SizeClass
    language_scope: LanguageScope
    quantization: Optional[str] = None
    revision: Optional[str] = None


_FILENAME_RE = re.compile(
    r"^ggml-(?P<size>tiny|base|small|medium|large)"
    r"(?:-(?P<revision>v\d+(?:-turbo)?))?"
    r"(?P<english>\.en)?"
    r"(?:-(?P<quant>q\d_\d|tdrz))?"
    r"\.bin$"
)

# Core ML encoder stem per (size class, language scope).
#
#   tiny   multilingual -> ggml-tiny-encoder.mlmodelc
#   tiny   english      -> ggml-tiny.en-encoder.mlmodelc
#   ...                    (same pattern for base, small, medium)
#   large  either       -> ggml-large-<revision>-encoder.mlmodelc
#
# Quantized and tdrz files share the full precision encoder. There is no
# English-only large model, so both scopes map to the multilingual encoder.
_SIDECAR_STEMS: Dict[Tuple[SizeClass, LanguageScope], str] = {
    (SizeClass.TINY, LanguageScope.MULTILINGUAL): "tiny",
    (SizeClass.TINY, LanguageScope.ENGLISH_ONLY): "tiny.en",
    (SizeClass.BASE, LanguageScope.MULTILINGUAL): "base",
    (SizeClass.BASE, LanguageScope.ENGLISH_ONLY): "base.en",
    (SizeClass.SMALL, LanguageScope.MULTILINGUAL): "small",
    (SizeClass.SMALL, LanguageScope.ENGLISH_ONLY): "small.en",
    (SizeClass.MEDIUM, LanguageScope.MULTILINGUAL): "medium",
    (SizeClass.MEDIUM, LanguageScope.ENGLISH_ONLY): "medium.en",
    (SizeClass.LARGE, LanguageScope.MULTILINGUAL): "large-{revision}",
    (SizeClass.LARGE, LanguageScope.ENGLISH_ONLY): "large-{revision}",
}


def classify(filename: str) -> Optional[ModelClass]:
    """
    Classify a whisper.cpp model filename

    Args:
        filename: Bare filename such as "ggml-base.en-q5_1.bin"

    Returns:
        ModelClass, or None if the name does not follow the ggml convention
    """
    match = _FILENAME_RE.match(filename)
    if not match:
        return None

    size_class = SizeClass(match.group("size"))
    if match.group("english"):
        scope = LanguageScope.ENGLISH_ONLY
    else:
        scope = LanguageScope.MULTILINGUAL

    return ModelClass(
        size_class=size_class,
        language_scope=scope,
        quantization=match.group("quant"),
        revision=match.group("revision"),
    )


def sidecar_name(
    size_class: SizeClass,
    language_scope: LanguageScope,
    quantization: Optional[str] = None,
    revision: Optional[str] = None,
) -> str:
    """Directory name of the Core ML encoder bundle for a model"""
    stem = _SIDECAR_STEMS[(size_class, language_scope)]
    if size_class is SizeClass.LARGE:
        stem = stem.format(revision=revision or DEFAULT_LARGE_REVISION)
    return f"ggml-{stem}-encoder{SIDECAR_SUFFIX}"


def sidecar_archive_name(
    size_class: SizeClass,
    language_scope: LanguageScope,
    quantization: Optional[str] = None,
    revision: Optional[str] = None,
) -> str:
    """Filename of the zipped encoder bundle in the remote repository"""
    return sidecar_name(size_class, language_scope, quantization, revision) + SIDECAR_ARCHIVE_SUFFIX


@dataclass(frozen=True)
class ModelDescriptor:
    """A downloadable model"""
    name: str
    filename: str
    url: str
    size_class: SizeClass
    language_scope: LanguageScope
    quantization: Optional[str] = None
    revision: Optional[str] = None
    size_mb: int = 0

    @property
    def sidecar_name(self) -> str:
        return sidecar_name(self.size_class, self.language_scope, self.quantization, self.revision)

    @property
    def sidecar_archive(self) -> str:
        return sidecar_archive_name(self.size_class, self.language_scope, self.quantization, self.revision)

    @property
    def sidecar_url(self) -> str:
        """Sidecar archive lives next to the primary artifact"""
        base = self.url.rsplit("/", 1)[0]
        return f"{base}/{self.sidecar_archive}"

    @classmethod
    def from_filename(
        cls,
        filename: str,
        name: Optional[str] = None,
        url: Optional[str] = None,
        size_mb: int = 0,
    ) -> "ModelDescriptor":
        """
        Build a descriptor from a ggml filename

        Raises:
            ValueError: If the filename cannot be classified
        """
        model_class = classify(filename)
        if model_class is None:
            raise ValueError(f"Unrecognized model filename: {filename}")
        return cls(
            name=name or filename,
            filename=filename,
            url=url or f"{REPOSITORY_URL}/{filename}",
            size_class=model_class.size_class,
            language_scope=model_class.language_scope,
            quantization=model_class.quantization,
            revision=model_class.revision,
            size_mb=size_mb,
        )


def _entry(name: str, filename: str, size_mb: int) -> ModelDescriptor:
    return ModelDescriptor.from_filename(filename, name=name, size_mb=size_mb)


CATALOG: Tuple[ModelDescriptor, ...] = (
    _entry("Tiny (Multilingual)", "ggml-tiny.bin", 75),
    _entry("Tiny (English)", "ggml-tiny.en.bin", 75),
    _entry("Tiny Q5.1", "ggml-tiny-q5_1.bin", 31),
    _entry("Tiny Q8.0", "ggml-tiny-q8_0.bin", 42),
    _entry("Tiny English Q5.1", "ggml-tiny.en-q5_1.bin", 31),
    _entry("Tiny English Q8.0", "ggml-tiny.en-q8_0.bin", 42),
    _entry("Base (Multilingual)", "ggml-base.bin", 142),
    _entry("Base (English)", "ggml-base.en.bin", 142),
    _entry("Base Q5.1", "ggml-base-q5_1.bin", 57),
    _entry("Base Q8.0", "ggml-base-q8_0.bin", 78),
    _entry("Base English Q5.1", "ggml-base.en-q5_1.bin", 57),
    _entry("Base English Q8.0", "ggml-base.en-q8_0.bin", 78),
    _entry("Small (Multilingual)", "ggml-small.bin", 466),
    _entry("Small (English)", "ggml-small.en.bin", 466),
    _entry("Small Q5.1", "ggml-small-q5_1.bin", 181),
    _entry("Small Q8.0", "ggml-small-q8_0.bin", 252),
    _entry("Small English Q5.1", "ggml-small.en-q5_1.bin", 181),
    _entry("Small English Q8.0", "ggml-small.en-q8_0.bin", 252),
    _entry("Small English TDRZ", "ggml-small.en-tdrz.bin", 465),
    _entry("Medium (Multilingual)", "ggml-medium.bin", 1500),
    _entry("Medium (English)", "ggml-medium.en.bin", 1500),
    _entry("Medium Q5.0", "ggml-medium-q5_0.bin", 514),
    _entry("Medium Q8.0", "ggml-medium-q8_0.bin", 785),
    _entry("Medium English Q5.0", "ggml-medium.en-q5_0.bin", 514),
    _entry("Medium English Q8.0", "ggml-medium.en-q8_0.bin", 785),
    _entry("Large v1", "ggml-large-v1.bin", 2900),
    _entry("Large v2", "ggml-large-v2.bin", 2900),
    _entry("Large v2 Q5.0", "ggml-large-v2-q5_0.bin", 1100),
    _entry("Large v2 Q8.0", "ggml-large-v2-q8_0.bin", 1500),
    _entry("Large v3", "ggml-large-v3.bin", 2900),
    _entry("Large v3 Q5.0", "ggml-large-v3-q5_0.bin", 1100),
    _entry("Large v3 Turbo", "ggml-large-v3-turbo.bin", 1500),
    _entry("Large v3 Turbo Q5.0", "ggml-large-v3-turbo-q5_0.bin", 547),
    _entry("Large v3 Turbo Q8.0", "ggml-large-v3-turbo-q8_0.bin", 834),
)


def find(name: str) -> Optional[ModelDescriptor]:
    """
    Look up a catalog entry

    Matches the filename ("ggml-base.en.bin"), the short form without the
    ggml- prefix and .bin suffix ("base.en"), or the display name
    (case-insensitive).
    """
    wanted = name.strip()
    lowered = wanted.lower()
    for descriptor in CATALOG:
        short = descriptor.filename[len("ggml-"):-len(PRIMARY_SUFFIX)]
        if wanted in (descriptor.filename, short) or descriptor.name.lower() == lowered:
            return descriptor
    return None
