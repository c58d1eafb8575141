"""Basic name, size and content checks applied before an upload starts."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ValidationFailed
from .logger import get_logger
from .mime import file_extension, resolve_mime_type
from .strategy import DEFAULT_MAX_FILE_SIZE, MIB

ALLOWED_EXTENSIONS = frozenset(
    """
    jpg jpeg png gif bmp webp svg ico tiff tif heic heif avif jfif
    mp4 mov avi wmv flv webm mkv 3gp 3g2 mpg mpeg ogv m4v asf
    m4a mp3 wav flac aac ogg oga wma opus aiff au ra mid midi
    pdf doc docx xls xlsx ppt pptx txt rtf odt ods odp pages numbers keynote
    zip rar 7z tar gz bz2 xz iso
    mjs ts jsx tsx json xml yaml yml toml py java c cpp h hpp cs php rb go rs swift kt scala
    html htm css scss sass less md markdown
    csv tsv sql db sqlite sqlite3
    ttf otf woff woff2 eot
    psd ai eps indd sketch fig
    dwg dxf step stp iges igs stl obj fbx dae gltf glb
    epub mobi azw azw3
    log conf cfg ini env
    key pem crt cer p12 pfx
    """.split()
)

DANGEROUS_EXTENSIONS = frozenset(
    "exe bat cmd com scr pif vbs js jar app deb rpm pkg dmg msi apk ipa".split()
)

FILE_CATEGORIES: Dict[str, frozenset] = {
    "image": frozenset("jpg jpeg png gif bmp webp svg ico tiff tif heic heif avif".split()),
    "video": frozenset("mp4 mov avi wmv flv webm mkv 3gp 3g2 mpg mpeg ogv m4v".split()),
    "audio": frozenset("m4a mp3 wav flac aac ogg oga wma opus aiff au ra mid midi".split()),
    "document": frozenset("pdf doc docx xls xlsx ppt pptx txt rtf odt ods odp".split()),
    "archive": frozenset("zip rar 7z tar gz bz2 xz".split()),
    "code": frozenset("ts jsx tsx py java c cpp cs php rb go rs".split()),
    "data": frozenset("json xml csv sql yaml yml".split()),
}

TEXT_EXTENSIONS = frozenset("txt csv tsv json xml yaml yml md markdown html htm css log ini cfg conf".split())

# Leading bytes (hex) expected for a few common formats.
SIGNATURES = {
    "jpg": ("FFD8FFE0", "FFD8FFE1", "FFD8FFDB", "FFD8FFEE"),
    "jpeg": ("FFD8FFE0", "FFD8FFE1", "FFD8FFDB", "FFD8FFEE"),
    "png": ("89504E47",),
    "gif": ("47494638",),
    "pdf": ("25504446",),
    "zip": ("504B0304", "504B0506"),
}

_DANGEROUS_CHARS = re.compile(r'[<>:"|?*\x00-\x1f]')
_RESERVED_NAMES = re.compile(r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])(\.|$)", re.IGNORECASE)
_SPECIAL_CHARS = re.compile(r"[^\w\-. ]")

MAX_FILE_NAME_LENGTH = 255
LARGE_FILE_WARNING = 25 * MIB


@dataclass
class ValidationResult:
    is_valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    info: Dict[str, Any] = field(default_factory=dict)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.is_valid = False


def file_category(extension: str) -> str:
    for category, extensions in FILE_CATEGORIES.items():
        if extension in extensions:
            return category
    return "other"


class FileValidator:
    """Validate an attachment before it is handed to the uploader."""

    def __init__(self, max_file_size: int = DEFAULT_MAX_FILE_SIZE, min_file_size: int = 1, logger=None):
        self.max_file_size = max_file_size
        self.min_file_size = min_file_size
        self.logger = logger or get_logger()

    def validate(self, file_name: str, size: int, buffer: Optional[bytes] = None) -> ValidationResult:
        result = ValidationResult(
            info={
                "name": file_name,
                "size": size,
                "size_mb": round(size / MIB, 2) if isinstance(size, int) else 0.0,
                "extension": None,
                "category": None,
                "mime_type": None,
            }
        )
        if not file_name or not isinstance(file_name, str):
            result.add_error("Invalid file name")
            return result
        if not isinstance(size, int) or size < 0:
            result.add_error("Invalid file size")
            return result

        extension = file_extension(file_name)
        result.info["extension"] = extension or None
        result.info["category"] = file_category(extension)
        result.info["mime_type"] = resolve_mime_type(file_name)

        self._check_name(file_name, result)
        self._check_size(size, result)
        self._check_extension(extension, result)
        if buffer:
            self._check_content(buffer, extension, result)

        if result.is_valid:
            self.logger.debug(
                "File validated: %s (%.2fMB, %s)", file_name, result.info["size_mb"], result.info["category"]
            )
        else:
            self.logger.warning("File validation failed: %s - %s", file_name, ", ".join(result.errors))
        return result

    def ensure_valid(self, file_name: str, size: int, buffer: Optional[bytes] = None) -> ValidationResult:
        """Validate and raise :class:`ValidationFailed` on any error."""
        result = self.validate(file_name, size, buffer)
        if not result.is_valid:
            raise ValidationFailed(result.errors)
        if result.warnings:
            self.logger.warning("File validation warnings for %s: %s", file_name, ", ".join(result.warnings))
        return result

    def _check_name(self, file_name: str, result: ValidationResult) -> None:
        if _DANGEROUS_CHARS.search(file_name):
            result.add_error("File name contains dangerous characters")
        if len(file_name) > MAX_FILE_NAME_LENGTH:
            result.add_error(f"File name too long (max {MAX_FILE_NAME_LENGTH} characters)")
        if _RESERVED_NAMES.match(file_name):
            result.add_error("File name is reserved by system")
        if _SPECIAL_CHARS.search(file_name):
            result.warnings.append("File name contains special characters")

    def _check_size(self, size: int, result: ValidationResult) -> None:
        if size < self.min_file_size:
            result.add_error("File is empty")
        if size > self.max_file_size:
            result.add_error(f"File too large (max {self.max_file_size // MIB}MB)")
        elif size > LARGE_FILE_WARNING:
            result.warnings.append("Large file - upload may take longer")

    def _check_extension(self, extension: str, result: ValidationResult) -> None:
        if not extension:
            result.warnings.append("File has no extension")
            return
        if extension in DANGEROUS_EXTENSIONS:
            result.add_error("File type not allowed for security reasons")
        elif extension not in ALLOWED_EXTENSIONS:
            result.warnings.append("Uncommon file type - may not be supported")

    def _check_content(self, buffer: bytes, extension: str, result: ValidationResult) -> None:
        if extension in TEXT_EXTENSIONS and b"\x00" in buffer[:8192]:
            result.warnings.append("File contains null bytes")
        if len(buffer) < 4:
            return
        signature = buffer[:4].hex().upper()
        expected = SIGNATURES.get(extension)
        if expected and not signature.startswith(expected):
            result.warnings.append("File content may not match extension")
