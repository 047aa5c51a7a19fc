"""Error types raised while discovering, converting and merging documents."""

from pathlib import Path
from typing import Optional


class ConversionError(Exception):
    """Base class for every error the converter reports."""


class DiscoveryError(ConversionError):
    """A directory could not be read during discovery."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"Cannot read directory {path}: {reason}")
        self.path = path
        self.reason = reason


class ParseError(ConversionError):
    """Raised when a document cannot be parsed."""


class SerializeError(ConversionError):
    """Raised when a document cannot be serialized."""


class MergeStructuralError(ConversionError):
    """The merged tree is incompatible or breaks a structural rule."""

    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path
        self.message = message


class VerificationMismatchError(ConversionError):
    """Round-trip verification found a structural difference."""

    def __init__(self, output: Path, path: str):
        super().__init__(f"Verification failed for {output}: first difference at {path}")
        self.output = output
        self.path = path


class ConversionIOError(ConversionError):
    """Reading a source or writing an output or backup failed."""

    def __init__(self, path: Path, error: OSError, action: Optional[str] = None):
        action = action or "access"
        super().__init__(f"Failed to {action} {path}: {error}")
        self.path = path
        self.error = error
