"""Error handling with friendly messages.

Errors fall into four families:
- not-found: missing capsule, artifact, IR or plugin
- format: unsupported archive, malformed plugin response
- plugin execution: non-zero exit, timeout, invalid entrypoint
- transactional: commit failures (rolled back before raising)
"""

from __future__ import annotations


class CapsuleKitError(Exception):
    """Base exception for all capsulekit errors."""

    def __init__(self, message: str, suggestion: str | None = None) -> None:
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)

    def __str__(self) -> str:
        if self.suggestion:
            return f"{self.message}\nSuggestion: {self.suggestion}"
        return self.message


class ConfigError(CapsuleKitError):
    """Configuration error."""

    pass


class PathOutsideRootError(CapsuleKitError):
    """A relative capsule path escapes the capsule directory."""

    def __init__(self, rel_path: str) -> None:
        super().__init__(f"Path escapes capsule directory: {rel_path}")
        self.rel_path = rel_path


# --- not found -------------------------------------------------------------


class NotFoundError(CapsuleKitError):
    """Requested object does not exist."""

    pass


class CapsuleNotFoundError(NotFoundError):
    """Capsule file not found."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f"Capsule '{name}' not found",
            "Check available capsules with: capsulekit list",
        )
        self.name = name


class ArtifactNotFoundError(NotFoundError):
    """Archive member not found inside a capsule."""

    def __init__(self, capsule: str, artifact_id: str) -> None:
        super().__init__(f"Artifact '{artifact_id}' not found in capsule '{capsule}'")
        self.capsule = capsule
        self.artifact_id = artifact_id


class IRNotFoundError(NotFoundError):
    """Capsule carries no *.ir.json member."""

    def __init__(self, capsule: str) -> None:
        super().__init__(
            f"Capsule '{capsule}' contains no IR",
            f"Generate it with: capsulekit generate-ir {capsule}",
        )
        self.capsule = capsule


class PluginNotFoundError(NotFoundError):
    """Plugin not found."""

    def __init__(self, plugin_id: str) -> None:
        super().__init__(
            f"Plugin '{plugin_id}' not found",
            "Check available plugins with: capsulekit plugins",
        )
        self.plugin_id = plugin_id


# --- format ----------------------------------------------------------------


class FormatError(CapsuleKitError):
    """Unreadable or unsupported data."""

    pass


class UnsupportedArchiveError(FormatError):
    """Archive extension is not tar, tar.gz or tar.xz."""

    def __init__(self, path: str) -> None:
        super().__init__(
            f"Unsupported archive format: {path}",
            "Capsules must end in .tar, .tar.gz or .tar.xz",
        )
        self.path = path


class CorruptedArchiveError(FormatError):
    """Archive could not be decompressed or parsed."""

    def __init__(self, path: str) -> None:
        super().__init__(
            f"Capsule '{path}' is corrupted or unreadable",
            "Try re-downloading or check file integrity",
        )
        self.path = path


# --- plugins ---------------------------------------------------------------


class PluginError(CapsuleKitError):
    """Plugin-related error."""

    pass


class PluginValidationError(PluginError):
    """Plugin failed validation."""

    pass


class PluginProtocolError(PluginError, FormatError):
    """Plugin wrote something other than one JSON response object.

    The raw detail is kept on the exception for diagnosis and is never part
    of the message.
    """

    def __init__(self, plugin_id: str, detail: str = "") -> None:
        super().__init__(f"Plugin '{plugin_id}' returned a malformed response")
        self.plugin_id = plugin_id
        self.detail = detail


class PluginExecutionError(PluginError):
    """Plugin exited non-zero or answered status=error."""

    def __init__(self, plugin_id: str, message: str, output: str = "") -> None:
        super().__init__(f"Plugin '{plugin_id}' failed: {message}")
        self.plugin_id = plugin_id
        self.reason = message
        self.output = output


class PluginTimeoutError(PluginError):
    """Plugin did not answer within the configured timeout."""

    def __init__(self, plugin_id: str, timeout: float) -> None:
        super().__init__(
            f"Plugin '{plugin_id}' timed out after {timeout:g}s",
            "Raise plugins.timeout_s if the input is very large",
        )
        self.plugin_id = plugin_id
        self.timeout = timeout


# --- conversion ------------------------------------------------------------


class ConversionError(CapsuleKitError):
    """Conversion pipeline error."""

    pass


class IRAlreadyPresentError(ConversionError):
    """IR generation refused because the capsule already has IR."""

    def __init__(self, capsule: str) -> None:
        super().__init__("This capsule already contains IR. No generation needed.")
        self.capsule = capsule


class NoConvertibleContentError(ConversionError):
    """Nothing in the extracted capsule matches a known source format."""

    def __init__(self, found_files: list[str], is_cas: bool = False) -> None:
        if is_cas:
            message = (
                "This capsule uses content-addressed storage (CAS) and has no "
                "extracted content files"
            )
            suggestion = "Convert it first with: capsulekit convert-cas <capsule>"
        else:
            shown = found_files[:10]
            listing = ", ".join(shown) if shown else "none"
            if len(found_files) > len(shown):
                listing += f" (+{len(found_files) - len(shown)} more)"
            message = (
                "No convertible content found. Supported formats: OSIS, USFM, USX, "
                f"SWORD modules. Files found: {listing}"
            )
            suggestion = None
        super().__init__(message, suggestion)
        self.found_files = found_files
        self.is_cas = is_cas


class TransactionError(CapsuleKitError):
    """Commit of a rewritten capsule failed."""

    def __init__(self, message: str, rolled_back: bool = False) -> None:
        super().__init__(message)
        self.rolled_back = rolled_back
