"""Conversion outcome types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from capsulekit.convert.loss import LossClass
from capsulekit.core.errors import CapsuleKitError


class Stage(StrEnum):
    DETECT = "detect"
    RESTORE = "restore"
    EXTRACT_IR = "extract-ir"
    EMIT_NATIVE = "emit-native"
    COMMIT = "commit"


@dataclass
class ConversionResult:
    """Outcome of one pipeline run.

    Failures are results too: `success` is False, `stage` names the step
    that failed and `error` keeps the exception for callers that need it.
    """

    success: bool
    capsule: str
    message: str
    output_path: str = ""
    old_path: str = ""
    source_format: str = ""
    target_format: str = ""
    loss_class: LossClass = LossClass.L0
    extraction_loss: LossClass | None = None
    emission_loss: LossClass | None = None
    stage: Stage | None = None
    error: CapsuleKitError | None = field(default=None, repr=False, compare=False)

    @classmethod
    def failure(cls, capsule: str, stage: Stage, error: CapsuleKitError) -> ConversionResult:
        return cls(success=False, capsule=capsule, message=str(error), stage=stage, error=error)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "capsule": self.capsule,
            "message": self.message,
            "output_path": self.output_path,
            "old_path": self.old_path,
            "source_format": self.source_format,
            "target_format": self.target_format,
            "loss_class": self.loss_class.value,
        }
        if self.extraction_loss is not None:
            data["extraction_loss"] = self.extraction_loss.value
        if self.emission_loss is not None:
            data["emission_loss"] = self.emission_loss.value
        if not self.success:
            data["stage"] = self.stage.value if self.stage else None
            data["error_type"] = type(self.error).__name__ if self.error else None
        return data
