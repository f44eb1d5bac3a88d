"""Capsule conversion pipeline and loss accounting."""

from capsulekit.convert.loss import LossClass, combine_loss
from capsulekit.convert.pipeline import ConversionPipeline, format_plugin_id
from capsulekit.convert.result import ConversionResult, Stage

__all__ = [
    "ConversionPipeline",
    "ConversionResult",
    "LossClass",
    "Stage",
    "combine_loss",
    "format_plugin_id",
]
