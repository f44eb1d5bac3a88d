"""Ambient core: errors, logging, events, configuration and concurrency."""

from capsulekit.core.config import ConfigResolver
from capsulekit.core.errors import (
    CapsuleKitError,
    CapsuleNotFoundError,
    ConfigError,
    ConversionError,
    FormatError,
    NotFoundError,
    PluginError,
    PluginNotFoundError,
    TransactionError,
)
from capsulekit.core.events import EventBus, get_event_bus
from capsulekit.core.logging import VerbosityLevel, get_logger, set_verbosity
from capsulekit.core.pool import BoundedWorkerPool, JobResult, parallel_map
from capsulekit.core.rwlock import RWLock
from capsulekit.core.settings import PluginPosture, Settings

__all__ = [
    "BoundedWorkerPool",
    "CapsuleKitError",
    "CapsuleNotFoundError",
    "ConfigError",
    "ConfigResolver",
    "ConversionError",
    "EventBus",
    "FormatError",
    "JobResult",
    "NotFoundError",
    "PluginError",
    "PluginNotFoundError",
    "PluginPosture",
    "RWLock",
    "Settings",
    "TransactionError",
    "VerbosityLevel",
    "get_event_bus",
    "get_logger",
    "parallel_map",
    "set_verbosity",
]
