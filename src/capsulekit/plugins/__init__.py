"""Converter plugins: descriptors, discovery, the JSON protocol and execution."""

from capsulekit.plugins.descriptor import PluginDescriptor, PluginSource, load_descriptor
from capsulekit.plugins.loader import PluginLoader
from capsulekit.plugins.runner import PluginRunner

__all__ = ["PluginDescriptor", "PluginLoader", "PluginRunner", "PluginSource", "load_descriptor"]
