"""Registry of plugins that run in-process."""

from __future__ import annotations

from capsulekit.plugins.embedded.base import NOT_IMPLEMENTED, EmbeddedPlugin
from capsulekit.plugins.embedded.json_ir import JsonPlugin
from capsulekit.plugins.embedded.osis import OsisPlugin
from capsulekit.plugins.embedded.sword_pure import SwordPurePlugin
from capsulekit.plugins.embedded.usfm import UsfmPlugin
from capsulekit.plugins.embedded.usx import UsxPlugin

_EMBEDDED: dict[str, EmbeddedPlugin] = {
    p.plugin_id: p for p in (SwordPurePlugin(), OsisPlugin(), UsfmPlugin(), UsxPlugin(), JsonPlugin())
}


def get_embedded(plugin_id: str) -> EmbeddedPlugin | None:
    return _EMBEDDED.get(plugin_id)


def list_embedded() -> list[EmbeddedPlugin]:
    return [_EMBEDDED[k] for k in sorted(_EMBEDDED)]


__all__ = ["NOT_IMPLEMENTED", "EmbeddedPlugin", "get_embedded", "list_embedded"]
