"""Built-in actions that ``uses:`` steps resolve to."""
from __future__ import annotations

from .base import Action, ActionContext, ActionRegistry, ActionResult
from .checkout import checkout
from .pages import publish_pages
from .tools import rust_toolchain, setup_tool, trunk


def default_registry() -> ActionRegistry:
    registry = ActionRegistry()
    registry.register("checkout", checkout, aliases=("actions/checkout",))
    registry.register("setup-tool", setup_tool)
    registry.register("actions-rs/toolchain", rust_toolchain)
    registry.register("jetli/trunk-action", trunk)
    registry.register("publish-pages", publish_pages, aliases=("peaceiris/actions-gh-pages",))
    return registry


__all__ = [
    "Action",
    "ActionContext",
    "ActionRegistry",
    "ActionResult",
    "default_registry",
]
