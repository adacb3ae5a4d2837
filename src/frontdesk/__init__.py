"""
Front desk turn engine package.

Keep imports lightweight so modules like `src.frontdesk.triage` can be used without
requiring the full runtime dependency set (e.g., dotenv, redis) at import time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.frontdesk.config import Config
    from src.frontdesk.engine import ConversationEngine

__all__ = ["Config", "get_config", "ConversationEngine"]


def __getattr__(name: str) -> Any:
    if name in ("Config", "get_config"):
        from src.frontdesk.config import Config, get_config

        return {"Config": Config, "get_config": get_config}[name]
    if name == "ConversationEngine":
        from src.frontdesk.engine import ConversationEngine

        return ConversationEngine
    raise AttributeError(name)
