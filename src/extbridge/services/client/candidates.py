"""Turn a configured server address into WebSocket URLs to try, in order."""
from __future__ import annotations

from extbridge.config import const

__all__ = ["build_candidates"]


def _split_host_port(target: str) -> tuple[str, str | None]:
    if target.startswith("["):
        host, _, rest = target[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else None
        return f"[{host}]", port or None
    if target.count(":") == 1:
        host, _, port = target.partition(":")
        return host, port or None
    if ":" in target:
        # bare IPv6 literal
        return f"[{target}]", None
    return target, None


def build_candidates(target: str) -> list[str]:
    """Most specific first; a full URL is never expanded.

    >>> build_candidates("localhost:7071")
    ['ws://localhost:7071/ws', 'ws://localhost:7071/']
    """

    text = (target or "").strip()
    if not text:
        raise ValueError("server address is empty")
    lowered = text.lower()
    if lowered.startswith(("ws://", "wss://")):
        return [text]
    if lowered.startswith("http://"):
        return ["ws://" + text[len("http://"):]]
    if lowered.startswith("https://"):
        return ["wss://" + text[len("https://"):]]
    if "/" in text:
        return ["ws://" + text]

    host, port = _split_host_port(text)
    if port:
        urls = [f"ws://{host}:{port}{const.BRIDGE_PATH}", f"ws://{host}:{port}/"]
    else:
        urls = [
            f"ws://{host}:{const.BRIDGE_PORT}{const.BRIDGE_PATH}",
            f"ws://{host}:{const.GATEWAY_PORT}/",
            f"wss://{host}{const.BRIDGE_PATH}",
            f"wss://{host}/",
        ]
    return list(dict.fromkeys(urls))
