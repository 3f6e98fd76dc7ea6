from __future__ import annotations

from typing import Any, Dict

from src.notifications.telegram import escape_markdown_v2

COLOR_DEFAULT = 0x7C3AED  # purple
COLOR_INTERACTION = 0xFF9900  # orange, requires user action


def format_push_notification(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Format a push payload for all channels.

    Returns:
        dict with keys "telegram" (str) and "discord_embeds" (list).
    """
    title = payload.get("title") or ""
    body = payload.get("body") or ""
    data = payload.get("data") or {}
    actions = payload.get("actions") or []

    # Telegram MarkdownV2
    lines = [f"*{escape_markdown_v2(title)}*", escape_markdown_v2(body)]
    if data.get("url") and data["url"] != "/":
        lines.append("")
        lines.append(escape_markdown_v2(str(data["url"])))
    if actions:
        lines.append("")
        for action in actions:
            lines.append(f"{escape_markdown_v2('-')} {escape_markdown_v2(action['title'])}")
    telegram_text = "\n".join(lines).strip()

    # Discord embed
    embed: Dict[str, Any] = {
        "title": title,
        "description": body,
        "color": COLOR_INTERACTION if payload.get("requireInteraction") else COLOR_DEFAULT,
    }
    if payload.get("image"):
        embed["image"] = {"url": payload["image"]}
    if payload.get("icon"):
        embed["thumbnail"] = {"url": payload["icon"]}
    if actions:
        embed["fields"] = [
            {"name": action["title"], "value": action["action"], "inline": True}
            for action in actions
        ]
    if payload.get("tag"):
        embed["footer"] = {"text": payload["tag"]}

    return {"telegram": telegram_text, "discord_embeds": [embed]}
