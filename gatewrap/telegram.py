"""
Telegram user resolution for the agent workspace.

Looks up the numeric chat id of TELEGRAM_USERNAME through the Bot API and
records it in USER.md so the agent knows where to send messages. Sections
after the Telegram block (written by the agent or the operator) are kept.
"""

import logging
import re
from pathlib import Path

import httpx

from .config import Config

logger = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"

CHAT_ID_RE = re.compile(r"^- Chat ID:\s*(-?\d+)", re.MULTILINE)
OTHER_SECTION_RE = re.compile(r"\n## (?!Telegram\b)")


def _read_existing(path: Path) -> tuple[str, str]:
    """Return (previous chat id, trailing non-Telegram sections)."""
    try:
        existing = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return "", ""
    match = CHAT_ID_RE.search(existing)
    chat_id = match.group(1) if match else ""
    extra = OTHER_SECTION_RE.search(existing)
    return chat_id, existing[extra.start():] if extra else ""


def _update_chat(update: dict) -> tuple[dict, dict]:
    for key in ("message", "edited_message", "my_chat_member", "chat_member"):
        body = update.get(key)
        if isinstance(body, dict):
            chat, sender = body.get("chat"), body.get("from")
            return (chat if isinstance(chat, dict) else {}), (sender if isinstance(sender, dict) else {})
    return {}, {}


def find_chat_id(updates: list[dict], username: str) -> str:
    """Chat id of the first update sent by or to @username."""
    username = username.lstrip("@").lower()
    for update in updates:
        if not isinstance(update, dict):
            continue
        chat, sender = _update_chat(update)
        if (chat.get("username") or "").lower() == username:
            return str(chat.get("id", ""))
        if (sender.get("username") or "").lower() == username:
            return str(chat.get("id") or sender.get("id") or "")
    return ""


def latest_chat(updates: list[dict]) -> tuple[str, str]:
    """(chat id, username) of the most recent update carrying a chat."""
    for update in reversed(updates):
        if not isinstance(update, dict):
            continue
        chat, sender = _update_chat(update)
        if chat.get("id"):
            return str(chat["id"]), (sender.get("username") or "").lstrip("@").lower()
    return "", ""


def render_user_md(chat_id: str, username: str, extra: str) -> str:
    lines = ["# User", "", "## Telegram"]
    if chat_id:
        lines.append(f"- Chat ID: {chat_id}")
        if username:
            lines.append(f"- Username: @{username}")
        lines += [
            "",
            f"When sending Telegram messages to this user, use target `telegram:{chat_id}` "
            "(numeric chat ID, not @username).",
        ]
    elif username:
        lines += [
            f"- Username: @{username}",
            "- No chat ID yet: the user must message the bot first (e.g. send /start).",
            "",
            "Do not send Telegram messages until a chat ID is set.",
        ]
    else:
        lines += [
            "- No chat ID or username. Set TELEGRAM_USERNAME and message the bot before deploy.",
            "",
            "Do not send Telegram messages until USER.md has a numeric Chat ID.",
        ]
    lines.append(extra if extra else "")
    return "\n".join(lines)


async def resolve_user(settings: Config, transport: httpx.AsyncBaseTransport | None = None) -> Path | None:
    """
    Resolve the Telegram user and write USER.md into the workspace.

    Lookup failures are logged and fall back to a previously recorded chat id.
    Returns the path written, or None when no bot token is configured.
    """
    token = settings.telegram_bot_token
    if not token:
        logger.info("No TELEGRAM_BOT_TOKEN, skipping USER.md")
        return None

    user_md = settings.workspace_dir / "USER.md"
    previous_chat_id, extra = _read_existing(user_md)
    wanted = settings.telegram_username.strip()
    chat_id, username = "", ""

    try:
        async with httpx.AsyncClient(base_url=f"{API_BASE}/bot{token}", timeout=15.0, transport=transport) as client:
            me = (await client.get("/getMe")).json()
            if not isinstance(me, dict) or not me.get("ok"):
                logger.error(f"Invalid Telegram bot token: {me.get('description') if isinstance(me, dict) else me}")
                return None
            bot = me.get("result") if isinstance(me.get("result"), dict) else {}
            logger.info(f"Telegram bot verified: @{bot.get('username')}")

            if wanted.isdigit():
                chat_id = wanted
            else:
                updates = (await client.get("/getUpdates", params={"limit": 100})).json()
                results = updates.get("result") if isinstance(updates, dict) and updates.get("ok") else []
                if not isinstance(results, list):
                    results = []
                if wanted:
                    username = wanted.lstrip("@").lower()
                    chat_id = find_chat_id(results, username)
                    if not chat_id:
                        logger.warning(f"Could not resolve @{username}; the user must message the bot first")
                else:
                    chat_id, username = latest_chat(results)
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Error resolving Telegram user: {e}")

    if not chat_id and previous_chat_id:
        chat_id = previous_chat_id
        logger.info(f"Reusing previously resolved Telegram chat ID {chat_id}")

    user_md.parent.mkdir(parents=True, exist_ok=True)
    user_md.write_text(render_user_md(chat_id, username, extra), encoding="utf-8")
    logger.info(f"Wrote {user_md}")
    return user_md
