"""
Message normalizer.

Reduces a raw platform message to the three core fields plus an optional
catch-all metadata object, and builds the per-run author index.

Metadata never repeats a core field and is omitted entirely when empty.
"""

from typing import Any

CORE_FIELDS = ("id", "createdTimestamp", "content")


def normalize_emoji(emoji: Any) -> dict:
    """Bare emoji strings and emoji objects both become {name, id, animated}."""
    if isinstance(emoji, dict):
        return {
            "name": emoji.get("name"),
            "id": emoji.get("id") or None,
            "animated": bool(emoji.get("animated", False)),
        }
    return {"name": emoji, "id": None, "animated": False}


def normalize_reactions(reactions: list) -> list[dict]:
    """Normalize reactions to {emoji: {name, id, animated}, count, users: [id]}."""
    normalized = []
    for reaction in reactions:
        if isinstance(reaction, dict):
            emoji = reaction.get("emoji")
            count = reaction.get("count")
            users = reaction.get("users") or []
        else:
            emoji, count, users = reaction, None, []
        normalized.append({
            "emoji": normalize_emoji(emoji),
            "count": count,
            "users": [u["id"] if isinstance(u, dict) else u for u in users],
        })
    return normalized


def _as_list(value: Any) -> list:
    # Collections from the client may come keyed by id
    if isinstance(value, dict):
        return list(value.values())
    if isinstance(value, list):
        return value
    return []


def _scrub_mentions(mentions: Any) -> dict:
    if not isinstance(mentions, dict):
        return {}

    if not any(k in mentions for k in ("users", "roles", "everyone", "repliedUser")):
        # Already-flattened mention data from an older client
        return dict(mentions)

    scrubbed = {}
    users = _as_list(mentions.get("users"))
    if users:
        scrubbed["users"] = [
            {"id": u.get("id"), "username": u.get("username")} if isinstance(u, dict) else u
            for u in users
        ]
    if mentions.get("everyone"):
        scrubbed["everyone"] = True
    replied = mentions.get("repliedUser")
    if replied:
        scrubbed["repliedUser"] = {
            "id": replied.get("id"),
            "username": replied.get("username"),
            "globalName": replied.get("globalName"),
        }
    return scrubbed


def _flag_bits(flags: Any) -> int:
    if isinstance(flags, dict):
        return flags.get("bitfield") or 0
    return flags or 0


def build_metadata(msg: dict[str, Any]) -> dict[str, Any]:
    """Fold every non-core attribute that carries information into one dict."""
    metadata = {}

    reactions = msg.get("reactions")
    if isinstance(reactions, list) and reactions:
        metadata["reactions"] = normalize_reactions(reactions)

    reference = msg.get("reference")
    if reference:
        metadata["reference"] = {
            "messageId": reference.get("messageId"),
            "channelId": reference.get("channelId"),
            "guildId": reference.get("guildId"),
        }

    attachments = _as_list(msg.get("attachments"))
    if attachments:
        metadata["attachments"] = [
            {
                "id": a.get("id"),
                "name": a.get("name"),
                "url": a.get("url"),
                "size": a.get("size"),
                "contentType": a.get("contentType"),
            }
            for a in attachments
        ]

    embeds = _as_list(msg.get("embeds"))
    if embeds:
        metadata["embeds"] = [e.get("data", e) if isinstance(e, dict) else e for e in embeds]

    mentions = _scrub_mentions(msg.get("mentions"))
    if mentions:
        metadata["mentions"] = mentions

    # type 0 is a plain message
    if msg.get("type"):
        metadata["type"] = msg["type"]

    if msg.get("editedTimestamp"):
        metadata["editedTimestamp"] = msg["editedTimestamp"]

    bits = _flag_bits(msg.get("flags"))
    if bits:
        metadata["flags"] = bits

    if msg.get("pinned"):
        metadata["pinned"] = True
    if msg.get("system"):
        metadata["system"] = True

    if msg.get("webhookId"):
        metadata["webhookId"] = msg["webhookId"]
    if msg.get("applicationId"):
        metadata["applicationId"] = msg["applicationId"]

    interaction = msg.get("interaction")
    if interaction:
        metadata["interaction"] = {
            "id": interaction.get("id"),
            "type": interaction.get("type"),
            "commandName": interaction.get("commandName"),
        }
    if msg.get("interactionMetadata"):
        metadata["interactionMetadata"] = msg["interactionMetadata"]

    # Thread ordering; 0 is the default
    if msg.get("position"):
        metadata["position"] = msg["position"]

    if msg.get("nonce"):
        metadata["nonce"] = msg["nonce"]

    return metadata


def scrub_message(msg: dict[str, Any]) -> dict[str, Any]:
    """Raw platform message -> archived message."""
    scrubbed = {
        "id": msg["id"],
        "createdTimestamp": msg["createdTimestamp"],
        "content": msg.get("content"),
    }
    metadata = build_metadata(msg)
    if metadata:
        scrubbed["metadata"] = metadata
    return scrubbed


def scrub_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [scrub_message(m) for m in messages]


def build_author_index(messages: list[dict[str, Any]]) -> dict[str, dict]:
    """
    Author index for one run: authorId -> {id, username, globalName, msgIds}.

    Built only from the messages passed in. Messages without an author are
    left out, which makes them unresolvable at insert time.
    """
    authors = {}
    for msg in messages:
        author = msg.get("author")
        if not author or not author.get("id"):
            continue
        author_id = author["id"]
        if author_id not in authors:
            authors[author_id] = {
                "id": author_id,
                "username": author.get("username"),
                "globalName": author.get("globalName"),
                "msgIds": [],
            }
        authors[author_id]["msgIds"].append(msg["id"])
    return authors


def author_lookup(authors: dict[str, dict]) -> dict[str, str]:
    """Invert an author index to messageId -> authorId."""
    lookup = {}
    for author in authors.values():
        for msg_id in author.get("msgIds") or []:
            lookup.setdefault(str(msg_id), author.get("id"))
    return lookup
