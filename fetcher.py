"""
Batch fetcher for channel history.

Paginates a channel newest-first with a before-id cursor and stops as soon as
a page crosses the last-archived boundary. Every page fetch is followed by a
fixed delay for rate limits. All awaits are strictly sequential.

The platform client is an external collaborator. Messages come back as plain
dicts keyed the way the snapshot files are (id, createdTimestamp, content,
author, reactions, ...).
"""

import asyncio
import sys
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol


class PlatformClient(Protocol):
    """What the archive needs from the chat platform client."""

    async def fetch_messages_before(
        self,
        channel_id: str,
        before_id: Optional[str],
        limit: int
    ) -> list[dict[str, Any]]:
        """Up to `limit` messages older than before_id (or newest), newest first."""
        ...

    async def fetch_reaction_users(
        self,
        channel_id: str,
        message_id: str,
        emoji: Any
    ) -> list[str]:
        """User ids that reacted with `emoji` on a message."""
        ...


@dataclass
class FetchResult:
    """Messages newer than the boundary, newest first."""
    messages: list[dict[str, Any]] = field(default_factory=list)
    pages: int = 0
    errors: int = 0

    @property
    def complete(self) -> bool:
        """False if any page fetch failed and was replaced by an empty page."""
        return self.errors == 0


async def fetch_page(
    client: PlatformClient,
    channel_id: str,
    before_id: Optional[str],
    limit: int,
    retry_backoff_ms: int = 5000
) -> tuple[list[dict[str, Any]], bool]:
    """
    Fetch one page, absorbing transient errors.

    On failure the error is logged, the fixed backoff is awaited, and an empty
    page is returned so pagination ends instead of crashing mid-run.

    Returns:
        (messages, ok)
    """
    try:
        page = await client.fetch_messages_before(channel_id, before_id, limit)
        return list(page or []), True
    except Exception as e:
        print(
            f"[WARN] Fetch failed for channel {channel_id} before {before_id}: {e}; "
            f"backing off {retry_backoff_ms}ms",
            file=sys.stderr
        )
        await asyncio.sleep(retry_backoff_ms / 1000)
        return [], False


async def fetch_message_batch(
    client: PlatformClient,
    channel_id: str,
    last_archive_time: int,
    page_size: int = 100,
    page_delay_ms: int = 1000,
    retry_backoff_ms: int = 5000
) -> FetchResult:
    """
    Fetch every message with createdTimestamp > last_archive_time.

    Pages arrive newest first, so the first message at or before the boundary
    means everything further back is already archived and pagination stops.
    With last_archive_time = 0 this walks back until an empty page.
    """
    result = FetchResult()
    before_id = None

    while True:
        page, ok = await fetch_page(client, channel_id, before_id, page_size, retry_backoff_ms)
        result.pages += 1
        if not ok:
            result.errors += 1

        if not page:
            break

        crossed = False
        for message in page:
            if message["createdTimestamp"] > last_archive_time:
                result.messages.append(message)
            else:
                crossed = True
                break

        before_id = page[-1]["id"]
        await asyncio.sleep(page_delay_ms / 1000)

        if crossed:
            break

    print(
        f"[INFO] Fetched {len(result.messages)} messages from channel {channel_id} "
        f"in {result.pages} pages ({result.errors} errors)",
        file=sys.stderr
    )
    return result


def _emoji_key(emoji: Any) -> Any:
    # Custom emoji are addressed by id, unicode emoji by name
    if isinstance(emoji, dict):
        return emoji.get("id") or emoji.get("name")
    return emoji


async def resolve_reaction_users(
    client: PlatformClient,
    channel_id: str,
    messages: list[dict[str, Any]]
) -> int:
    """
    Fill in the user list of every reaction that arrived without one.

    One fetch per reaction, awaited in order. A failed fetch leaves that
    reaction's users empty and is logged.

    Returns:
        Number of reactions whose user fetch failed.
    """
    failed = 0
    for message in messages:
        for reaction in message.get("reactions") or []:
            if not isinstance(reaction, dict) or reaction.get("users") is not None:
                continue
            try:
                users = await client.fetch_reaction_users(
                    channel_id, message["id"], _emoji_key(reaction.get("emoji"))
                )
                reaction["users"] = list(users)
            except Exception as e:
                failed += 1
                reaction["users"] = []
                print(f"[WARN] Reaction user fetch failed for message {message['id']}: {e}", file=sys.stderr)
    return failed
