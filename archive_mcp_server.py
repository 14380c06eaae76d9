#!/usr/bin/env python3
"""
Archive MCP Server
A Model Context Protocol server for operating the channel archive stores.

Exposes tools for:
- Creating or migrating a guild store
- Replaying snapshot files into a store (backfill)
- Running the integrity audit
- Reading the ledger watermark for a channel
- Inspecting migration status
"""

import asyncio
import json
import sys
from typing import Any

# MCP imports
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent

# Local imports
from audit import audit, exit_code, hard_failures
from backfill import backfill
from config import load_config, output_dir as configured_output_dir
from ledger import last_archive_time
from migrations import MIGRATIONS_DIR, get_status
from store import ArchiveStore, guild_db_path
from time_utils import ms_to_iso

CONFIG = load_config()
OUTPUT_DIR = configured_output_dir(CONFIG)

# Create MCP server
server = Server("channel-archive")


@server.list_tools()
async def list_tools() -> list[Tool]:
    """List all available archive tools."""
    return [
        Tool(
            name="archive_init_store",
            description="Create the guild's archive.db if missing and apply pending migrations.",
            inputSchema={
                "type": "object",
                "properties": {
                    "guild_id": {
                        "type": "string",
                        "description": "Guild whose store to initialize"
                    }
                },
                "required": ["guild_id"]
            }
        ),
        Tool(
            name="archive_backfill",
            description="Replay every snapshot file into the guild stores. Safe to re-run.",
            inputSchema={
                "type": "object",
                "properties": {
                    "guild_id": {
                        "type": "string",
                        "description": "Only backfill this guild (default: all guilds)"
                    }
                }
            }
        ),
        Tool(
            name="archive_audit",
            description="Run the integrity audit and snapshot diff. Reports hard failures.",
            inputSchema={
                "type": "object",
                "properties": {
                    "guild_id": {
                        "type": "string",
                        "description": "Only audit this guild (default: all guilds)"
                    },
                    "verbose": {
                        "type": "boolean",
                        "description": "Include passing checks and their details",
                        "default": False
                    }
                }
            }
        ),
        Tool(
            name="archive_last_run",
            description="Show the last completed archive run for a channel, from log.csv.",
            inputSchema={
                "type": "object",
                "properties": {
                    "guild_id": {"type": "string", "description": "Guild id"},
                    "channel_id": {"type": "string", "description": "Channel id"}
                },
                "required": ["guild_id", "channel_id"]
            }
        ),
        Tool(
            name="archive_migration_status",
            description="List applied and pending migrations for a guild store.",
            inputSchema={
                "type": "object",
                "properties": {
                    "guild_id": {"type": "string", "description": "Guild id"}
                },
                "required": ["guild_id"]
            }
        ),
    ]


def format_audit(results: dict[str, list[dict]], verbose: bool = False) -> str:
    if not results:
        return "No guild stores with rows to audit."

    lines = ["## Archive Audit\n"]
    for guild_id, checks in results.items():
        failed = hard_failures(checks)
        lines.append(f"**Guild {guild_id}**: {len(checks) - len(failed)}/{len(checks)} checks ok")
        for check in checks:
            if check in failed:
                lines.append(f"- FAIL {check['name']}: {json.dumps(check['details'], default=str)}")
            elif verbose:
                lines.append(f"- {check['type']} {check['name']}: {json.dumps(check['details'], default=str)}")
        lines.append("")

    status = "PASSED" if exit_code(results) == 0 else "FAILED"
    lines.append(f"Overall: {status}")
    return "\n".join(lines)


def format_backfill(summaries) -> str:
    if not summaries:
        return "No guild directories found."

    lines = ["## Backfill\n"]
    for s in summaries:
        if s.aborted:
            reason = f"missing columns {s.missing_columns}" if s.missing_columns else s.channel_errors
            lines.append(f"**Guild {s.guild_id}**: ABORTED ({reason})")
            continue
        lines.append(
            f"**Guild {s.guild_id}**: {s.rows_before} -> {s.rows_after} rows, "
            f"{s.files_processed} files, {s.messages_inserted} upserted, "
            f"{s.messages_skipped_no_author} without author, {s.messages_invalid} invalid"
        )
        if s.channel_errors:
            for err in s.channel_errors:
                lines.append(f"  - {err['channel']}: {err['error']}")
        if s.spot_check_failed:
            lines.append(f"  - Metadata spot-check FAILED: {s.spot_check['failures']}")
    return "\n".join(lines)


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    """Handle tool calls."""

    try:
        if name == "archive_init_store":
            guild_id = arguments["guild_id"]
            result = ArchiveStore.for_guild(OUTPUT_DIR, guild_id).initialize()
            migrations = result["migrations"]
            text = f"Store ready: {guild_db_path(OUTPUT_DIR, guild_id)}\n"
            text += f"Created: {result['created']}\n"
            text += f"Migrations applied: {', '.join(migrations['applied']) or 'none'}"
            return [TextContent(type="text", text=text)]

        elif name == "archive_backfill":
            summaries = await asyncio.to_thread(backfill, arguments.get("guild_id"), OUTPUT_DIR, CONFIG)
            return [TextContent(type="text", text=format_backfill(summaries))]

        elif name == "archive_audit":
            results = await asyncio.to_thread(audit, arguments.get("guild_id"), OUTPUT_DIR, CONFIG)
            text = format_audit(results, arguments.get("verbose", False))
            return [TextContent(type="text", text=text)]

        elif name == "archive_last_run":
            guild_id = arguments["guild_id"]
            channel_id = arguments["channel_id"]
            watermark = last_archive_time(OUTPUT_DIR, guild_id, channel_id)
            text = f"Channel {channel_id} in guild {guild_id}\n"
            text += f"Last archive run: {ms_to_iso(watermark)} ({watermark})"
            return [TextContent(type="text", text=text)]

        elif name == "archive_migration_status":
            db_path = guild_db_path(OUTPUT_DIR, arguments["guild_id"])
            if not db_path.exists():
                return [TextContent(type="text", text=f"No store at {db_path}")]
            status = get_status(MIGRATIONS_DIR, str(db_path))
            return [TextContent(type="text", text=json.dumps(status, indent=2))]

        else:
            return [TextContent(type="text", text=f"Unknown tool: {name}")]

    except Exception as e:
        print(f"[ERROR] Tool {name} failed: {e}", file=sys.stderr)
        return [TextContent(type="text", text=f"Error executing {name}: {str(e)}")]


async def main():
    """Run the archive MCP server."""
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
