"""
Admin CLI tool for ClassDB.

This tool inspects and maintains a ClassDB store directly:
- schema: Print the loaded schema as JSON
- find: Query a class as master
- purge: Drop every collection under the collection prefix

Usage:
    classdb-admin schema
    classdb-admin find GameScore --where '{"score": {"$gt": 10}}' --limit 5
    classdb-admin find GameScore --count
    classdb-admin purge --yes

The store is selected through the usual environment variables
(STORAGE_BACKEND, DATA_DIR, COLLECTION_PREFIX, ...).

Invariants:
    - Exit code 0 on success, 1 on ClassDB or configuration errors, 2 on usage errors
    - JSON output is deterministic (sorted keys)
    - purge refuses to run without --yes

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for scripting
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Union

from ..access import MASTER, DataController
from ..config import ServerConfig
from ..errors import ClassDbError
from ..main import Runtime, setup_logging

logger = logging.getLogger(__name__)


class AdminCLI:
    """Admin commands over a connected DataController.

    Example:
        >>> cli = AdminCLI(controller)
        >>> print(await cli.schema())
        >>> await cli.find("GameScore", {"score": 10}, limit=1)
    """

    def __init__(self, controller: DataController) -> None:
        self.controller = controller

    async def schema(self) -> str:
        """Export the loaded schema as JSON."""
        schema = await self.controller.load_schema()
        return json.dumps(schema.to_dict(), indent=2, sort_keys=True)

    async def find(
        self,
        class_name: str,
        where: Dict[str, Any],
        limit: Optional[int] = None,
        skip: Optional[int] = None,
        count: bool = False,
    ) -> Union[List[Dict[str, Any]], int]:
        """Find objects as master."""
        options = MASTER.model_copy(update={"limit": limit, "skip": skip, "count": count})
        return await self.controller.find(class_name, where, options)

    async def purge(self) -> None:
        """Drop every collection under the prefix."""
        await self.controller.delete_everything()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="classdb-admin", description="ClassDB admin tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # schema command
    subparsers.add_parser("schema", help="Print the stored schema as JSON")

    # find command
    find_parser = subparsers.add_parser("find", help="Query a class as master")
    find_parser.add_argument("class_name", help="Class to query")
    find_parser.add_argument("--where", default="{}", help="Query as a JSON object")
    find_parser.add_argument("--limit", type=int, help="Maximum number of results")
    find_parser.add_argument("--skip", type=int, help="Number of results to skip")
    find_parser.add_argument("--count", action="store_true", help="Print the match count")

    # purge command
    purge_parser = subparsers.add_parser("purge", help="Drop every collection")
    purge_parser.add_argument("--yes", action="store_true", help="Confirm the purge")

    return parser


async def _run(cli: AdminCLI, args: argparse.Namespace, where: Dict[str, Any]) -> str:
    if args.command == "schema":
        return await cli.schema()

    if args.command == "find":
        result = await cli.find(
            args.class_name, where, limit=args.limit, skip=args.skip, count=args.count
        )
        return json.dumps(result, indent=2, sort_keys=True, default=str)

    await cli.purge()
    return "Purged every collection"


async def _execute(runtime: Runtime, args: argparse.Namespace, where: Dict[str, Any]) -> str:
    controller = await runtime.start()
    try:
        return await _run(AdminCLI(controller), args, where)
    finally:
        await runtime.stop()


def main(argv: Optional[List[str]] = None, runtime: Optional[Runtime] = None) -> None:
    """CLI entry point for the admin tool."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    where: Dict[str, Any] = {}
    if args.command == "find":
        try:
            where = json.loads(args.where)
        except json.JSONDecodeError as e:
            parser.error(f"--where is not valid JSON: {e}")
        if not isinstance(where, dict):
            parser.error("--where must be a JSON object")
    if args.command == "purge" and not args.yes:
        parser.error("purge drops every collection; pass --yes to confirm")

    if runtime is None:
        try:
            config = ServerConfig.from_env()
        except ValueError as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            sys.exit(1)
        setup_logging(config)
        config.log_config()
        runtime = Runtime(config)

    try:
        output = asyncio.run(_execute(runtime, args, where))
    except ClassDbError as e:
        logger.debug("Admin command failed", extra={"code": e.code})
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)

    print(output)
    sys.exit(0)


if __name__ == "__main__":
    main()
