"""Command-line interface for inspecting and controlling a running engine."""

import argparse
import asyncio
import json
import sys
from typing import Any, Optional

from ..config import Config
from ..context import CleanupMode, Scope, suggest_scope
from ..ipc.client import EngineUnavailableError, send_command
from ..ipc.protocol import Command, CommandType
from ..logging import get_filtered_logs

# Subcommand -> command type, for the commands that go over the socket
REMOTE_COMMANDS = {
    "status": CommandType.STATUS,
    "contexts": CommandType.CONTEXTS,
    "usage": CommandType.USAGE,
    "cleanup": CommandType.CLEANUP,
    "archives": CommandType.ARCHIVES,
    "shutdown": CommandType.SHUTDOWN,
    "create": CommandType.CREATE,
    "remove": CommandType.REMOVE,
    "event": CommandType.EVENT,
    "tangent-push": CommandType.TANGENT_PUSH,
    "tangent-pop": CommandType.TANGENT_POP,
    "thresholds": CommandType.THRESHOLDS,
}

# Parsed argument names copied onto the command when set
COMMAND_ARGS = (
    "context_id",
    "mode",
    "limit",
    "scope",
    "task",
    "overrides",
    "force",
    "event_type",
    "payload",
    "importance",
    "reason",
    "new_task",
    "return_point",
    "result",
)

BOUNDARIES = ("warning", "critical", "emergency")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ctxguard-ctl",
        description="Inspect and control a running ctxguard engine",
    )
    parser.add_argument(
        "--socket",
        "-s",
        help="Path to engine socket (default: from config)",
    )
    parser.add_argument(
        "--config",
        "-c",
        help="Path to configuration file",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("status", help="Engine uptime and highest usage level")
    subparsers.add_parser("contexts", help="List active contexts")
    subparsers.add_parser("shutdown", help="Stop the engine")

    usage_parser = subparsers.add_parser("usage", help="Token usage of one context")
    usage_parser.add_argument("context_id")

    cleanup_parser = subparsers.add_parser("cleanup", help="Archive and prune one context now")
    cleanup_parser.add_argument("context_id")
    cleanup_parser.add_argument(
        "--mode",
        "-m",
        choices=[mode.value for mode in CleanupMode],
        default=CleanupMode.STANDARD.value,
    )

    archives_parser = subparsers.add_parser("archives", help="Archived logs of one context")
    archives_parser.add_argument("context_id")
    archives_parser.add_argument("--limit", "-n", type=int, default=10)

    create_parser = subparsers.add_parser("create", help="Create a context in the engine")
    create_parser.add_argument("context_id")
    create_parser.add_argument(
        "--scope",
        choices=[scope.value for scope in Scope],
        default=Scope.SESSION.value,
    )
    create_parser.add_argument("--task")
    create_parser.add_argument(
        "--overrides",
        type=json.loads,
        help='Config overrides as JSON, e.g. \'{"tokens": {"capacity": 100000}}\'',
    )
    create_parser.add_argument("--force", action="store_true", help="Replace an existing context")

    remove_parser = subparsers.add_parser("remove", help="Stop monitoring and drop a context")
    remove_parser.add_argument("context_id")

    event_parser = subparsers.add_parser("event", help="Append an event to a context")
    event_parser.add_argument("context_id")
    event_parser.add_argument("event_type")
    event_parser.add_argument("--payload", type=json.loads, help="Event payload as a JSON object")
    event_parser.add_argument("--importance", type=int)

    push_parser = subparsers.add_parser("tangent-push", help="Open a sub-task detour")
    push_parser.add_argument("context_id")
    push_parser.add_argument("new_task")
    push_parser.add_argument("--reason", default="")
    push_parser.add_argument("--return-point", dest="return_point")

    pop_parser = subparsers.add_parser("tangent-pop", help="Close the innermost detour")
    pop_parser.add_argument("context_id")
    pop_parser.add_argument("--result")

    thresholds_parser = subparsers.add_parser(
        "thresholds", help="Change the level boundaries of a context"
    )
    thresholds_parser.add_argument("context_id")
    for boundary in BOUNDARIES:
        thresholds_parser.add_argument(f"--{boundary}", type=float)

    suggest_parser = subparsers.add_parser(
        "suggest-scope", help="Suggest a scope for upcoming work (local)"
    )
    suggest_parser.add_argument("--goal")
    suggest_parser.add_argument("--vision")
    suggest_parser.add_argument(
        "--duration",
        dest="expected_duration",
        choices=["minutes", "hours", "days", "months"],
    )
    suggest_parser.add_argument("--complexity", choices=["low", "medium", "high"])
    suggest_parser.add_argument(
        "--external-deps", dest="has_external_dependencies", action="store_true"
    )
    suggest_parser.add_argument("--identity", dest="requires_identity", action="store_true")

    logs_parser = subparsers.add_parser("logs", help="Filter the local debug log")
    logs_parser.add_argument("--component")
    logs_parser.add_argument("--level", help="Log level, e.g. ERROR")
    logs_parser.add_argument("--usage", help="Usage level, e.g. critical")
    logs_parser.add_argument("--context", dest="context_id")
    logs_parser.add_argument("--lines", type=int, default=100)

    return parser


def build_command(args: argparse.Namespace) -> Command:
    """Map parsed arguments onto an engine command.

    Raises:
        ValueError: The arguments do not form a valid command.
    """
    command = Command(type=REMOTE_COMMANDS[args.command])
    for name in COMMAND_ARGS:
        value = getattr(args, name, None)
        if value is not None:
            setattr(command, name, value)
    if args.command == "thresholds":
        command.thresholds = {
            boundary: getattr(args, boundary)
            for boundary in BOUNDARIES
            if getattr(args, boundary) is not None
        }
    command.validate()
    return command


def print_response(command: str, response: dict[str, Any]) -> None:
    """Human-readable rendering of an engine response."""
    if command == "status":
        print(f"Uptime:   {response['uptime_seconds']:.1f}s")
        print(f"Contexts: {response['context_count']}")
        print(f"Highest:  {response['highest_level']}")
        for context_id, level in sorted(response["levels"].items()):
            print(f"  {context_id}: {level}")

    elif command == "contexts":
        if not response["contexts"]:
            print("No active contexts")
        for summary in response["contexts"]:
            print(
                f"{summary['context_id']:<24} {summary['scope']:<8} "
                f"{summary.get('level') or '-':<10} {summary['events']:>5} events  "
                f"{summary.get('task') or ''}"
            )

    elif command == "usage":
        usage = response["usage"]
        print(f"Context:  {response['context_id']}")
        print(
            f"Tokens:   {usage['tokens']} / {usage['capacity']} "
            f"({usage['percentage']}%, {usage['source']})"
        )
        print(f"Level:    {usage['level']}")
        trend = response.get("trend") or {}
        if trend:
            print(f"Trend:    {trend['trend']} ({trend['slope_per_minute']}%/min)")
            for level, eta in trend.get("predictions", {}).items():
                print(f"  {level} in ~{eta:.0f}s")
        compression = response.get("compression") or {}
        if compression:
            print(
                f"Cleanups: {compression['cleanups']} "
                f"({compression['tokens_saved']} tokens saved)"
            )

    elif command == "cleanup":
        result = response["result"]
        print(f"Cleanup {result['status']} ({result['mode']})")
        if result["status"] == "completed":
            print(f"Events:  {result['events_before']} -> {result['events_after']}")
            print(f"Tokens:  {result['tokens_before']} -> {result['tokens_after']}")
            print(f"Archive: {result['archive_id']}")

    elif command == "archives":
        if not response["archives"]:
            print("No archives")
        for record in response["archives"]:
            print(
                f"{record['archive_id']}  {record['timestamp']}  "
                f"{record['reason']:<20} {record['token_count']:>7} tokens"
            )

    elif command in ("create", "remove", "thresholds"):
        summary = response["context"]
        print(f"{response['message']}: {response['context_id']}")
        print(f"Scope:  {summary['scope']}")
        print(f"Events: {summary['events']}")
        if "thresholds" in summary:
            print("Levels: " + "/".join(str(summary["thresholds"][b]) for b in BOUNDARIES))

    elif command == "event":
        print(f"{response['event_id']} ({response['events']} events)")

    elif command in ("tangent-push", "tangent-pop"):
        print(f"Current task: {response['current_task']} (depth {response['depth']})")

    else:
        print(response.get("message", ""))


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point for ctxguard-ctl."""
    args = build_parser().parse_args(argv)

    if args.command == "logs":
        print(
            get_filtered_logs(
                component=args.component,
                level=args.level,
                usage=args.usage,
                context_id=args.context_id,
                lines=args.lines,
            ),
            end="",
        )
        return

    if args.command == "suggest-scope":
        requirements = {
            key: getattr(args, key)
            for key in (
                "goal",
                "vision",
                "expected_duration",
                "complexity",
                "has_external_dependencies",
                "requires_identity",
            )
        }
        print(json.dumps(suggest_scope(requirements).to_dict(), indent=2))
        return

    try:
        command = build_command(args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    socket_path = args.socket or Config.load(args.config).ipc.get_socket_path()
    try:
        response = asyncio.run(send_command(socket_path, command))
    except EngineUnavailableError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if response.get("status") != "ok":
        print(f"Error: {response.get('error') or response.get('message')}", file=sys.stderr)
        sys.exit(1)

    print_response(args.command, response)


if __name__ == "__main__":
    main()
