"""
Dead-letter CLI for AuditStream operators.

Commands:
- list: Show dead-letter entries of a project
- replay: Re-deliver one entry to its original destination
- purge: Delete one entry, or all entries of a project/destination

Usage:
    auditstream-deadletters --server http://localhost:8080 list proj_1
    auditstream-deadletters list proj_1 --destination dst_9 --json
    auditstream-deadletters replay 3f1c...
    auditstream-deadletters purge --project proj_1 --destination dst_9
    auditstream-deadletters purge --entry 3f1c...

Invariants:
    - Any HTTP error or unreachable server exits non-zero
    - --json output is the server's response body, unchanged

How to change safely:
    - Keep command names and exit codes stable for scripts
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any

import httpx

DEFAULT_SERVER = "http://localhost:8080"


class CliError(Exception):
    """A request failed; message is printed to stderr."""


class DeadLetterCLI:
    """Thin client over the dead-letter HTTP API.

    Example:
        >>> cli = DeadLetterCLI("http://localhost:8080")
        >>> entries = cli.list("proj_1")
    """

    def __init__(self, server: str, client: httpx.Client | None = None) -> None:
        self.server = server.rstrip("/")
        self._client = client or httpx.Client(timeout=30.0)

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.request(method, f"{self.server}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise CliError(f"Request to {self.server} failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {"error": response.text}

        if response.is_error:
            code = body.get("error_code", "HTTP_ERROR")
            raise CliError(f"{response.status_code} {code}: {body.get('error', '')}")
        return body

    def list(
        self,
        project_id: str,
        destination_id: str | None = None,
        include_payload: bool = False,
    ) -> dict[str, Any]:
        params: dict[str, str] = {}
        if destination_id:
            params["destination_id"] = destination_id
        if include_payload:
            params["include_payload"] = "true"
        return self._request("GET", f"/v1/projects/{project_id}/dead-letters", params=params)

    def replay(self, entry_id: str) -> dict[str, Any]:
        return self._request("POST", f"/v1/dead-letters/{entry_id}/replay")

    def purge_entry(self, entry_id: str) -> dict[str, Any]:
        return self._request("DELETE", f"/v1/dead-letters/{entry_id}")

    def purge(self, project_id: str, destination_id: str | None = None) -> dict[str, Any]:
        params = {"destination_id": destination_id} if destination_id else {}
        return self._request("DELETE", f"/v1/projects/{project_id}/dead-letters", params=params)


def format_entries(body: dict[str, Any]) -> str:
    """Render a list response as one line per entry."""
    entries = body.get("entries", [])
    if not entries:
        return "No dead-letter entries"
    lines = [f"{len(entries)} dead-letter entr{'y' if len(entries) == 1 else 'ies'}:"]
    for entry in entries:
        lines.append(
            f"  {entry['entry_id']}  dest={entry['destination_id']}  "
            f"event={entry['event']['event_id']}  status={entry['status']}  "
            f"attempts={len(entry['failure_history'])}  "
            f"reason={entry['final_failure_reason']}"
        )
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="auditstream-deadletters", description="AuditStream dead-letter operations"
    )
    parser.add_argument(
        "--server",
        default=os.getenv("AUDITSTREAM_SERVER", DEFAULT_SERVER),
        help=f"Server base URL (default: $AUDITSTREAM_SERVER or {DEFAULT_SERVER})",
    )
    parser.add_argument("--json", action="store_true", help="Print raw JSON responses")
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List dead-letter entries of a project")
    list_parser.add_argument("project_id")
    list_parser.add_argument("--destination", help="Only entries for this destination")
    list_parser.add_argument(
        "--include-payload", action="store_true", help="Include event payloads"
    )

    replay_parser = subparsers.add_parser("replay", help="Replay one entry")
    replay_parser.add_argument("entry_id")

    purge_parser = subparsers.add_parser("purge", help="Delete dead-letter entries")
    target = purge_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--entry", help="Delete a single entry")
    target.add_argument("--project", help="Delete all entries of a project")
    purge_parser.add_argument("--destination", help="With --project, only this destination")

    return parser


def run(args: argparse.Namespace, cli: DeadLetterCLI) -> int:
    """Execute a parsed command.

    Returns:
        Process exit code
    """
    try:
        if args.command == "list":
            body = cli.list(args.project_id, args.destination, args.include_payload)
            print(json.dumps(body, indent=2) if args.json else format_entries(body))
        elif args.command == "replay":
            body = cli.replay(args.entry_id)
            print(
                json.dumps(body, indent=2)
                if args.json
                else f"Replay queued for {body['entry_id']} (replay #{body['replay_count']})"
            )
        else:
            if args.entry:
                body = cli.purge_entry(args.entry)
                message = f"Purged {args.entry}"
            else:
                body = cli.purge(args.project, args.destination)
                message = f"Purged {body['purged']} entries"
            print(json.dumps(body, indent=2) if args.json else message)
    except CliError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    if args.command == "purge" and args.destination and not args.project:
        print("Error: --destination requires --project", file=sys.stderr)
        sys.exit(2)

    cli = DeadLetterCLI(args.server)
    try:
        code = run(args, cli)
    finally:
        cli.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
