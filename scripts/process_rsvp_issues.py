#!/usr/bin/env python3
"""RSVP issue processing CLI.

Folds RSVPs that were delivered through the issue fallback into
rsvps/<eventId>.json in the data repository and closes the issues.

Usage:
    process_rsvp_issues.py                  # Process open RSVP issues
    process_rsvp_issues.py --dry-run        # List what would be processed
    process_rsvp_issues.py --status         # Show configuration and connectivity
    process_rsvp_issues.py --json           # Print the result as JSON
"""

import argparse
import asyncio
import json
import sys

from eventcall.config import get_config
from eventcall.github.client import GitHubGateway
from eventcall.github.composer import extract_rsvp_from_issue
from eventcall.github.sync import RsvpIssueProcessor


async def show_status(config) -> int:
    """Display configuration and check connectivity."""
    print("EventCall Status")
    print("=" * 50)
    print(f"Owner: {config.github_owner}")
    print(f"Main repo: {config.github_repo}")
    print(f"Data repo: {config.github_data_repo}")
    print(f"Image repo: {config.github_image_repo}")
    print(f"Tokens in rotation: {len(config.get_tokens())}")
    print(f"Fallback token set: {config.get_fallback_token() is not None}")
    print()

    async with GitHubGateway(config) as gateway:
        result = await gateway.test_connection()
    if result["success"]:
        print(f"Connection OK: {result['full_name']}")
        return 0
    print(f"Connection FAILED: {result['error']}")
    return 1


async def dry_run(config) -> int:
    """List open RSVP issues and the event each would be merged into."""
    async with GitHubGateway(config) as gateway:
        issues = await gateway.list_issues(labels="rsvp", state="open")
    print(f"Open RSVP issues: {len(issues)}")
    for issue in issues:
        payload = extract_rsvp_from_issue(issue)
        target = payload.get("eventId") if payload else "(no RSVP payload)"
        print(f"  #{issue.get('number')}: {issue.get('title', '')} -> {target}")
    return 0


async def run_processing(config, as_json: bool = False) -> int:
    """Run one processing pass."""
    async with GitHubGateway(config) as gateway:
        result = await RsvpIssueProcessor(gateway).process()

    if as_json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(f"  Issues found: {result.total_issues}")
        print(f"  Processed: {result.processed}")
        print(f"  Errors: {result.errors}")
        print(f"  Events updated: {', '.join(result.event_ids) or '-'}")
        print(f"  Duration: {result.duration_seconds:.1f}s")
        for detail in result.error_details:
            print(f"  ! {detail}")
    return 1 if result.errors else 0


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Process RSVP issues into the EventCall data repository",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                    # Process open RSVP issues
  %(prog)s --dry-run          # Show what would be processed
  %(prog)s --status           # Check configuration and connectivity

Configuration:
  Set credentials in .env:
    EVENTCALL_GITHUB_TOKEN=ghp_your_token_here
    EVENTCALL_GITHUB_TOKENS=ghp_a,ghp_b      # optional rotation set
        """,
    )

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--dry-run", action="store_true", help="List issues without writing")
    mode_group.add_argument("--status", action="store_true", help="Display status and test connection")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")

    args = parser.parse_args()

    config = get_config()

    if not config.get_tokens() and config.get_fallback_token() is None:
        print("ERROR: No GitHub credential configured")
        print("Set EVENTCALL_GITHUB_TOKEN or EVENTCALL_GITHUB_TOKENS in your .env file")
        sys.exit(1)

    if args.status:
        sys.exit(asyncio.run(show_status(config)))
    if args.dry_run:
        sys.exit(asyncio.run(dry_run(config)))

    exit_code = asyncio.run(run_processing(config, as_json=args.json))
    if not args.json:
        print("\nDone.")
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
