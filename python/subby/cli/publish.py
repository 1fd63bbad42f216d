#!/usr/bin/env python3
"""
subby/cli/publish.py

CLI for publishing to Pub/Sub with discovered credentials:
  - publish: publish one JSON document (from --json-file or stdin) to a topic
  - whoami: show which project and credential strategy would be used
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Callable, Coroutine, Dict, List, Optional

from subby.errors import PubSubError
from subby.models.settings import PubSubSettings
from subby.pubsub.client import PubSub


async def _build_client(args: argparse.Namespace) -> PubSub:
    builder = PubSub.builder()
    if getattr(args, "no_validate", False):
        builder.set_settings(PubSubSettings(validate_topics=False))
    if args.project_id:
        builder.set_project_id(args.project_id)
    if args.key_file:
        await builder.set_sa_key(args.key_file)
    return await builder.build()


def parse_attributes(pairs: Optional[List[str]]) -> Dict[str, str]:
    """
    Turn ["k=v", ...] into a dict.

    Raises:
        ValueError: If an entry has no '=' or an empty key.
    """
    attributes: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid attribute '{pair}', expected key=value.")
        attributes[key] = value
    return attributes


def _load_message(args: argparse.Namespace) -> Any:
    if args.json_file:
        with open(args.json_file, "r", encoding="utf-8") as f:
            return json.load(f)
    return json.load(sys.stdin)


#
# Subcommand handlers
#
async def run_publish(args: argparse.Namespace) -> None:
    """
    Publish a JSON document to a topic and print the message id as JSON.

    Raises SystemExit on error.
    """
    try:
        message = _load_message(args)
        attributes = parse_attributes(args.attribute)
    except (OSError, ValueError) as exc:
        print(f"Error reading message: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        async with await _build_client(args) as pubsub:
            topic = pubsub.topic(args.topic)
            message_id = await topic.publish(
                message, attributes=attributes, timeout=args.timeout
            )
    except PubSubError as exc:
        print(f"Error: cannot publish to '{args.topic}': {exc}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps({"messageIds": [message_id]}, indent=2))


async def run_whoami(args: argparse.Namespace) -> None:
    """Print the resolved project id and credential strategy (never the token)."""
    try:
        async with await _build_client(args) as pubsub:
            info = {
                "project_id": pubsub.project_id,
                "credentials": pubsub.identity.source.kind,
            }
    except PubSubError as exc:
        print(f"Error: cannot resolve credentials: {exc}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(info, indent=2))


def main(argv: Optional[List[str]] = None) -> None:
    """
    CLI entry point:
      - publish
      - whoami
    """
    parser = argparse.ArgumentParser(
        prog="subby",
        description="Publish JSON messages to Google Cloud Pub/Sub.",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging."
    )

    subparsers = parser.add_subparsers(
        dest="command",
        required=True,
        help="Sub-command to run. Use -h/--help after a subcommand for more usage details.",
    )

    #
    # publish
    #
    publish_parser = subparsers.add_parser(
        "publish", help="Publish one JSON document to a topic."
    )
    _add_credential_args(publish_parser)
    publish_parser.add_argument("--topic", required=True, help="Topic name.")
    publish_parser.add_argument(
        "--json-file", help="JSON file to publish instead of stdin."
    )
    publish_parser.add_argument(
        "--attribute",
        action="append",
        metavar="KEY=VALUE",
        help="Message attribute; may be repeated.",
    )
    publish_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Budget in seconds for the whole publish (default: SUBBY_REQUEST_TIMEOUT_SECONDS or 30).",
    )
    publish_parser.add_argument(
        "--no-validate",
        action="store_true",
        default=False,
        help="Skip the topic existence check before publishing.",
    )
    publish_parser.set_defaults(func=run_publish)

    #
    # whoami
    #
    whoami_parser = subparsers.add_parser(
        "whoami", help="Show the resolved project id and credential strategy."
    )
    _add_credential_args(whoami_parser)
    whoami_parser.set_defaults(func=run_whoami)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    func: Callable[[argparse.Namespace], Coroutine[Any, Any, None]] = args.func
    asyncio.run(func(args))


def _add_credential_args(subparser: argparse.ArgumentParser) -> None:
    """
    Add explicit credential overrides. Anything omitted is discovered from
    GOOGLE_APPLICATION_CREDENTIALS, GCLOUD_PROJECT_ID or the GCE metadata service.
    """
    subparser.add_argument(
        "--project-id", help="Project id (overrides every discovered value)."
    )
    subparser.add_argument(
        "--key-file",
        help="Service account JSON key (overrides GOOGLE_APPLICATION_CREDENTIALS).",
    )


if __name__ == "__main__":
    main()
