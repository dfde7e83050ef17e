"""CLI entry point for the reply router.

A terminal chat that sends every line through the same inbound handler the
API uses.  Side effects run inline.  Without ``REDIS_URL`` nothing is
remembered between messages, so context-dependent layers only fire with a
store configured.

Usage:
    python -m replyrouter.main                         # default tenant, quiet
    python -m replyrouter.main --business evlifethailand
    python -m replyrouter.main --debug                 # layer trace and HTTP logs
"""

from __future__ import annotations

import argparse
import logging
import uuid

from dotenv import load_dotenv

from replyrouter.business.registry import business_ids
from replyrouter.config import DEFAULT_BUSINESS_ID, REDIS_URL
from replyrouter.handler import InboundMessage, create_inbound_handler
from replyrouter.services.background import SyncDispatcher
from replyrouter.services.store import close_redis_client, create_redis_client

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("replyrouter").setLevel(logging.DEBUG if debug else logging.INFO)


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Reply router CLI")
    parser.add_argument(
        "--business", default=DEFAULT_BUSINESS_ID, choices=business_ids(),
        help="Tenant to chat with",
    )
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print(f"  Reply Router - CLI Chat ({args.business})")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new conversation.")
    print("=" * 60 + "\n")

    client = create_redis_client(REDIS_URL)
    handler = create_inbound_handler(client, SyncDispatcher())
    user_id = f"cli-{uuid.uuid4().hex[:8]}"
    logger.info("Started conversation %s:%s", args.business, user_id)

    try:
        while True:
            try:
                user_input = input("You: ").strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\nGoodbye!")
                break

            if not user_input:
                continue
            if user_input.lower() in ("exit", "quit", "q"):
                print("\nGoodbye!")
                break
            if user_input.lower() == "new":
                user_id = f"cli-{uuid.uuid4().hex[:8]}"
                print(f"\n>> New conversation: {user_id}\n")
                continue

            result = handler.handle(
                InboundMessage(business_id=args.business, user_id=user_id, text=user_input, channel="cli"),
            )
            if result.status == "skipped":
                print(f"\n[skipped: {result.reason}]\n")
                continue
            print(f"\nBot [{result.layer} {result.layer_name}]: {result.reply}")
            if result.clarify_options:
                print("     options: " + " | ".join(result.clarify_options))
            print()
    finally:
        close_redis_client(client)


if __name__ == "__main__":
    main()
