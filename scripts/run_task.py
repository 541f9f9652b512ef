#!/usr/bin/env python3
"""Submit one task to the pipeline against a local database and print the result."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

logging.basicConfig(level=logging.INFO, format="%(asctime)s [taskpilot] %(levelname)s %(message)s")
logger = logging.getLogger("run_task")


class ConsoleTransport:
    """Prints outbound messages instead of delivering them."""

    async def send(self, channel, destination, text):
        print(f"\n--- {channel.value} → {destination} ---\n{text}\n")


class ConsoleOutbox:
    async def send_email(self, owner_id, to, subject, body):
        print(f"\n--- email for {owner_id} → {to}: {subject} ---\n{body}\n")

    async def schedule(self, owner_id, when, text):
        print(f"[schedule] {owner_id} @ {when}: {text}")

    async def remember(self, owner_id, fact):
        print(f"[remember] {owner_id}: {fact}")


async def _run(args) -> int:
    from pilot.common.config import PipelineConfig
    from pilot.common.llm_client import LLMClient
    from pilot.common.protocol import ConfirmationMode, InputChannel, TaskRequest
    from pilot.orchestrator import TaskProcessor

    config = PipelineConfig.from_env(args.config)
    if args.db:
        config.db_path = args.db
    llm = LLMClient.from_config(config)
    processor = TaskProcessor(config, llm, transport=ConsoleTransport(), outbox=ConsoleOutbox())
    try:
        result = await processor.process_incoming(
            TaskRequest(owner_id=args.owner, origin=args.origin, body=args.text,
                        channel=InputChannel(args.channel)),
            mode=ConfirmationMode(args.confirm),
            facts=args.fact or [],
        )
        while result.status.value == "awaiting_confirmation" and sys.stdin.isatty():
            reply = input("Reply (yes / no / changes): ").strip()
            result = await processor.handle_confirmation_reply(result.task_id, reply)
        if result.status.value == "awaiting_input" and sys.stdin.isatty():
            code = input("Verification code: ").strip()
            result = await processor.handle_verification_code(result.task_id, code)
    finally:
        await processor.close()
        await llm.close()

    print(f"Task {result.task_id}: {result.status.value} ({len(result.actions)} actions)")
    return 0 if result.success else 1


def main():
    parser = argparse.ArgumentParser(description="Run a single delegated task")
    parser.add_argument("text", help="What you want done")
    parser.add_argument("--owner", default="local", help="Owner id")
    parser.add_argument("--origin", default="local@example.com", help="Reply destination")
    parser.add_argument("--channel", default="email", choices=["email", "sms", "voice", "web"])
    parser.add_argument("--confirm", default="unclear", choices=["always", "never", "risky", "unclear"])
    parser.add_argument("--fact", action="append", help="Known fact about the owner (repeatable)")
    parser.add_argument("--db", help="Path to SQLite DB (overrides config)")
    parser.add_argument("--config", help="YAML config file")
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(_run(args)))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
