"""CLI entry point for the clinic assistant.

A terminal chat that prints streamed replies as they arrive.  For
production, run the FastAPI server (clinic_assistant/server.py).

Usage:
    clinic-assistant-cli            # normal mode (quiet)
    clinic-assistant-cli --debug    # debug mode (shows collaborator calls)
    clinic-assistant-cli --no-stream
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from dotenv import load_dotenv

from clinic_assistant.agent import ClinicAssistant, create_clinic_assistant
from clinic_assistant.config import CLINIC_NAME
from clinic_assistant.models import ChunkType

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("clinic_assistant").setLevel(logging.DEBUG if debug else logging.INFO)


async def _print_streamed(assistant: ClinicAssistant, message: str) -> None:
    print("\nAssistant: ", end="", flush=True)
    async for chunk in assistant.process_query_stream(message):
        if chunk.type is ChunkType.METADATA:
            logger.debug("Stream metadata: %s", chunk.payload)
        elif chunk.type is ChunkType.CONTENT:
            print(chunk.payload["content"], end="", flush=True)
        elif chunk.type is ChunkType.ERROR:
            print(chunk.payload["message"], end="")
    print("\n")


async def _print_reply(assistant: ClinicAssistant, message: str) -> None:
    result = await assistant.process_query(message)
    print(f"\nAssistant: {result.message}")
    for treatment in result.treatments or []:
        print(f"  - {treatment.get('t_name') or treatment.get('name')}  {treatment.get('price') or ''}")
    print()


async def _chat_loop(stream: bool) -> None:
    assistant = create_clinic_assistant()
    answer = _print_streamed if stream else _print_reply
    try:
        while True:
            try:
                user_input = (await asyncio.to_thread(input, "You: ")).strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\nGoodbye!")
                break

            if not user_input:
                continue
            if user_input.lower() in ("exit", "quit", "q"):
                print("\nGoodbye! Have a great day!")
                break

            await answer(assistant, user_input)
    finally:
        await assistant.aggregator.aclose()


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description=f"{CLINIC_NAME} assistant CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument(
        "--no-stream", action="store_true",
        help="Print each reply in one piece instead of streaming it",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print(f"  {CLINIC_NAME} Assistant - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter. 'quit' to exit.")
    print("=" * 60 + "\n")

    try:
        asyncio.run(_chat_loop(stream=not args.no_stream))
    except KeyboardInterrupt:
        print("\n\nGoodbye!")


if __name__ == "__main__":
    main()
