"""Terminal chat client for a running chat server.

    python scripts/chat.py --url http://127.0.0.1:8000

Type a message and press Enter. ``/id`` prints the conversation id,
``/quit`` exits.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from kv_chat.client import ChatClient, HttpChatTransport  # noqa: E402


async def repl(client: ChatClient) -> None:
    seen = len(client.transcript)
    while True:
        try:
            line = await asyncio.to_thread(input, "you> ")
        except EOFError:
            return
        cmd = line.strip()
        if cmd == "/quit":
            return
        if cmd == "/id":
            print(client.conversation_id)
            continue

        client.set_input(line)
        if not await client.submit():
            continue
        for m in client.transcript[seen:]:
            if m.role == "assistant":
                print(f"ai> {m.content}\n")
        seen = len(client.transcript)


async def amain(args: argparse.Namespace) -> None:
    transport = HttpChatTransport(args.url, timeout=args.timeout)
    client = ChatClient(
        transport,
        conversation_id=args.chat_id,
        adopt_server_history=args.adopt_history,
    )
    try:
        await repl(client)
    finally:
        await transport.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Chat with the server from a terminal.")
    parser.add_argument("--url", default=os.environ.get("KV_CHAT_URL", "http://127.0.0.1:8000"))
    parser.add_argument("--chat-id", default=None, help="Resume an existing conversation id.")
    parser.add_argument("--timeout", type=float, default=120.0, help="Request timeout in seconds.")
    parser.add_argument(
        "--adopt-history",
        action="store_true",
        help="Replace the local view with the server's history after each reply.",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.WARNING)
    asyncio.run(amain(args))


if __name__ == "__main__":
    main()
