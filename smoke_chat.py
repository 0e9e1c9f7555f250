"""Manual smoke test against a running relay: python smoke_chat.py [url] [pairId]"""
import asyncio
import json
import sys

import websockets


async def main(url: str, pair_id: str) -> None:
    async with websockets.connect(url) as alice, websockets.connect(url) as bob:
        await alice.send(json.dumps({"type": "hello", "pairId": pair_id, "userId": "alice"}))
        print(f"Alice welcome: {await alice.recv()}")
        print(f"Alice presence: {await alice.recv()}")

        await bob.send(json.dumps({"type": "hello", "pairId": pair_id, "userId": "bob"}))
        print(f"Bob welcome: {await bob.recv()}")
        print(f"Bob presence: {await bob.recv()}")
        print(f"Alice presence: {await alice.recv()}")

        await alice.send(json.dumps({"type": "chat", "text": "Hello from Python!"}))
        print(f"Bob received: {await bob.recv()}")


if __name__ == "__main__":
    url = sys.argv[1] if len(sys.argv) > 1 else "ws://localhost:3000/ws"
    pair_id = sys.argv[2] if len(sys.argv) > 2 else "smoke-test"
    asyncio.run(main(url, pair_id))
