#!/usr/bin/env python3
"""
Stream a chat answer from /v1/chat/stream and print deltas as they arrive.

Usage:
    python examples/chat_stream_client.py "Tell me a short joke" [--model llama3]
"""

import argparse
import asyncio
import json

import httpx


async def stream_chat(base_url: str, prompt: str, model: str | None):
    """POST a one-turn conversation and print the SSE stream."""
    body = {"messages": [{"role": "user", "content": prompt}]}
    if model:
        body["model"] = model

    print(f"📤 Sending: {prompt}")
    async with httpx.AsyncClient(base_url=base_url, timeout=None) as client:
        async with client.stream("POST", "/v1/chat/stream", json=body) as response:
            if response.status_code != 200:
                print(f"❌ HTTP {response.status_code}: {(await response.aread()).decode()}")
                return

            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                event = json.loads(line[len("data: "):])

                if event["type"] == "delta":
                    print(event["delta"], end="", flush=True)
                elif event["type"] == "done":
                    print("\n\n✅ Chat completed!")
                    break
                elif event["type"] == "error":
                    print(f"\n❌ Error: {event.get('error', 'Unknown error')}")
                    break


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Nyl chat stream client")
    parser.add_argument("prompt")
    parser.add_argument("--model", default=None)
    parser.add_argument("--base-url", default="http://127.0.0.1:8080")
    args = parser.parse_args()
    asyncio.run(stream_chat(args.base_url, args.prompt, args.model))
