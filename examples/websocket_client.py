#!/usr/bin/env python3
"""
Simple WebSocket client that listens to /ws/updates and prints status events.

Usage:
    python examples/websocket_client.py [ws://127.0.0.1:8080/ws/updates]
"""

import asyncio
import json
import sys

import websockets  # type: ignore


async def listen_for_updates(uri: str):
    """Print every event pushed by the server until interrupted."""
    print(f"Connecting to {uri}...")

    try:
        async with websockets.connect(uri) as websocket:
            print("✅ Connected successfully!")

            async for message in websocket:
                try:
                    event = json.loads(message)
                except json.JSONDecodeError as e:
                    print(f"❌ Failed to parse JSON: {e}")
                    print(f"Raw message: {message}")
                    continue

                event_type = event.get("type", "unknown")
                payload = event.get("payload") or {}
                server = payload.get("server", {})
                heartbeat = payload.get("heartbeat", {})
                weather = payload.get("weather")

                print(f"\n📡 {event_type} at {event.get('timestamp')}")
                if server:
                    print(f"   server v{server.get('version')} up {server.get('uptime')}s")
                if heartbeat:
                    print(f"   heartbeat last={heartbeat.get('lastRun')} next={heartbeat.get('nextRun')}")
                if weather:
                    print(f"   weather {weather.get('temperature')}° {weather.get('condition')} in {weather.get('location')}")

    except Exception as e:
        print(f"❌ Error: {e}")


if __name__ == "__main__":
    target = sys.argv[1] if len(sys.argv) > 1 else "ws://127.0.0.1:8080/ws/updates"
    asyncio.run(listen_for_updates(target))
