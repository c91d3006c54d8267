import asyncio
import json

from websockets.asyncio.client import connect

# Community id to watch; copy it from the community page URL
COMMUNITY_ID = "79ca2f40-7871-4a1e-a3a0-b4907c69d699"
FEED_URL = "ws://localhost:4000/realtime/v1/websocket"


async def main():
    topic = f"community_messages_{COMMUNITY_ID}"
    async with connect(FEED_URL) as ws:
        # Wait for the server confirmation first
        hello = await ws.recv()
        print(f"Hello: {hello}")

        await ws.send(json.dumps({
            "type": "join",
            "topic": topic,
            "bindings": [{
                "schema": "public",
                "table": "community_messages",
                "filter": f"community_id=eq.{COMMUNITY_ID}",
            }],
            "events": ["DELETE", "INSERT", "UPDATE"],
        }))

        # Print events until interrupted
        async for raw in ws:
            frame = json.loads(raw)
            payload = frame.get("payload") or {}
            print(f"{frame.get('type')}: {payload.get('eventType')} {payload.get('new') or payload.get('old')}")


asyncio.run(main())
