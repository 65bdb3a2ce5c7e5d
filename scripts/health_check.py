from __future__ import annotations

import asyncio
import os

import httpx

from actions_gateway.client import ActionsClient, ActionsClientError


GATEWAY_URL = os.getenv("ACTIONS_GATEWAY_URL", "http://127.0.0.1:3030")


async def main() -> None:
    print(f"Connecting to actions gateway at {GATEWAY_URL}...")
    async with ActionsClient(
        GATEWAY_URL,
        token=os.getenv("ACTIONS_GATEWAY_TOKEN"),
        tenant_id=os.getenv("ACTIONS_GATEWAY_TENANT"),
    ) as client:
        try:
            health = await client.health()
        except (ActionsClientError, httpx.HTTPError) as exc:
            print("/health FAILED")
            print(repr(exc))
            raise SystemExit(1)
        print(f"/health OK (uptime {health.get('uptime_ms')} ms)")

        print("Calling meta.health...")
        try:
            result = await client.call("meta.health")
            print("meta.health OK")
            print(result)
        except ActionsClientError as exc:
            print("meta.health FAILED")
            print(repr(exc))
            raise SystemExit(1)


if __name__ == "__main__":
    asyncio.run(main())
