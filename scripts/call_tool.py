from __future__ import annotations

import asyncio
import json
import os
import sys
from typing import Any, Dict

from actions_gateway.client import ActionsClient, ActionsClientError


GATEWAY_URL = os.getenv("ACTIONS_GATEWAY_URL", "http://127.0.0.1:3030")


async def main() -> None:
    if len(sys.argv) < 3:
        print("Usage: python scripts/call_tool.py <tool_name> '<json-args>' [idempotency-key]")
        raise SystemExit(1)

    tool_name = sys.argv[1]
    raw_args = sys.argv[2]
    idempotency_key = sys.argv[3] if len(sys.argv) > 3 else None

    try:
        params: Dict[str, Any] = json.loads(raw_args)
    except ValueError as exc:
        print("Failed to parse JSON arguments")
        print(repr(exc))
        raise SystemExit(1)

    async with ActionsClient(
        GATEWAY_URL,
        token=os.getenv("ACTIONS_GATEWAY_TOKEN"),
        tenant_id=os.getenv("ACTIONS_GATEWAY_TENANT"),
    ) as client:
        try:
            result = await client.call(tool_name, params, idempotency_key=idempotency_key)
            print("Tool call result:")
            print(json.dumps(result, indent=2))
        except ActionsClientError as exc:
            print(f"Tool call failed ({exc.status}):")
            print(json.dumps(exc.body, indent=2) if isinstance(exc.body, dict) else exc.body)
            raise SystemExit(1)


if __name__ == "__main__":
    asyncio.run(main())
