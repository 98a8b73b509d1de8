import asyncio

ADMIN = {"user_id": "user-admin", "role": "admin"}
LOGISTICS = {"user_id": "user-logistics", "role": "logistics"}
FINANCE = {"user_id": "user-finance", "role": "finance"}
VIEWER = {"user_id": "user-viewer", "role": "viewer"}


def run(coro):
    """Drive an engine coroutine to completion."""
    return asyncio.run(coro)
