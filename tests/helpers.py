"""Polling helpers for tests that watch asynchronous state."""

import asyncio
import json

from websockets.asyncio.client import connect


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Wait until predicate() is truthy or fail after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


async def recv_json(websocket, timeout: float = 2.0) -> dict:
    return json.loads(await asyncio.wait_for(websocket.recv(), timeout=timeout))


async def assert_silent(websocket, timeout: float = 0.2) -> None:
    """Fail if websocket receives anything within timeout seconds."""
    try:
        message = await asyncio.wait_for(websocket.recv(), timeout=timeout)
    except asyncio.TimeoutError:
        return
    raise AssertionError(f"Unexpected message: {message!r}")


async def connect_device(url: str, device_id: str, relay=None):
    """Open a socket, register device_id and wait for the relay to bind it."""
    previous = await relay.registry.lookup(device_id) if relay is not None else None
    websocket = await connect(url)
    await websocket.send(json.dumps({"type": "register", "from": device_id}))
    if relay is not None:
        await wait_registered(relay, device_id, previous=previous)
    return websocket


async def wait_registered(relay, device_id: str, previous=None, timeout: float = 2.0):
    """Wait until device_id is bound to a connection other than previous."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        handle = await relay.registry.lookup(device_id)
        if handle is not None and handle is not previous:
            return handle
        if loop.time() > deadline:
            raise AssertionError(f"{device_id} not registered within {timeout}s")
        await asyncio.sleep(0.01)
