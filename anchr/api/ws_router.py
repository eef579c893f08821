"""WebSocket route subscribers connect to."""
from fastapi import APIRouter, WebSocket

router = APIRouter(tags=["websocket"])


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    Real-time channel for subscribers.

    Every frame is JSON text of the form ``{"type": ..., "data": ...}``:
    - ``stats`` is pushed once, right after the connection opens
    - ``webhook`` carries one captured event
    - ``pong`` answers a client ``{"type": "ping"}`` with a timestamp

    Example client (Python):
    ```python
    async with websockets.connect("ws://localhost:3000/ws") as ws:
        async for frame in ws:
            message = json.loads(frame)
            if message["type"] == "webhook":
                print(message["data"]["endpoint"])
    ```
    """
    await websocket.app.state.hub.serve(websocket)
