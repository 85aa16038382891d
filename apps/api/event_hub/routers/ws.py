from fastapi import APIRouter, WebSocket

router = APIRouter()


@router.websocket("/ws")
async def event_stream(websocket: WebSocket):
    await websocket.app.state.gateway.serve(websocket)
