"""
Agent REST and WebSocket routes.

Local surface for inspecting and controlling the jobs this agent holds.
"""

import asyncio

from fastapi import APIRouter, Request, WebSocket, status

from fleet_agent.application.agent import Agent
from fleet_agent.application.services.log_broadcaster import Subscription
from fleet_agent.domain.value_objects import utc_now
from fleet_agent.errors import TaskNotFoundError
from fleet_agent.infrastructure.logging import get_logger
from fleet_agent.interfaces.http.schemas import (
    ErrorResponse,
    ExecuteRequest,
    ExecuteResponse,
    HealthResponse,
    InfoResponse,
    StopResponse,
    TaskStatusResponse,
)


logger = get_logger(__name__)

router = APIRouter()

# Close code sent to log observers of an unknown task.
WS_CLOSE_NOT_FOUND = 4404

NOT_FOUND_RESPONSES = {404: {"model": ErrorResponse, "description": "Task not found"}}


def get_agent(request: Request) -> Agent:
    return request.app.state.agent


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health() -> HealthResponse:
    return HealthResponse(status="ok", timestamp=utc_now().isoformat())


@router.get("/info", response_model=InfoResponse, tags=["agent"])
async def info(request: Request) -> InfoResponse:
    """Identity, registration flag, task counts, capabilities and resources."""
    return InfoResponse.model_validate(get_agent(request).info())


@router.post("/execute", response_model=ExecuteResponse, tags=["tasks"])
async def execute(request: Request, body: ExecuteRequest) -> ExecuteResponse:
    """
    Submit a load-test job directly.

    Returns immediately; the job runs exactly as a polled one would.
    """
    state = get_agent(request).execute(
        script_id=body.script_id,
        script_content=body.script_content,
        parameters=body.parameters,
        options=body.options,
        callback_url=body.callback_url,
        timeout=body.timeout,
    )
    return ExecuteResponse(task_id=state.id, status=state.status.value)


@router.get("/status/{task_id}", response_model=TaskStatusResponse, responses=NOT_FOUND_RESPONSES, tags=["tasks"])
async def task_status(request: Request, task_id: str) -> TaskStatusResponse:
    state = get_agent(request).get_task(task_id)
    return TaskStatusResponse.model_validate(state.to_dict())


@router.post(
    "/stop/{task_id}",
    response_model=StopResponse,
    status_code=status.HTTP_200_OK,
    responses=NOT_FOUND_RESPONSES,
    tags=["tasks"],
)
async def stop_task(request: Request, task_id: str) -> StopResponse:
    """Cancel a task; stopping a finished task succeeds and changes nothing."""
    state = get_agent(request).stop_task(task_id)
    message = "Task already finished" if state.is_terminal else "Task stop requested"
    return StopResponse(task_id=state.id, status=state.status.value, message=message)


@router.websocket("/ws/{task_id}")
async def stream_logs(websocket: WebSocket, task_id: str) -> None:
    """
    Live log stream of one task.

    Sends the log history first, then new lines as they are produced.
    The socket is closed when the task's log channel closes; a peer that
    disconnects is unsubscribed.
    """
    agent: Agent = websocket.app.state.agent
    try:
        subscription = agent.subscribe(task_id)
    except TaskNotFoundError:
        await websocket.close(code=WS_CLOSE_NOT_FOUND)
        return

    await websocket.accept()
    logger.info("Log observer connected", task_id=task_id)

    sender = asyncio.create_task(_forward(websocket, subscription))
    receiver = asyncio.create_task(_watch_disconnect(websocket))
    try:
        done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        subscription.close()
        sender.cancel()
        receiver.cancel()
        await asyncio.gather(sender, receiver, return_exceptions=True)

    if sender in done and not sender.cancelled() and sender.exception() is None:
        # Channel closed: every line was delivered.
        try:
            await websocket.close()
        except RuntimeError:
            # Peer already gone.
            logger.debug("Log observer closed before the stream ended", task_id=task_id)

    logger.info("Log observer disconnected", task_id=task_id)


async def _forward(websocket: WebSocket, subscription: Subscription) -> None:
    async for line in subscription:
        await websocket.send_text(line)


async def _watch_disconnect(websocket: WebSocket) -> None:
    """Discard anything the peer sends; return once it disconnects."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
