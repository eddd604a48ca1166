"""
Streaming (websocket) endpoints for Stardeck.

Deploy, update and stack workflows run under the TaskSupervisor, not inside
the websocket handler: the handler only relays progress events. If the
client goes away the reporter detaches and the workflow finishes in the
background within its own timeout.

Each operation socket expects exactly one JSON message describing the
operation, then receives progress events until the terminal
``{"complete": true, ...}`` message.
"""

import asyncio
import codecs
import json
import logging
from typing import Any, Awaitable, Callable

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from api.containers import DeployContainerRequest, UpdateContainerRequest
from api.stacks import StackDeployOptions
from audit import AuditAction, AuditEntityType, record_action
from auth.api_key_auth import authenticate_websocket
from engine.errors import StardeckError
from progress.reporter import ProgressReporter
from services import Services
from websocket.connection import receive_request, send_json

logger = logging.getLogger(__name__)

router = APIRouter(tags=["streams"])

Workflow = Callable[[ProgressReporter], Awaitable[Any]]


async def _fail_request(websocket: WebSocket, error: str, step: str = "request") -> None:
    await send_json(websocket, {"complete": True, "success": False, "step": step, "error": error})
    await websocket.close()


def _validation_message(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        field = ".".join(str(loc) for loc in err.get("loc", ()))
        parts.append(f"{field}: {err.get('msg')}" if field else err.get("msg", "invalid"))
    return "; ".join(parts)


def _guard(workflow: Workflow, reporter: ProgressReporter) -> Awaitable[Any]:
    """Wrap a workflow so the client always gets a terminal event."""
    async def _run():
        try:
            return await workflow(reporter)
        except StardeckError as e:
            if reporter.final_event is None:
                await reporter.complete(False, error=str(e), step=e.step)
            raise
        except Exception as e:
            await reporter.complete(False, error=f"Unexpected error: {e}")
            raise
        finally:
            if reporter.final_event is None:
                # Cancelled or timed out before the workflow could report
                await reporter.complete(False, error="Operation cancelled or timed out")
    return _run()


async def _run_streamed(websocket: WebSocket, services: Services, name: str,
                        workflow: Workflow, timeout: float) -> None:
    """Start a supervised workflow and relay its progress to the socket."""
    reporter = services.new_reporter(name)
    try:
        services.supervisor.spawn(_guard(workflow, reporter), name=name, timeout=timeout)
    except RuntimeError as e:
        await _fail_request(websocket, str(e), step="start")
        return

    delivered = await reporter.relay(websocket)
    if delivered:
        try:
            await websocket.close()
        except RuntimeError:
            # Client closed first
            pass
    else:
        logger.info(f"Client left {name}; it continues in the background")


# ==================== Container workflows ====================

@router.websocket("/api/containers/deploy")
async def deploy_container_stream(websocket: WebSocket):
    await websocket.accept()
    services: Services = websocket.app.state.services
    user = await authenticate_websocket(websocket, services)
    if user is None:
        return

    data = await receive_request(websocket)
    if data is None:
        return
    try:
        body = DeployContainerRequest(**data)
    except ValidationError as e:
        await _fail_request(websocket, _validation_message(e), step="validate")
        return

    record_action(services.db, user, AuditAction.CONTAINER_CREATE, AuditEntityType.CONTAINER,
                  entity_id=body.name, entity_name=body.name, details={"image": body.image},
                  connection=websocket)
    logger.info(f"User {user['username']} deploying container '{body.name}' from {body.image}")

    async def _workflow(reporter: ProgressReporter):
        return await services.deployer.deploy(body.to_deploy_request(), reporter, created_by=user.get("user_id"))

    await _run_streamed(websocket, services, f"deploy-{body.name}", _workflow, services.config.UPDATE_TIMEOUT)


@router.websocket("/api/containers/update")
async def update_container_stream(websocket: WebSocket):
    await websocket.accept()
    services: Services = websocket.app.state.services
    user = await authenticate_websocket(websocket, services)
    if user is None:
        return

    data = await receive_request(websocket)
    if data is None:
        return
    try:
        body = UpdateContainerRequest(**data)
    except ValidationError as e:
        await _fail_request(websocket, _validation_message(e), step="validate")
        return
    request = body.to_update_request(services.config.DEFAULT_STOP_TIMEOUT)
    container_ref = request.container_ref

    record_action(services.db, user, AuditAction.CONTAINER_UPDATE, AuditEntityType.CONTAINER,
                  entity_id=container_ref, entity_name=container_ref,
                  details={"new_image": request.new_image, "create_backup": request.create_backup},
                  connection=websocket)
    logger.info(f"User {user['username']} updating container {container_ref}")

    async def _workflow(reporter: ProgressReporter):
        return await services.updates.run(request, reporter)

    await _run_streamed(websocket, services, f"update-{container_ref}", _workflow, services.config.UPDATE_TIMEOUT)


# ==================== Stack workflows ====================

async def _stack_stream(websocket: WebSocket, stack_id: str, operation: str) -> None:
    await websocket.accept()
    services: Services = websocket.app.state.services
    user = await authenticate_websocket(websocket, services)
    if user is None:
        return

    data = await receive_request(websocket)
    if data is None:
        return
    try:
        options = StackDeployOptions(**data)
    except ValidationError as e:
        await _fail_request(websocket, _validation_message(e), step="validate")
        return
    try:
        stack = services.stacks.get_stack(stack_id)
    except StardeckError as e:
        await _fail_request(websocket, str(e))
        return

    action = AuditAction.STACK_DEPLOY if operation == "deploy" else AuditAction.STACK_PULL
    record_action(services.db, user, action, AuditEntityType.STACK,
                  entity_id=stack.id, entity_name=stack.name, connection=websocket)
    logger.info(f"User {user['username']} running {operation} on stack '{stack.name}'")

    async def _workflow(reporter: ProgressReporter):
        if operation == "deploy":
            return await services.stacks.deploy(stack_id, reporter, pull=options.pull)
        return await services.stacks.pull(stack_id, reporter)

    await _run_streamed(websocket, services, f"stack-{operation}-{stack.name}", _workflow,
                        services.config.STACK_TIMEOUT)


@router.websocket("/api/stacks/{stack_id}/deploy")
async def deploy_stack_stream(websocket: WebSocket, stack_id: str):
    await _stack_stream(websocket, stack_id, "deploy")


@router.websocket("/api/stacks/{stack_id}/pull")
async def pull_stack_stream(websocket: WebSocket, stack_id: str):
    await _stack_stream(websocket, stack_id, "pull")


# ==================== Logs and exec ====================

@router.websocket("/api/containers/{ref}/logs/stream")
async def container_logs_stream(websocket: WebSocket, ref: str):
    """Follow a container's logs until the client disconnects."""
    await websocket.accept()
    services: Services = websocket.app.state.services
    user = await authenticate_websocket(websocket, services)
    if user is None:
        return

    try:
        tail = int(websocket.query_params.get("tail", 100))
    except ValueError:
        tail = 100
    record = services.db.find_container_record(ref)
    engine_ref = record.engine_id if record and record.engine_id else ref

    try:
        stream = await services.engine.stream_logs(engine_ref, tail=tail, capacity=services.config.PROGRESS_QUEUE_SIZE)
    except StardeckError as e:
        await _fail_request(websocket, str(e), step="logs")
        return

    async with stream:
        try:
            async for entry in stream:
                sent = await send_json(websocket, {"type": "log", "line": entry["line"],
                                                   "timestamp": entry.get("timestamp")})
                if not sent:
                    break
            else:
                await send_json(websocket, {"type": "end"})
        except StardeckError as e:
            await send_json(websocket, {"type": "error", "error": str(e)})
    try:
        await websocket.close()
    except RuntimeError:
        # Client closed first
        pass
    logger.debug(f"Log stream for {ref} closed")


@router.websocket("/api/containers/{ref}/exec")
async def container_exec(websocket: WebSocket, ref: str):
    """
    Interactive terminal.

    Text frames from the client are written to the process; a JSON frame
    ``{"type": "resize", "rows": N, "cols": M}`` resizes the TTY. Process
    output is sent back as text frames.
    """
    await websocket.accept()
    services: Services = websocket.app.state.services
    user = await authenticate_websocket(websocket, services)
    if user is None:
        return

    record = services.db.find_container_record(ref)
    engine_ref = record.engine_id if record and record.engine_id else ref
    try:
        session = await services.engine.exec_interactive(engine_ref)
    except StardeckError as e:
        await _fail_request(websocket, str(e), step="exec")
        return

    record_action(services.db, user, AuditAction.CONTAINER_EXEC, AuditEntityType.CONTAINER,
                  entity_id=record.id if record else ref, entity_name=record.name if record else ref,
                  connection=websocket)

    async def _pump_output():
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        async for chunk in session.output:
            text = decoder.decode(chunk)
            if text:
                await websocket.send_text(text)

    async def _pump_input():
        while True:
            message = await websocket.receive_text()
            if message.startswith("{"):
                try:
                    control = json.loads(message)
                except json.JSONDecodeError:
                    control = None
                if isinstance(control, dict) and control.get("type") == "resize":
                    await session.resize(int(control.get("rows", 24)), int(control.get("cols", 80)))
                    continue
            await session.write(message)

    output_task = asyncio.create_task(_pump_output(), name=f"exec-out-{ref}")
    input_task = asyncio.create_task(_pump_input(), name=f"exec-in-{ref}")
    try:
        done, pending = await asyncio.wait({output_task, input_task}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.warning(f"Exec session on {ref} ended with error: {error}")
    finally:
        await session.close()

    if output_task in done:
        # Process exited: tell the client and close
        try:
            exit_code = await session.exit_code()
        except Exception as e:
            logger.debug(f"Could not read exit code of exec on {ref}: {e}")
            exit_code = None
        await send_json(websocket, {"type": "exit", "exit_code": exit_code})
        try:
            await websocket.close()
        except RuntimeError:
            pass
