"""
Stack service layer.

Coordinates between filesystem (StackStorage), the compose tool (StackDriver)
and the database (StackRecord). Handles operations that require more than
one of them.
"""
import logging
from typing import List, Optional, Tuple

from database import DatabaseManager, StackRecord
from engine.errors import ConflictError, NotFoundError, StardeckError, ValidationFailedError
from progress.reporter import ProgressReporter
from stacks.compose_validator import ComposeValidationError, ComposeValidator
from stacks.stack_driver import (
    STATUS_DEPLOYING,
    STATUS_ERROR,
    STATUS_STOPPED,
    StackContainer,
    StackDriver,
)
from stacks.stack_storage import StackStorage, validate_stack_name
from utils.line_stream import LineStream

logger = logging.getLogger(__name__)

# Lifecycle actions exposed without streaming
STACK_ACTIONS = ("up", "down", "stop", "start", "restart", "pull")


async def relay_output(stream: LineStream, reporter: Optional[ProgressReporter], step: str) -> List[str]:
    """
    Forward a command's output lines to a reporter as they arrive.

    Returns:
        Every line, in order
    """
    lines: List[str] = []
    async with stream:
        async for line in stream:
            lines.append(line)
            if reporter is not None:
                await reporter.output(step, line)
    return lines


class StackService:
    """Stack CRUD and lifecycle."""

    def __init__(self, db: DatabaseManager, storage: StackStorage, driver: StackDriver,
                 validator: Optional[ComposeValidator] = None):
        self.db = db
        self.storage = storage
        self.driver = driver
        self.validator = validator or ComposeValidator()

    def _validate_content(self, compose_content: str, env_content: Optional[str]) -> None:
        try:
            self.validator.parse(compose_content)
            if env_content:
                self.validator.validate_env(env_content)
        except ComposeValidationError as e:
            raise ValidationFailedError(str(e))

    def get_stack(self, stack_id: str) -> StackRecord:
        record = self.db.get_stack_record(stack_id)
        if not record:
            raise NotFoundError(f"Stack {stack_id} not found")
        return record

    def list_stacks(self) -> List[StackRecord]:
        return self.db.list_stack_records()

    async def create_stack(self, name: str, compose_content: str, env_content: Optional[str] = None,
                           created_by: Optional[int] = None) -> StackRecord:
        """
        Validate and store a new stack. Nothing is started.

        Raises:
            ValidationFailedError: Invalid name or compose/env content
            ConflictError: A stack with this name already exists
        """
        validate_stack_name(name)
        self._validate_content(compose_content, env_content)
        if self.db.get_stack_record_by_name(name):
            raise ConflictError(f"Stack '{name}' already exists")

        stack_path = await self.storage.write_stack(name, compose_content, env_content, create_only=True)
        try:
            record = self.db.add_stack_record({
                'name': name,
                'compose_content': compose_content,
                'env_content': env_content or None,
                'path': str(stack_path),
                'status': STATUS_STOPPED,
                'created_by': created_by,
            })
        except Exception:
            await self.storage.delete_stack_files(name)
            raise

        logger.info(f"Created stack '{name}'")
        return record

    async def update_stack(self, stack_id: str, compose_content: str,
                           env_content: Optional[str] = None) -> StackRecord:
        """Replace a stack's compose and env content. Running containers are untouched until the next deploy."""
        record = self.get_stack(stack_id)
        self._validate_content(compose_content, env_content)
        await self.storage.write_stack(record.name, compose_content, env_content)
        record = self.db.update_stack_record(stack_id, {
            'compose_content': compose_content,
            'env_content': env_content or None,
        })
        logger.info(f"Updated stack '{record.name}'")
        return record

    async def delete_stack(self, stack_id: str, remove_volumes: bool = False) -> None:
        """Take the stack down, then remove its files and record."""
        record = self.get_stack(stack_id)
        if await self.storage.stack_exists(record.name):
            containers = await self.driver.list_stack_containers(record.name)
            if containers:
                await relay_output(self.driver.down(record.path, record.name, remove_volumes), None, "down")
        await self.storage.delete_stack_files(record.name)
        self.db.delete_stack_record(stack_id)
        logger.info(f"Deleted stack '{record.name}'")

    async def list_containers(self, stack_id: str) -> List[StackContainer]:
        record = self.get_stack(stack_id)
        return await self.driver.list_stack_containers(record.name)

    async def refresh_status(self, stack_id: str) -> StackRecord:
        record = self.get_stack(stack_id)
        status = await self.driver.compute_status(record.name)
        if status != record.status:
            record = self.db.update_stack_record(stack_id, {'status': status})
        return record

    async def _render_files(self, record: StackRecord) -> None:
        """Files on disk always reflect the stored content before the compose tool runs."""
        await self.storage.write_stack(record.name, record.compose_content, record.env_content)

    async def deploy(self, stack_id: str, reporter: ProgressReporter, pull: bool = False) -> StackRecord:
        """
        Bring a stack up, streaming compose output as ``deploy`` output events.

        The record moves to ``deploying`` for the duration, then to the
        status computed from its containers, or ``error`` on failure. The
        reporter receives the terminal event.
        """
        record = self.get_stack(stack_id)
        step = "deploy"
        self.db.update_stack_record(stack_id, {'status': STATUS_DEPLOYING})
        try:
            await reporter.step(step, f"Deploying stack {record.name}")
            await self._render_files(record)
            if pull:
                await reporter.step("pull", f"Pulling images for {record.name}")
                await relay_output(self.driver.pull(record.path, record.name), reporter, "pull")
            await relay_output(self.driver.up(record.path, record.name), reporter, step)
            record = await self.refresh_status(stack_id)
        except StardeckError as e:
            self.db.update_stack_record(stack_id, {'status': STATUS_ERROR})
            logger.error(f"Deploy of stack '{record.name}' failed: {e}")
            await reporter.complete(False, message=f"Deploy of {record.name} failed",
                                    error=str(e), step=e.step or step)
            raise
        except BaseException:
            self.db.update_stack_record(stack_id, {'status': STATUS_ERROR})
            raise

        logger.info(f"Deployed stack '{record.name}' (status {record.status})")
        await reporter.complete(True, message=f"Stack {record.name} deployed", step="complete",
                                stack_id=record.id, status=record.status)
        return record

    async def pull(self, stack_id: str, reporter: ProgressReporter) -> StackRecord:
        """Pull every service image, streaming output as ``pull`` output events."""
        record = self.get_stack(stack_id)
        step = "pull"
        try:
            await reporter.step(step, f"Pulling images for {record.name}")
            await self._render_files(record)
            await relay_output(self.driver.pull(record.path, record.name), reporter, step)
        except StardeckError as e:
            logger.error(f"Pull for stack '{record.name}' failed: {e}")
            await reporter.complete(False, message=f"Pull for {record.name} failed",
                                    error=str(e), step=e.step or step)
            raise

        await reporter.complete(True, message=f"Images for {record.name} pulled", step="complete",
                                stack_id=record.id)
        return record

    async def run_action(self, stack_id: str, action: str, remove_volumes: bool = False) -> Tuple[StackRecord, List[str]]:
        """
        Run a lifecycle action to completion and refresh the status.

        Returns:
            Updated record and the compose output lines
        """
        if action not in STACK_ACTIONS:
            raise ValidationFailedError(f"Unknown stack action '{action}'")
        record = self.get_stack(stack_id)
        if action in ("up", "pull"):
            await self._render_files(record)

        if action == "down":
            stream = self.driver.down(record.path, record.name, remove_volumes)
        else:
            stream = getattr(self.driver, action)(record.path, record.name)

        try:
            output = await relay_output(stream, None, action)
        except StardeckError:
            if action == "up":
                self.db.update_stack_record(stack_id, {'status': STATUS_ERROR})
            raise

        record = await self.refresh_status(stack_id)
        logger.info(f"Stack '{record.name}' {action} finished (status {record.status})")
        return record, output
