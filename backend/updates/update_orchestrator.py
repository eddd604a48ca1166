"""
Update Orchestrator - in-place container updates using the rename-swap pattern.

Workflow (strictly sequential):
1. config   - read live configuration, enrich with Stardeck metadata
2. backup   - archive bind mounts (optional)
3. pull     - fetch the target image
4. stop     - stop the original (failure is not fatal)
5. rename   - rename the original to <name>_backup_<timestamp>  (commit point)
6. create   - create the replacement under the original name
7. start    - start the replacement
8. metadata - point the ContainerRecord at the replacement (failure is a warning)
9. cleanup  - remove the renamed original (optional, failure is a warning)
10. complete

Steps 1-5 abort without leaving anything behind. A failure in create or
start is compensated before it is reported: the replacement is removed, the
original gets its name back and is restarted if it was running. The same
restoration runs when the update is cancelled (the supervisor timeout, not
a client disconnect) before the replacement has started.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

from backups.backup_manager import BackupManager
from database import ContainerRecord, DatabaseManager
from engine.adapter import EngineAdapter
from engine.errors import ConflictError, StardeckError
from engine.types import ContainerConfig, ContainerStatus, stardeck_labels
from progress.reporter import ProgressReporter
from updates.locks import ContainerLockRegistry
from updates.state_machine import UpdateStateMachine
from updates.types import UpdatePhase, UpdateRequest, UpdateResult, UpdateSession

logger = logging.getLogger(__name__)

BACKUP_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


def backup_container_name(name: str, now: Optional[datetime] = None) -> str:
    """Name the original container is parked under during an update."""
    now = now or datetime.now(timezone.utc)
    return f"{name}_backup_{now.strftime(BACKUP_TIMESTAMP_FORMAT)}"


def enrich_config(config: ContainerConfig, record: Optional[ContainerRecord]) -> ContainerConfig:
    """Carry Stardeck metadata from the ContainerRecord onto the recreated container."""
    if record is None:
        return config
    config.labels.update(record.get_labels())
    config.labels.update(stardeck_labels(
        has_web_ui=bool(record.has_web_ui),
        web_ui_port=record.web_ui_port,
        web_ui_path=record.web_ui_path,
        icon=record.icon,
    ))
    return config


class _StepFailed(Exception):
    """Internal: a step failed and the failure has been reported."""

    def __init__(self, result: UpdateResult):
        super().__init__(result.error)
        self.result = result


class UpdateOrchestrator:
    """
    Runs container updates.

    Args:
        engine: Engine Adapter
        db: Metadata store (ContainerRecords)
        backup_manager: Used when the request asks for a backup
        locks: Per-container lock registry shared with the deployer
    """

    def __init__(
        self,
        engine: EngineAdapter,
        db: DatabaseManager,
        backup_manager: BackupManager,
        locks: ContainerLockRegistry,
    ):
        self.engine = engine
        self.db = db
        self.backup_manager = backup_manager
        self.locks = locks
        self.state_machine = UpdateStateMachine()

    async def run(self, request: UpdateRequest, reporter: ProgressReporter) -> UpdateResult:
        """
        Update one container, reporting every step.

        Never raises for workflow failures: they are reported through the
        reporter's terminal event and returned as an unsuccessful result.
        """
        record = self.db.find_container_record(request.container_ref)
        engine_ref = record.engine_id if record and record.engine_id else request.container_ref

        await reporter.step("config", f"Reading configuration of {request.container_ref}", progress=5)
        try:
            info = await self.engine.get_container(engine_ref)
        except StardeckError as e:
            return await self._fail(reporter, "config", f"Failed to read container: {e}")

        try:
            async with self.locks.acquire(info.name, "update"):
                session = UpdateSession(
                    container_name=info.name,
                    old_engine_id=info.id,
                    old_image=info.image,
                    target_image=request.new_image or info.image,
                    was_running=info.status == ContainerStatus.RUNNING,
                    record_id=record.id if record else None,
                )
                try:
                    return await self._execute(session, request, record, reporter)
                except _StepFailed as failed:
                    return failed.result
        except ConflictError as e:
            return await self._fail(reporter, "config", str(e))

    async def _fail(self, reporter: ProgressReporter, step: str, error: str,
                    session: Optional[UpdateSession] = None, rolled_back: bool = False,
                    emit_step: bool = True) -> UpdateResult:
        result = UpdateResult(
            success=False,
            container_name=session.container_name if session else None,
            backup_record_id=session.backup_record_id if session else None,
            warnings=list(session.warnings) if session else [],
            error=error,
            failed_step=step,
            rolled_back=rolled_back,
        )
        if emit_step:
            await reporter.step(step, error, error=True)
        await reporter.complete(False, message=f"Update failed at step '{step}'", error=error, step=step,
                                warnings=result.warnings, backup_record_id=result.backup_record_id)
        return result

    async def _abort(self, session: UpdateSession, reporter: ProgressReporter, step: str, error: str):
        """Pre-commit failure: nothing to undo."""
        self.state_machine.transition(session, UpdatePhase.FAILED)
        logger.error(f"Update of {session.id} aborted at {step}: {error}")
        raise _StepFailed(await self._fail(reporter, step, error, session))

    async def _execute(self, session: UpdateSession, request: UpdateRequest, record: Optional[ContainerRecord],
                       reporter: ProgressReporter) -> UpdateResult:
        sm = self.state_machine
        name = session.container_name

        # 1. config
        sm.transition(session, UpdatePhase.CONFIG)
        try:
            config = enrich_config(await self.engine.read_container_config(session.old_engine_id), record)
        except StardeckError as e:
            await self._abort(session, reporter, "config", f"Failed to read configuration: {e}")

        # 2. backup
        if request.create_backup:
            if config.bind_mounts:
                sm.transition(session, UpdatePhase.BACKUP)
                await self._backup(session, request, reporter)
            else:
                await reporter.step("backup", "No bind mounts to back up, skipping", progress=15)

        # 3. pull
        sm.transition(session, UpdatePhase.PULL)
        await self._pull(session, request, reporter)

        # 4. stop
        sm.transition(session, UpdatePhase.STOP)
        parked_name = backup_container_name(name)
        try:
            if session.was_running:
                await reporter.step("stop", f"Stopping {name}", progress=50)
                try:
                    await self.engine.stop_container(session.old_engine_id, timeout=request.stop_timeout)
                    await reporter.step("stop", f"Stopped {name}", progress=55)
                except StardeckError as e:
                    logger.warning(f"Stopping {name} failed, continuing update: {e}")
                    await reporter.step("stop", f"Could not stop {name} ({e}), continuing", progress=55)
            else:
                await reporter.step("stop", f"{name} is not running", progress=55)

            # 5. rename (commit point)
            sm.transition(session, UpdatePhase.RENAME)
            await reporter.step("rename", f"Renaming {name} to {parked_name}", progress=60)
            await self.engine.rename_container(session.old_engine_id, parked_name)
        except StardeckError as e:
            error = f"Failed to rename {name}: {e}"
            if session.was_running:
                try:
                    await self.engine.start_container(session.old_engine_id)
                except StardeckError as restart_error:
                    logger.error(f"Could not restart {name} after failed rename: {restart_error}")
                    error += f"; restarting the original failed: {restart_error}"
            await self._abort(session, reporter, "rename", error)
        except asyncio.CancelledError:
            logger.warning(f"Update of {session.id} cancelled before commit, restoring original")
            await self._restore_uncommitted(session)
            raise
        session.backup_container_name = parked_name
        sm.mark_committed(session)

        try:
            # 6. create
            sm.transition(session, UpdatePhase.CREATE)
            await reporter.step("create", f"Creating {name} from {session.target_image}", progress=70)
            try:
                if await self.engine.container_exists(name):
                    raise ConflictError(f"A container named {name} already exists")
                session.new_engine_id = await self.engine.create_container(
                    config.to_spec(name=name, image=session.target_image)
                )
            except StardeckError as e:
                await self._rollback(session, reporter, "create", str(e))

            # 7. start
            sm.transition(session, UpdatePhase.START)
            await reporter.step("start", f"Starting {name}", progress=80)
            try:
                await self.engine.start_container(session.new_engine_id)
            except StardeckError as e:
                await self._rollback(session, reporter, "start", str(e))
        except asyncio.CancelledError:
            if not session.compensated and not sm.is_terminal(session):
                logger.warning(f"Update of {session.id} cancelled after commit, restoring original")
                await self._compensate(session)
            raise

        # 8. metadata
        sm.transition(session, UpdatePhase.METADATA)
        if session.record_id:
            try:
                self.db.update_container_record(session.record_id, {
                    'engine_id': session.new_engine_id,
                    'image': session.target_image,
                    'status': ContainerStatus.RUNNING.value,
                })
            except Exception as e:
                warning = f"Container record was not updated: {e}"
                logger.warning(f"Update of {session.id}: {warning}")
                session.warnings.append(warning)
                await reporter.step("metadata", warning, progress=90)

        # 9. cleanup
        retained = session.backup_container_name
        if request.remove_old:
            sm.transition(session, UpdatePhase.CLEANUP)
            await reporter.step("cleanup", f"Removing {retained}", progress=95)
            try:
                await self.engine.remove_container(session.old_engine_id, force=True)
                retained = None
            except StardeckError as e:
                warning = f"Old container {retained} was not removed: {e}"
                logger.warning(f"Update of {session.id}: {warning}")
                session.warnings.append(warning)
                await reporter.step("cleanup", warning, progress=95)

        # 10. complete
        sm.transition(session, UpdatePhase.COMPLETED)
        result = UpdateResult(
            success=True,
            container_name=name,
            new_engine_id=session.new_engine_id,
            new_image=session.target_image,
            backup_container_name=retained,
            backup_record_id=session.backup_record_id,
            warnings=list(session.warnings),
        )
        logger.info(f"Updated {name} to {session.target_image} ({session.new_engine_id[:12]})")
        await reporter.complete(
            True,
            message=f"{name} updated to {session.target_image}",
            step="complete",
            warnings=result.warnings,
            container_id=session.record_id,
            new_engine_id=result.new_engine_id,
            new_image=result.new_image,
            backup_container_name=result.backup_container_name,
            backup_record_id=result.backup_record_id,
        )
        return result

    async def _backup(self, session: UpdateSession, request: UpdateRequest, reporter: ProgressReporter) -> None:
        await reporter.step("backup", f"Backing up bind mounts of {session.container_name}", progress=15)
        job = self.backup_manager.start_backup(
            session.old_engine_id,
            overwrite=request.overwrite_backup,
            container_record_id=session.record_id,
        )
        try:
            async with job.lines:
                async for line in job.lines:
                    await reporter.output("backup", line)
        except Exception as e:
            await self._abort(session, reporter, "backup", f"Backup failed: {e}")
        session.backup_record_id = job.record.id
        session.warnings.extend(job.warnings)
        await reporter.step("backup", f"Backup saved to {job.record.backup_path}", progress=25,
                            backup_id=job.record.id)

    async def _pull(self, session: UpdateSession, request: UpdateRequest, reporter: ProgressReporter) -> None:
        image = session.target_image
        try:
            # An explicit new image that is already present needs no pull;
            # re-pulling the current tag always pulls
            if request.new_image and await self.engine.image_exists(image):
                await reporter.step("pull", f"Image {image} already present", progress=45)
                return
            await reporter.step("pull", f"Pulling {image}", progress=30)
            stream = await self.engine.pull_image(image)
            async with stream:
                async for snapshot in stream:
                    await reporter.step("pull", snapshot.summary(), progress=30 + snapshot.percent * 15 // 100)
        except StardeckError as e:
            await self._abort(session, reporter, "pull", f"Failed to pull {image}: {e}")

    async def _restore_uncommitted(self, session: UpdateSession) -> None:
        """Undo stop (and a rename the engine may still have applied) after a pre-commit cancel."""
        name = session.container_name
        interrupted = session.phase
        self.state_machine.transition(session, UpdatePhase.FAILED)
        try:
            if interrupted == UpdatePhase.RENAME:
                info = await self.engine.get_container(session.old_engine_id)
                if info.name != name:
                    await self.engine.rename_container(session.old_engine_id, name)
            if session.was_running:
                await self.engine.start_container(session.old_engine_id)
        except StardeckError as e:
            logger.critical(f"CRITICAL: Could not restore {name} after cancelled update: {e}")

    async def _compensate(self, session: UpdateSession) -> List[str]:
        """
        Put the original container back under its name.

        Returns:
            Errors from compensation actions that failed (empty on success)
        """
        session.compensated = True
        errors: List[str] = []
        name = session.container_name

        if session.new_engine_id:
            try:
                await self.engine.remove_container(session.new_engine_id, force=True)
            except StardeckError as e:
                errors.append(f"removing replacement failed: {e}")

        try:
            await self.engine.rename_container(session.old_engine_id, name)
        except StardeckError as e:
            errors.append(f"renaming {session.backup_container_name} back to {name} failed: {e}")

        if session.was_running and not errors:
            try:
                await self.engine.start_container(session.old_engine_id)
            except StardeckError as e:
                errors.append(f"restarting original failed: {e}")

        return errors

    async def _rollback(self, session: UpdateSession, reporter: ProgressReporter, step: str, error: str):
        """Post-commit failure: compensate, then report."""
        logger.error(f"Update of {session.id} failed at {step}: {error}; rolling back")
        await reporter.step(step, f"{step.capitalize()} failed: {error}. Restoring original container", error=True)
        errors = await self._compensate(session)

        if errors:
            self.state_machine.transition(session, UpdatePhase.FAILED)
            message = (f"{step.capitalize()} failed: {error}. Rollback failed ({'; '.join(errors)}); "
                       f"original container is {session.backup_container_name}")
            logger.critical(f"CRITICAL: Rollback failed for {session.container_name}: {'; '.join(errors)}. "
                            f"Manual intervention required - backup: {session.backup_container_name}")
            raise _StepFailed(await self._fail(reporter, step, message, session, emit_step=False))

        self.state_machine.transition(session, UpdatePhase.ROLLED_BACK)
        logger.warning(f"Rollback successful: {session.container_name} restored")
        message = f"{step.capitalize()} failed: {error}. Original container restored"
        raise _StepFailed(await self._fail(reporter, step, message, session, rolled_back=True, emit_step=False))
