"""
Service wiring for Stardeck.

Everything a request handler needs is built once at startup into a
Services object stored on ``app.state.services``. Handlers reach it through
FastAPI dependencies; there are no module-level service instances.
"""

import logging
from dataclasses import dataclass

from fastapi.requests import HTTPConnection

from backups.backup_manager import BackupManager
from config.settings import AppConfig
from database import DatabaseManager
from deployment.container_deployer import ContainerDeployer
from engine.adapter import EngineAdapter
from progress.reporter import ProgressReporter
from stacks.compose_validator import ComposeValidator
from stacks.stack_driver import StackDriver
from stacks.stack_service import StackService
from stacks.stack_storage import StackStorage
from stacks.template_service import TemplateService
from updates.locks import ContainerLockRegistry
from updates.update_orchestrator import UpdateOrchestrator
from utils.task_supervisor import TaskSupervisor

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Long-lived services shared by all requests."""
    config: AppConfig
    db: DatabaseManager
    engine: EngineAdapter
    locks: ContainerLockRegistry
    backups: BackupManager
    stacks: StackService
    templates: TemplateService
    updates: UpdateOrchestrator
    deployer: ContainerDeployer
    supervisor: TaskSupervisor

    def new_reporter(self, name: str) -> ProgressReporter:
        return ProgressReporter(
            capacity=self.config.PROGRESS_QUEUE_SIZE,
            send_timeout=self.config.PROGRESS_SEND_TIMEOUT,
            name=name,
        )

    async def shutdown(self) -> None:
        await self.supervisor.shutdown()
        self.engine.close()
        self.db.close()


def build_services(config: AppConfig, engine: EngineAdapter = None, db: DatabaseManager = None) -> Services:
    """
    Construct every service from configuration.

    Args:
        config: Application configuration
        engine: Engine Adapter to use instead of one built from config (tests)
        db: Database manager to use instead of one built from config (tests)
    """
    if db is None:
        db = DatabaseManager(config.DATABASE_URL)
    if engine is None:
        engine = EngineAdapter.from_config(config)

    locks = ContainerLockRegistry()
    backups = BackupManager(engine, db, config.BACKUPS_DIR, capacity=config.PROGRESS_QUEUE_SIZE)
    driver = StackDriver(
        engine,
        compose_command=config.COMPOSE_COMMAND,
        timeout=config.STACK_TIMEOUT,
        capacity=config.PROGRESS_QUEUE_SIZE,
    )
    stacks = StackService(db, StackStorage(config.STACKS_DIR), driver, ComposeValidator())

    logger.info(f"Services ready (data dir {config.DATA_DIR}, compose command '{config.COMPOSE_COMMAND}')")
    return Services(
        config=config,
        db=db,
        engine=engine,
        locks=locks,
        backups=backups,
        stacks=stacks,
        templates=TemplateService(db, stacks),
        updates=UpdateOrchestrator(engine, db, backups, locks),
        deployer=ContainerDeployer(engine, db, locks),
        supervisor=TaskSupervisor(shutdown_grace=config.SHUTDOWN_GRACE),
    )


def get_services(connection: HTTPConnection) -> Services:
    """FastAPI dependency: the application's Services (works for requests and websockets)."""
    return connection.app.state.services
