"""
Database models and operations for Stardeck
Uses SQLite for persistent storage of container, stack and backup metadata
"""

from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from sqlalchemy import create_engine, Column, String, Integer, BigInteger, Boolean, DateTime, ForeignKey, Text, text, Index
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
import json
import os
import logging
import uuid

logger = logging.getLogger(__name__)


def utcnow():
    """Helper to get timezone-aware UTC datetime for database defaults"""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.isoformat() + 'Z'
    return value.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


Base = declarative_base()


class User(Base):
    """Identity known to the external identity/session subsystem"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String, nullable=False, unique=True)
    display_name = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class ApiKey(Base):
    """Bearer token issued by the identity subsystem (SHA256 hash only, never plaintext)"""
    __tablename__ = "api_keys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    key_hash = Column(String, nullable=False, unique=True)
    key_prefix = Column(String, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class ContainerRecord(Base):
    """Container managed (deployed or adopted) through Stardeck"""
    __tablename__ = "containers"

    id = Column(String, primary_key=True, default=new_id)
    engine_id = Column(String, nullable=True, unique=True)  # Changes across an update
    name = Column(String, nullable=False)
    image = Column(String, nullable=False)
    status = Column(String, nullable=False, default='created')  # created, running, exited, paused, unknown
    has_web_ui = Column(Boolean, default=False)
    web_ui_port = Column(Integer, nullable=True)
    web_ui_path = Column(String, nullable=True)
    icon = Column(String, nullable=True)
    auto_start = Column(Boolean, default=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    labels = Column(Text, nullable=True)  # JSON object
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_containers_name', 'name'),
    )

    def get_labels(self) -> Dict[str, str]:
        if not self.labels:
            return {}
        try:
            return json.loads(self.labels)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"Invalid labels JSON on container record {self.id}")
            return {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'engine_id': self.engine_id,
            'name': self.name,
            'image': self.image,
            'status': self.status,
            'has_web_ui': bool(self.has_web_ui),
            'web_ui_port': self.web_ui_port,
            'web_ui_path': self.web_ui_path,
            'icon': self.icon,
            'auto_start': bool(self.auto_start),
            'created_by': self.created_by,
            'labels': self.get_labels(),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class StackRecord(Base):
    """Compose stack; rendered files live under ``path``"""
    __tablename__ = "stacks"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False, unique=True)
    compose_content = Column(Text, nullable=False)
    env_content = Column(Text, nullable=True)
    path = Column(String, nullable=False)
    status = Column(String, nullable=False, default='stopped')  # stopped, active, partial, deploying, error
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self, include_content: bool = True) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'name': self.name,
            'path': self.path,
            'status': self.status,
            'created_by': self.created_by,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }
        if include_content:
            data['compose_content'] = self.compose_content
            data['env_content'] = self.env_content
        return data


# Columns stored as JSON text
TEMPLATE_JSON_FIELDS = ("env_defaults", "volume_hints", "tags")


class StackTemplate(Base):
    """Reusable compose definition; deploying one creates a StackRecord"""
    __tablename__ = "templates"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    author = Column(String, nullable=True)
    version = Column(String, nullable=True)
    compose_content = Column(Text, nullable=False)
    env_defaults = Column(Text, nullable=True)  # JSON object
    volume_hints = Column(Text, nullable=True)  # JSON list of {name, suggested_path, description, required}
    tags = Column(Text, nullable=True)  # JSON list
    usage_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_templates_name', 'name'),
    )

    def _json_field(self, value: Optional[str], default):
        if not value:
            return default
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"Invalid JSON on template {self.id}")
            return default

    def get_env_defaults(self) -> Dict[str, str]:
        return self._json_field(self.env_defaults, {})

    def get_volume_hints(self) -> List[Dict[str, Any]]:
        return self._json_field(self.volume_hints, [])

    def get_tags(self) -> List[str]:
        return self._json_field(self.tags, [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'author': self.author,
            'version': self.version,
            'compose_content': self.compose_content,
            'env_defaults': self.get_env_defaults(),
            'volume_hints': self.get_volume_hints(),
            'tags': self.get_tags(),
            'usage_count': self.usage_count,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class BackupRecord(Base):
    """Bind mount backup of a container. Immutable once created."""
    __tablename__ = "container_backups"

    id = Column(String, primary_key=True, default=new_id)
    container_id = Column(String, ForeignKey("containers.id", ondelete="SET NULL"), nullable=True)
    container_name = Column(String, nullable=False)
    backup_path = Column(String, nullable=False)
    size_bytes = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_backups_container_name', 'container_name'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'container_id': self.container_id,
            'container_name': self.container_name,
            'backup_path': self.backup_path,
            'size_bytes': self.size_bytes,
            'created_at': _iso(self.created_at),
        }


class AuditLog(Base):
    """User action audit trail"""
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=True)  # No FK: entries outlive users
    username = Column(String, nullable=False)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=True)
    entity_name = Column(String, nullable=True)
    details = Column(Text, nullable=True)  # JSON object
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_audit_created_at', 'created_at'),
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
    )

    def to_dict(self) -> Dict[str, Any]:
        details = None
        if self.details:
            try:
                details = json.loads(self.details)
            except (json.JSONDecodeError, TypeError):
                details = {'raw': self.details}
        return {
            'id': self.id,
            'user_id': self.user_id,
            'username': self.username,
            'action': self.action,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'entity_name': self.entity_name,
            'details': details,
            'ip_address': self.ip_address,
            'user_agent': self.user_agent,
            'created_at': _iso(self.created_at),
        }


class DatabaseManager:
    """
    Metadata store for Stardeck.

    Constructed once at startup and passed to the components that need it.
    Every method opens its own short-lived session; returned model
    instances are detached snapshots and are never cached by callers.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url
        is_sqlite = database_url.startswith('sqlite')

        if is_sqlite and database_url not in ('sqlite://', 'sqlite:///:memory:'):
            db_path = database_url.split('sqlite:///', 1)[-1]
            data_dir = os.path.dirname(os.path.abspath(db_path))
            os.makedirs(data_dir, exist_ok=True)

        engine_kwargs: Dict[str, Any] = {'echo': False}
        if is_sqlite:
            engine_kwargs['connect_args'] = {
                "check_same_thread": False,
                "timeout": 20
            }
            engine_kwargs['poolclass'] = StaticPool

        self.engine = create_engine(database_url, **engine_kwargs)

        if is_sqlite:
            self._configure_sqlite_pragmas()

        # expire_on_commit=False keeps returned records readable after the session closes
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine)

        Base.metadata.create_all(bind=self.engine)

    def _configure_sqlite_pragmas(self):
        """Apply SQLite settings for concurrent readers and integrity"""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA synchronous=NORMAL"))
                conn.execute(text("PRAGMA foreign_keys=ON"))
                conn.commit()
            logger.info("SQLite PRAGMA configuration applied successfully (WAL mode)")
        except Exception as e:
            logger.error(f"Failed to configure SQLite PRAGMAs: {e}", exc_info=True)
            # Non-fatal: SQLite will work with defaults

    def get_session(self) -> Session:
        """Get a database session"""
        return self.SessionLocal()

    def close(self):
        self.engine.dispose()

    # Container Record Operations
    def add_container_record(self, data: dict) -> ContainerRecord:
        """Create a container record"""
        with self.get_session() as session:
            try:
                if isinstance(data.get('labels'), dict):
                    data = {**data, 'labels': json.dumps(data['labels'])}
                record = ContainerRecord(**data)
                session.add(record)
                session.commit()
                session.refresh(record)
                logger.info(f"Added container record {record.name} ({record.id[:8]})")
                return record
            except Exception as e:
                session.rollback()
                logger.error(f"Failed to add container record: {e}")
                raise

    def get_container_record(self, record_id: str) -> Optional[ContainerRecord]:
        with self.get_session() as session:
            return session.query(ContainerRecord).filter(ContainerRecord.id == record_id).first()

    def get_container_record_by_engine_id(self, engine_id: str) -> Optional[ContainerRecord]:
        """Look up by full engine id or by a 12+ character prefix"""
        with self.get_session() as session:
            record = session.query(ContainerRecord).filter(ContainerRecord.engine_id == engine_id).first()
            if record is None and len(engine_id) >= 12:
                record = session.query(ContainerRecord).filter(
                    ContainerRecord.engine_id.like(f"{engine_id}%")
                ).first()
            return record

    def get_container_record_by_name(self, name: str) -> Optional[ContainerRecord]:
        with self.get_session() as session:
            return session.query(ContainerRecord).filter(ContainerRecord.name == name).first()

    def find_container_record(self, ref: str) -> Optional[ContainerRecord]:
        """Resolve a record id, engine id or container name"""
        return (
            self.get_container_record(ref)
            or self.get_container_record_by_engine_id(ref)
            or self.get_container_record_by_name(ref)
        )

    def list_container_records(self) -> List[ContainerRecord]:
        with self.get_session() as session:
            return session.query(ContainerRecord).order_by(ContainerRecord.name).limit(1000).all()

    def update_container_record(self, record_id: str, updates: dict) -> Optional[ContainerRecord]:
        """Update a container record (last writer wins)"""
        with self.get_session() as session:
            try:
                record = session.query(ContainerRecord).filter(ContainerRecord.id == record_id).first()
                if record:
                    for key, value in updates.items():
                        if key == 'labels' and isinstance(value, dict):
                            value = json.dumps(value)
                        setattr(record, key, value)
                    record.updated_at = utcnow()
                    session.commit()
                    session.refresh(record)
                    logger.debug(f"Updated container record {record.name} ({record_id[:8]})")
                return record
            except Exception as e:
                session.rollback()
                logger.error(f"Failed to update container record {record_id[:8]}: {e}")
                raise

    def delete_container_record(self, record_id: str) -> bool:
        with self.get_session() as session:
            record = session.query(ContainerRecord).filter(ContainerRecord.id == record_id).first()
            if not record:
                return False
            session.delete(record)
            session.commit()
            logger.info(f"Deleted container record {record.name} ({record_id[:8]})")
            return True

    # Stack Record Operations
    def add_stack_record(self, data: dict) -> StackRecord:
        with self.get_session() as session:
            try:
                record = StackRecord(**data)
                session.add(record)
                session.commit()
                session.refresh(record)
                logger.info(f"Added stack record {record.name} ({record.id[:8]})")
                return record
            except Exception as e:
                session.rollback()
                logger.error(f"Failed to add stack record: {e}")
                raise

    def get_stack_record(self, stack_id: str) -> Optional[StackRecord]:
        with self.get_session() as session:
            return session.query(StackRecord).filter(StackRecord.id == stack_id).first()

    def get_stack_record_by_name(self, name: str) -> Optional[StackRecord]:
        with self.get_session() as session:
            return session.query(StackRecord).filter(StackRecord.name == name).first()

    def list_stack_records(self) -> List[StackRecord]:
        with self.get_session() as session:
            return session.query(StackRecord).order_by(StackRecord.name).all()

    def update_stack_record(self, stack_id: str, updates: dict) -> Optional[StackRecord]:
        with self.get_session() as session:
            try:
                record = session.query(StackRecord).filter(StackRecord.id == stack_id).first()
                if record:
                    for key, value in updates.items():
                        setattr(record, key, value)
                    record.updated_at = utcnow()
                    session.commit()
                    session.refresh(record)
                return record
            except Exception as e:
                session.rollback()
                logger.error(f"Failed to update stack record {stack_id[:8]}: {e}")
                raise

    def delete_stack_record(self, stack_id: str) -> bool:
        with self.get_session() as session:
            record = session.query(StackRecord).filter(StackRecord.id == stack_id).first()
            if not record:
                return False
            session.delete(record)
            session.commit()
            logger.info(f"Deleted stack record {record.name} ({stack_id[:8]})")
            return True

    # Stack Template Operations
    def _encode_template_fields(self, data: dict) -> dict:
        return {
            key: json.dumps(value) if key in TEMPLATE_JSON_FIELDS and value is not None else value
            for key, value in data.items()
        }

    def add_template(self, data: dict) -> StackTemplate:
        with self.get_session() as session:
            try:
                template = StackTemplate(**self._encode_template_fields(data))
                session.add(template)
                session.commit()
                session.refresh(template)
                logger.info(f"Added template {template.name} ({template.id[:8]})")
                return template
            except Exception as e:
                session.rollback()
                logger.error(f"Failed to add template: {e}")
                raise

    def get_template(self, template_id: str) -> Optional[StackTemplate]:
        with self.get_session() as session:
            return session.query(StackTemplate).filter(StackTemplate.id == template_id).first()

    def list_templates(self) -> List[StackTemplate]:
        with self.get_session() as session:
            return session.query(StackTemplate).order_by(StackTemplate.name).all()

    def update_template(self, template_id: str, updates: dict) -> Optional[StackTemplate]:
        with self.get_session() as session:
            try:
                template = session.query(StackTemplate).filter(StackTemplate.id == template_id).first()
                if template:
                    for key, value in self._encode_template_fields(updates).items():
                        setattr(template, key, value)
                    template.updated_at = utcnow()
                    session.commit()
                    session.refresh(template)
                return template
            except Exception as e:
                session.rollback()
                logger.error(f"Failed to update template {template_id[:8]}: {e}")
                raise

    def increment_template_usage(self, template_id: str) -> None:
        with self.get_session() as session:
            session.query(StackTemplate).filter(StackTemplate.id == template_id).update(
                {StackTemplate.usage_count: StackTemplate.usage_count + 1}
            )
            session.commit()

    def delete_template(self, template_id: str) -> bool:
        with self.get_session() as session:
            template = session.query(StackTemplate).filter(StackTemplate.id == template_id).first()
            if not template:
                return False
            session.delete(template)
            session.commit()
            logger.info(f"Deleted template {template.name} ({template_id[:8]})")
            return True

    # Backup Record Operations
    def add_backup_record(self, data: dict) -> BackupRecord:
        with self.get_session() as session:
            try:
                record = BackupRecord(**data)
                session.add(record)
                session.commit()
                session.refresh(record)
                logger.info(f"Added backup record {record.id[:8]} for {record.container_name}")
                return record
            except Exception as e:
                session.rollback()
                logger.error(f"Failed to add backup record: {e}")
                raise

    def get_backup_record(self, backup_id: str) -> Optional[BackupRecord]:
        with self.get_session() as session:
            return session.query(BackupRecord).filter(BackupRecord.id == backup_id).first()

    def get_backup_record_by_path(self, backup_path: str) -> Optional[BackupRecord]:
        with self.get_session() as session:
            return session.query(BackupRecord).filter(BackupRecord.backup_path == backup_path).first()

    def list_backup_records(self, container_name: Optional[str] = None) -> List[BackupRecord]:
        with self.get_session() as session:
            query = session.query(BackupRecord)
            if container_name:
                query = query.filter(BackupRecord.container_name == container_name)
            return query.order_by(BackupRecord.created_at.desc()).all()

    def delete_backup_record(self, backup_id: str) -> bool:
        with self.get_session() as session:
            record = session.query(BackupRecord).filter(BackupRecord.id == backup_id).first()
            if not record:
                return False
            session.delete(record)
            session.commit()
            logger.info(f"Deleted backup record {backup_id[:8]}")
            return True

    # Audit Operations
    def get_audit_entries(self, limit: int = 100, entity_type: Optional[str] = None,
                          entity_id: Optional[str] = None) -> List[AuditLog]:
        with self.get_session() as session:
            query = session.query(AuditLog)
            if entity_type:
                query = query.filter(AuditLog.entity_type == entity_type)
            if entity_id:
                query = query.filter(AuditLog.entity_id == entity_id)
            return query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(min(limit, 1000)).all()

    # Identity Operations
    def get_user(self, user_id: int) -> Optional[User]:
        with self.get_session() as session:
            return session.query(User).filter(User.id == user_id).first()

    def add_user(self, username: str, display_name: Optional[str] = None) -> User:
        with self.get_session() as session:
            user = User(username=username, display_name=display_name)
            session.add(user)
            session.commit()
            session.refresh(user)
            return user
