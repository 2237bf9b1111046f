"""
storage.py - Deployment document storage with locking and error handling
"""
import time
from sqlalchemy import (
    create_engine, Column, Integer, String, DateTime, JSON, Index, UniqueConstraint, text
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session, scoped_session
from sqlalchemy.pool import QueuePool, NullPool
from sqlalchemy.exc import SQLAlchemyError, IntegrityError, OperationalError
from datetime import datetime
from typing import List, Optional, Dict, Any, Iterable
from contextlib import contextmanager
from pathlib import Path
import threading

from logger import get_logger
from config import settings

logger = get_logger(__name__)

Base = declarative_base()


class DeploymentRow(Base):
    __tablename__ = 'deployments'

    id = Column(Integer, primary_key=True, index=True)
    deployment_id = Column(String(64), unique=True, nullable=False, index=True)
    version = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, index=True)
    config = Column(JSON, nullable=False)
    created_by = Column(String(255), default="admin")
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    revision = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index('idx_deployment_status_created', 'status', 'created_at'),
    )


class DeploymentDocument(Base):
    """Rollback plans, metrics snapshots and reports keyed by deployment and kind"""
    __tablename__ = 'deployment_documents'

    id = Column(Integer, primary_key=True)
    deployment_id = Column(String(64), nullable=False, index=True)
    kind = Column(String(32), nullable=False)
    payload = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('deployment_id', 'kind', name='uq_document_deployment_kind'),
    )


class Storage:
    def __init__(self, db_url: str = None):
        """Initialize storage with connection pooling and thread safety"""
        self.db_url = db_url or settings.get('database_url')
        self._lock = threading.RLock()

        self.is_postgresql = 'postgresql' in self.db_url
        self.is_sqlite = 'sqlite' in self.db_url

        engine_kwargs = {
            "pool_pre_ping": True,
            "echo": settings.get('debug', False),
        }

        if self.is_postgresql:
            engine_kwargs.update(
                poolclass=QueuePool,
                pool_size=settings.get('database_pool_size', 20),
                max_overflow=settings.get('database_max_overflow', 40),
                pool_recycle=settings.get('database_pool_recycle', 3600),
                connect_args={
                    "connect_timeout": 10,
                    "options": "-c statement_timeout=30000"
                },
            )
        else:
            # NullPool does not accept pool sizing arguments
            engine_kwargs.update(
                poolclass=NullPool,
                connect_args={"check_same_thread": False, "timeout": 30} if self.is_sqlite else {},
            )
            if self.is_sqlite:
                self._ensure_sqlite_directory()

        self.engine = create_engine(self.db_url, **engine_kwargs)

        self.SessionFactory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.Session = scoped_session(self.SessionFactory)

        logger.info(f"Storage initialized with database: {self.db_url}")

    def _ensure_sqlite_directory(self):
        path = self.db_url.split("sqlite:///", 1)[-1]
        if path and path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)

    def init_db(self):
        """Initialize database tables with retry logic"""
        max_retries = 3
        retry_delay = 1

        for attempt in range(max_retries):
            try:
                with self._lock:
                    Base.metadata.create_all(bind=self.engine)
                    logger.info("Database tables initialized")
                    return
            except OperationalError as e:
                if attempt < max_retries - 1:
                    logger.warning(f"Database init attempt {attempt + 1} failed: {e}")
                    time.sleep(retry_delay * (2 ** attempt))
                else:
                    logger.error(f"Database initialization failed after {max_retries} attempts: {e}")
                    raise

    @contextmanager
    def transaction(self) -> Session:
        """Explicit transaction context"""
        session = self.Session()
        try:
            yield session
            session.commit()
        except IntegrityError as e:
            session.rollback()
            logger.error(f"Database integrity error: {str(e)}")
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error: {str(e)}")
            raise
        except Exception as e:
            session.rollback()
            logger.debug(f"Transaction rolled back: {str(e)}")
            raise
        finally:
            session.close()

    def check_connection(self) -> bool:
        """Check database connection health"""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database connection check failed: {e}")
            return False

    @staticmethod
    def _row_to_dict(row: DeploymentRow) -> Dict[str, Any]:
        return {
            "deployment_id": row.deployment_id,
            "version": row.version,
            "status": row.status,
            "config": dict(row.config or {}),
            "created_by": row.created_by,
            "created_at": row.created_at,
            "updated_at": row.updated_at,
            "revision": row.revision,
        }

    # Deployment rows

    def save_deployment(self, deployment_id: str, version: str, status: str,
                        config: Dict[str, Any], created_by: str = "admin") -> Dict[str, Any]:
        """Insert a deployment or replace its configuration"""
        with self._lock, self.transaction() as session:
            row = session.query(DeploymentRow).filter(
                DeploymentRow.deployment_id == deployment_id
            ).with_for_update().first()

            if row is None:
                row = DeploymentRow(
                    deployment_id=deployment_id,
                    version=version,
                    status=status,
                    config=config,
                    created_by=created_by,
                )
                session.add(row)
            else:
                row.version = version
                row.config = config
                row.revision += 1
                row.updated_at = datetime.utcnow()

            session.flush()
            logger.debug(f"Saved deployment {deployment_id} (revision {row.revision})")
            return self._row_to_dict(row)

    def get_deployment(self, deployment_id: str) -> Optional[Dict[str, Any]]:
        with self.transaction() as session:
            row = session.query(DeploymentRow).filter(
                DeploymentRow.deployment_id == deployment_id
            ).first()
            return self._row_to_dict(row) if row else None

    def list_deployments(self, status: Optional[str] = None, limit: int = 20,
                         offset: int = 0) -> List[Dict[str, Any]]:
        """List deployments, newest first"""
        with self.transaction() as session:
            query = session.query(DeploymentRow)
            if status:
                query = query.filter(DeploymentRow.status == status)
            rows = query.order_by(DeploymentRow.created_at.desc(), DeploymentRow.id.desc())\
                        .limit(limit)\
                        .offset(offset)\
                        .all()
            return [self._row_to_dict(row) for row in rows]

    def count_deployments(self, status: Optional[str] = None) -> int:
        with self.transaction() as session:
            query = session.query(DeploymentRow)
            if status:
                query = query.filter(DeploymentRow.status == status)
            return query.count()

    def update_deployment_status(self, deployment_id: str, status: str,
                                 allowed_from: Iterable[str]) -> Optional[Dict[str, Any]]:
        """
        Update deployment status under a row lock

        Args:
            deployment_id: Deployment to update
            status: New status value
            allowed_from: Status values the row may currently hold

        Returns:
            Updated row as dict, or None if the deployment does not exist

        Raises:
            ValueError: If the current status is not in ``allowed_from``
        """
        allowed = set(allowed_from)

        with self._lock, self.transaction() as session:
            row = session.query(DeploymentRow).filter(
                DeploymentRow.deployment_id == deployment_id
            ).with_for_update().first()

            if not row:
                logger.warning(f"Deployment {deployment_id} not found for status update")
                return None

            old_status = row.status
            if old_status not in allowed:
                raise ValueError(
                    f"Invalid status transition for deployment {deployment_id}: "
                    f"{old_status} → {status}"
                )

            row.status = status
            row.revision += 1
            row.updated_at = datetime.utcnow()
            session.flush()

            logger.info(f"Updated deployment {deployment_id}: {old_status} → {status}")
            return self._row_to_dict(row)

    def delete_deployment(self, deployment_id: str) -> bool:
        """Delete a deployment row and its documents"""
        with self._lock, self.transaction() as session:
            deleted = session.query(DeploymentRow).filter(
                DeploymentRow.deployment_id == deployment_id
            ).delete()
            session.query(DeploymentDocument).filter(
                DeploymentDocument.deployment_id == deployment_id
            ).delete()
            return deleted > 0

    # Documents

    def put_document(self, deployment_id: str, kind: str, payload: Dict[str, Any]):
        with self._lock, self.transaction() as session:
            document = session.query(DeploymentDocument).filter(
                DeploymentDocument.deployment_id == deployment_id,
                DeploymentDocument.kind == kind
            ).with_for_update().first()

            if document is None:
                session.add(DeploymentDocument(
                    deployment_id=deployment_id,
                    kind=kind,
                    payload=payload,
                ))
            else:
                document.payload = payload
                document.updated_at = datetime.utcnow()

    def get_document(self, deployment_id: str, kind: str) -> Optional[Dict[str, Any]]:
        with self.transaction() as session:
            document = session.query(DeploymentDocument).filter(
                DeploymentDocument.deployment_id == deployment_id,
                DeploymentDocument.kind == kind
            ).first()
            return dict(document.payload) if document else None

    def close(self):
        """Release pooled connections"""
        try:
            self.Session.remove()
        finally:
            self.engine.dispose()
            logger.info("Storage closed")
