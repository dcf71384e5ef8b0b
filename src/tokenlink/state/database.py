"""
Database module for persistent workflow state.

Uses SQLAlchemy for async database operations with SQLite by default.
"""

import json
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy import Column, DateTime, Integer, String, Text, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from tokenlink.types import ManagerHandle, TransferReceipt
from tokenlink.workflow.checkpoint import WorkflowCheckpoint, WorkflowStage

logger = structlog.get_logger(__name__)

Base = declarative_base()


class CheckpointRecord(Base):
    """Database model for workflow checkpoints."""

    __tablename__ = "checkpoints"

    link_id = Column(String(300), primary_key=True)
    stage = Column(String(40), nullable=False, default=WorkflowStage.INIT.value)

    salt = Column(String(66), nullable=True)
    token_id = Column(String(66), nullable=True)
    link_attempted_at = Column(DateTime, nullable=True)

    managers_json = Column(Text, nullable=True)  # JSON encoded
    metadata_json = Column(Text, nullable=True)  # JSON encoded
    roles_json = Column(Text, nullable=True)  # JSON encoded

    last_step = Column(String(100), nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class TransferRecord(Base):
    """Database model for submitted interchain transfers."""

    __tablename__ = "transfers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    link_id = Column(String(300), nullable=False, index=True)
    token_id = Column(String(66), nullable=False)

    source_network = Column(String(100), nullable=False)
    destination_network = Column(String(100), nullable=False)
    receiver = Column(String(100), nullable=False)
    amount = Column(String(80), nullable=False)  # uint256 does not fit an INTEGER

    approval_tx_hash = Column(String(66), nullable=True)
    transfer_tx_hash = Column(String(66), nullable=False)

    submitted_at = Column(DateTime, default=datetime.utcnow)


class CheckpointStore:
    """
    Async database interface for checkpoint persistence.

    Provides methods to save and load workflow checkpoints and transfer history.
    """

    def __init__(self, database_url: str):
        """
        Initialize database connection settings.

        Args:
            database_url: SQLAlchemy async database URL
        """
        self.database_url = database_url
        self._engine = None
        self._session_factory = None

    async def connect(self) -> None:
        """Initialize database connection and create tables."""
        self._engine = create_async_engine(
            self.database_url,
            echo=False,
        )

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        # Create tables
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("database_connected", url=self.database_url.split("///")[0])

    async def disconnect(self) -> None:
        """Close database connection."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            logger.info("database_disconnected")

    def _get_session(self) -> AsyncSession:
        """Get a new database session."""
        if not self._session_factory:
            raise RuntimeError("Database not connected")
        return self._session_factory()

    # Checkpoint operations

    async def save_checkpoint(self, checkpoint: WorkflowCheckpoint) -> None:
        """Save or update a checkpoint. Commits before returning."""
        async with self._get_session() as session:
            record = await session.get(CheckpointRecord, checkpoint.link_id)

            if record is None:
                record = CheckpointRecord(
                    link_id=checkpoint.link_id,
                    created_at=checkpoint.created_at,
                )
                session.add(record)

            record.stage = checkpoint.stage.value
            record.salt = checkpoint.salt
            record.token_id = checkpoint.token_id
            record.link_attempted_at = checkpoint.link_attempted_at
            record.managers_json = json.dumps(
                {name: handle.to_dict() for name, handle in checkpoint.managers.items()}
            )
            record.metadata_json = json.dumps(checkpoint.metadata_registered)
            record.roles_json = json.dumps(checkpoint.roles_granted)
            record.last_step = checkpoint.last_step
            record.last_success_at = checkpoint.last_success_at
            record.last_error = checkpoint.last_error
            record.updated_at = checkpoint.updated_at

            await session.commit()

        logger.debug("checkpoint_saved", link_id=checkpoint.link_id, stage=checkpoint.stage.value)

    async def load_checkpoint(self, link_id: str) -> Optional[WorkflowCheckpoint]:
        """Load a checkpoint by link id."""
        async with self._get_session() as session:
            record = await session.get(CheckpointRecord, link_id)
            if not record:
                return None
            return self._record_to_checkpoint(record)

    async def load_or_create(self, link_id: str) -> WorkflowCheckpoint:
        """Load the checkpoint for a link, creating an INIT checkpoint if none exists."""
        checkpoint = await self.load_checkpoint(link_id)
        if checkpoint is None:
            checkpoint = WorkflowCheckpoint(link_id=link_id)
            await self.save_checkpoint(checkpoint)
            logger.info("checkpoint_created", link_id=link_id)
        return checkpoint

    async def list_checkpoints(self) -> List[WorkflowCheckpoint]:
        """Load every checkpoint, oldest first."""
        async with self._get_session() as session:
            result = await session.execute(select(CheckpointRecord).order_by(CheckpointRecord.created_at))
            return [self._record_to_checkpoint(r) for r in result.scalars().all()]

    def _record_to_checkpoint(self, record: CheckpointRecord) -> WorkflowCheckpoint:
        """Convert database record to WorkflowCheckpoint."""
        managers = {}
        if record.managers_json:
            managers = {
                name: ManagerHandle.from_dict(data)
                for name, data in json.loads(record.managers_json).items()
            }

        return WorkflowCheckpoint(
            link_id=record.link_id,
            stage=WorkflowStage(record.stage),
            salt=record.salt,
            token_id=record.token_id,
            link_attempted_at=record.link_attempted_at,
            managers=managers,
            metadata_registered=json.loads(record.metadata_json) if record.metadata_json else [],
            roles_granted=json.loads(record.roles_json) if record.roles_json else {},
            last_step=record.last_step,
            last_success_at=record.last_success_at,
            last_error=record.last_error,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    # Transfer operations

    async def save_transfer(self, link_id: str, receipt: TransferReceipt) -> None:
        """Append a submitted transfer to the history."""
        async with self._get_session() as session:
            session.add(TransferRecord(
                link_id=link_id,
                token_id=receipt.request.token_id,
                source_network=receipt.request.source_network,
                destination_network=receipt.request.destination_network,
                receiver=receipt.request.receiver,
                amount=str(receipt.request.amount),
                approval_tx_hash=receipt.approval_tx_hash,
                transfer_tx_hash=receipt.transfer_tx_hash,
                submitted_at=receipt.submitted_at,
            ))
            await session.commit()

    async def load_transfers(self, link_id: str) -> List[dict]:
        """Load the transfer history of a link, oldest first."""
        async with self._get_session() as session:
            result = await session.execute(
                select(TransferRecord)
                .where(TransferRecord.link_id == link_id)
                .order_by(TransferRecord.id)
            )
            return [
                {
                    "token_id": r.token_id,
                    "source_network": r.source_network,
                    "destination_network": r.destination_network,
                    "receiver": r.receiver,
                    "amount": int(r.amount),
                    "approval_tx_hash": r.approval_tx_hash,
                    "transfer_tx_hash": r.transfer_tx_hash,
                    "submitted_at": r.submitted_at.isoformat() if r.submitted_at else None,
                }
                for r in result.scalars().all()
            ]


async def init_store(database_url: str) -> CheckpointStore:
    """
    Initialize and connect the checkpoint store.

    Args:
        database_url: SQLAlchemy async database URL

    Returns:
        Connected CheckpointStore instance
    """
    store = CheckpointStore(database_url)
    await store.connect()
    return store
