"""
Coordination rows for scheduled jobs and the chain listener.

JobLock: lease per job name so two runs of the same sweep never overlap,
even when triggered from different processes.
ChainCursor: last block scanned by the deposit listener.
"""

from sqlalchemy import Column, String, BigInteger, DateTime

from entitlement_engine.db_base import Base


class JobLock(Base):
    """Lease held by a running job."""

    __tablename__ = "job_locks"

    job_name = Column(String(100), primary_key=True)
    owner = Column(String(255), nullable=True)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    locked_until = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Lease expiry; a crashed run frees the job after this"
    )

    def __repr__(self) -> str:
        return f"<JobLock(job_name={self.job_name}, owner={self.owner}, locked_until={self.locked_until})>"


class ChainCursor(Base):
    """Highest block fully processed for a named log subscription."""

    __tablename__ = "chain_cursors"

    name = Column(String(100), primary_key=True)
    last_block = Column(BigInteger, nullable=False, default=0)
