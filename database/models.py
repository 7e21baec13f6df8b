"""SQLAlchemy models."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, JSON, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Wei amounts overflow 64-bit integer columns, so they are stored as decimal strings.


class Position(Base):
    __tablename__ = "positions"

    id = Column(Integer, primary_key=True)
    token_id = Column(String, nullable=False, index=True)
    acquisition_cost_wei = Column(String, nullable=False)
    listed_price_wei = Column(String, nullable=False)
    buy_tx_hash = Column(String, nullable=True)
    status = Column(String, default="OPEN", nullable=False)  # OPEN/SOLD/TIMED_OUT
    listed = Column(Integer, default=0, nullable=False)
    listed_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    closed_at = Column(DateTime, nullable=True)

    @property
    def cost_wei(self) -> int:
        return int(self.acquisition_cost_wei or 0)


class SettlementRun(Base):
    __tablename__ = "settlement_runs"

    id = Column(Integer, primary_key=True)
    status = Column(String, default="IN_PROGRESS", nullable=False)  # IN_PROGRESS/COMPLETED/DEGRADED/FAILED/SKIPPED
    last_completed_step = Column(String, nullable=True)
    native_received_wei = Column(String, default="0", nullable=False)
    native_swapped_wei = Column(String, default="0", nullable=False)
    native_reserved_for_gas_wei = Column(String, default="0", nullable=False)
    gas_top_up_wei = Column(String, default="0", nullable=False)
    reward_token_burned_wei = Column(String, default="0", nullable=False)
    settlement_tx_id = Column(String, nullable=True)
    tx_hashes = Column(JSON, nullable=True)
    error = Column(String, nullable=True)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    finished_at = Column(DateTime, nullable=True)
