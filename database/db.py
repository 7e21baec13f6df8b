"""Database helpers and CRUD operations."""

from datetime import datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from config import DATABASE_URL
from database.models import Base, Position, SettlementRun

engine = create_engine(DATABASE_URL, future=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True, expire_on_commit=False)


def init_db() -> None:
    Base.metadata.create_all(bind=engine)


def get_db() -> Session:
    return SessionLocal()


def open_position(
    token_id: str,
    acquisition_cost_wei: int,
    listed_price_wei: int,
    buy_tx_hash: str | None = None,
) -> Position:
    db = get_db()
    try:
        existing = (
            db.query(Position)
            .filter(Position.token_id == str(token_id), Position.status == "OPEN")
            .first()
        )
        if existing:
            return existing

        position = Position(
            token_id=str(token_id),
            acquisition_cost_wei=str(int(acquisition_cost_wei)),
            listed_price_wei=str(int(listed_price_wei)),
            buy_tx_hash=buy_tx_hash,
            status="OPEN",
        )
        db.add(position)
        db.commit()
        db.refresh(position)
        return position
    finally:
        db.close()


def mark_position_listed(token_id: str) -> None:
    db = get_db()
    try:
        position = (
            db.query(Position)
            .filter(Position.token_id == str(token_id), Position.status == "OPEN")
            .first()
        )
        if not position:
            return
        position.listed = 1
        db.commit()
    finally:
        db.close()


def list_open_positions() -> list[Position]:
    db = get_db()
    try:
        return db.query(Position).filter(Position.status == "OPEN").order_by(Position.listed_at.asc()).all()
    finally:
        db.close()


def close_position(token_id: str, status: str) -> bool:
    db = get_db()
    try:
        position = (
            db.query(Position)
            .filter(Position.token_id == str(token_id), Position.status == "OPEN")
            .first()
        )
        if not position:
            return False
        position.status = status
        position.closed_at = datetime.utcnow()
        db.commit()
        return True
    finally:
        db.close()


def create_settlement_run() -> int:
    db = get_db()
    try:
        run = SettlementRun(status="IN_PROGRESS")
        db.add(run)
        db.commit()
        db.refresh(run)
        return int(run.id)
    finally:
        db.close()


def update_settlement_run(run_id: int, **fields) -> None:
    db = get_db()
    try:
        run = db.query(SettlementRun).filter(SettlementRun.id == run_id).first()
        if not run:
            return
        for name, value in fields.items():
            if name.endswith("_wei") and value is not None:
                value = str(int(value))
            setattr(run, name, value)
        if fields.get("status") and fields["status"] != "IN_PROGRESS":
            run.finished_at = datetime.utcnow()
        db.commit()
    finally:
        db.close()


def list_unfinished_settlement_runs(limit: int = 20) -> list[SettlementRun]:
    db = get_db()
    try:
        return (
            db.query(SettlementRun)
            .filter(SettlementRun.status == "IN_PROGRESS")
            .order_by(SettlementRun.started_at.desc())
            .limit(limit)
            .all()
        )
    finally:
        db.close()


def get_settlement_stats(since: datetime) -> dict:
    db = get_db()
    try:
        runs = db.query(SettlementRun).filter(SettlementRun.started_at >= since).all()
        burned = sum(int(run.reward_token_burned_wei or 0) for run in runs)
        swapped = sum(int(run.native_swapped_wei or 0) for run in runs)
        return {
            "runs": len(runs),
            "completed": sum(1 for run in runs if run.status == "COMPLETED"),
            "failed": sum(1 for run in runs if run.status == "FAILED"),
            "reward_burned_wei": burned,
            "native_swapped_wei": swapped,
        }
    finally:
        db.close()
