"""Durable agent registry backed by SQLModel + SQLite."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from sqlalchemy import update as sa_update
from sqlmodel import Session, SQLModel, col, select

from workgraph.orchestrator.models import AgentCreate, AgentRecord, AgentStatus
from workgraph.storage.common import build_sqlite_engine, to_db_datetime, to_utc_aware, utc_now
from workgraph.storage.sqlmodel_models import AgentRow, RegistryCounter

REGISTRY_FILE_NAME = "registry.db"
_AGENT_COUNTER = "agent"


class AgentRegistry:
    """Agent persistence facade; one row per spawned process, keyed by agent id."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    @classmethod
    def for_graph_dir(cls, graph_dir: Path, *, busy_timeout_ms: int = 5_000) -> AgentRegistry:
        registry = cls(graph_dir / "agents" / REGISTRY_FILE_NAME, busy_timeout_ms=busy_timeout_ms)
        registry.init_schema()
        return registry

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        SQLModel.metadata.create_all(self.engine)
        with Session(self.engine) as session:
            counter = session.get(RegistryCounter, _AGENT_COUNTER)
            if counter is None:
                session.add(RegistryCounter(name=_AGENT_COUNTER, value=0))
                session.commit()

    def reserve_agent_id(self) -> str:
        """Allocate the next ``agent-<n>`` identifier; never reused."""

        with Session(self.engine) as session:
            session.exec(
                sa_update(RegistryCounter)
                .where(col(RegistryCounter.name) == _AGENT_COUNTER)
                .values(value=col(RegistryCounter.value) + 1),
            )
            counter = session.exec(
                select(RegistryCounter).where(RegistryCounter.name == _AGENT_COUNTER),
            ).one()
            value = counter.value
            session.commit()
        return f"agent-{value}"

    def register(self, payload: AgentCreate) -> AgentRecord:
        now = utc_now()
        with Session(self.engine) as session:
            row = AgentRow(
                agent_id=payload.agent_id,
                seq=_agent_seq(payload.agent_id),
                pid=payload.pid,
                task_id=payload.task_id,
                executor=payload.executor,
                model=payload.model,
                status=AgentStatus.ALIVE.value,
                output_path=payload.output_path,
                started_at=to_db_datetime(now),
                last_heartbeat=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_agent_record(row)

    def get(self, agent_id: str) -> AgentRecord | None:
        with Session(self.engine) as session:
            row = session.get(AgentRow, agent_id)
            return _to_agent_record(row) if row is not None else None

    def list_agents(self, *, alive_only: bool = False) -> list[AgentRecord]:
        with Session(self.engine) as session:
            statement = select(AgentRow)
            if alive_only:
                statement = statement.where(AgentRow.status == AgentStatus.ALIVE.value)
            rows = session.exec(statement.order_by(col(AgentRow.seq).asc())).all()
            return [_to_agent_record(row) for row in rows]

    def alive_agents(self) -> list[AgentRecord]:
        return self.list_agents(alive_only=True)

    def heartbeat(self, agent_id: str) -> bool:
        """Touch ``last_heartbeat`` of an alive agent."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentRow)
                .where(
                    col(AgentRow.agent_id) == agent_id,
                    col(AgentRow.status) == AgentStatus.ALIVE.value,
                )
                .values(last_heartbeat=to_db_datetime(utc_now())),
            )
            session.commit()
            return result.rowcount == 1

    def mark_dead(self, agent_id: str, *, reason: str) -> bool:
        """Retire an alive agent; returns False if it was already retired."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentRow)
                .where(
                    col(AgentRow.agent_id) == agent_id,
                    col(AgentRow.status) == AgentStatus.ALIVE.value,
                )
                .values(
                    status=AgentStatus.DEAD.value,
                    finished_at=to_db_datetime(utc_now()),
                    exit_reason=reason,
                ),
            )
            session.commit()
            return result.rowcount == 1


def _agent_seq(agent_id: str) -> int:
    _, _, suffix = agent_id.rpartition("-")
    if not suffix.isdigit():
        raise ValueError(f"Agent id must look like 'agent-<n>': {agent_id!r}")
    return int(suffix)


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware(value) if value is not None else None


def _to_agent_record(row: AgentRow) -> AgentRecord:
    return AgentRecord(
        agent_id=row.agent_id,
        pid=row.pid,
        task_id=row.task_id,
        executor=row.executor,
        model=row.model,
        status=AgentStatus(row.status),
        started_at=to_utc_aware(row.started_at),
        last_heartbeat=to_utc_aware(row.last_heartbeat),
        output_path=row.output_path,
        finished_at=_optional_aware(row.finished_at),
        exit_reason=row.exit_reason,
    )
