"""SQLModel ORM tables for the agent registry."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel


class AgentRow(SQLModel, table=True):
    __tablename__ = "agents"  # type: ignore[bad-override]

    agent_id: str = Field(primary_key=True)
    seq: int = Field(index=True, unique=True)
    pid: int
    task_id: str = Field(index=True)
    executor: str
    model: str | None = None
    status: str = Field(index=True)
    output_path: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_heartbeat: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    exit_reason: str | None = None


class RegistryCounter(SQLModel, table=True):
    __tablename__ = "registry_counters"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    value: int = 0
