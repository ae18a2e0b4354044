"""Alembic wiring for the race schema and the ``flask db`` command group."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Tuple

import click
from alembic import command
from alembic.config import Config as AlembicConfig
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from flask import Flask
from sqlalchemy import create_engine, inspect, pool


_PROJECT_ROOT = Path(__file__).resolve().parents[1]

# Columns the race engine reads or writes; anything older predates versioned awards.
RACE_SCHEMA: Dict[str, Tuple[str, ...]] = {
    "rfqs": (
        "id",
        "tenant_id",
        "buyer_id",
        "rfq_type",
        "status",
        "deadline",
        "priority_holder_id",
        "priority_hold_expires_at",
        "awarded_to",
        "race_opens_at",
        "version",
    ),
    "rfq_responses": ("rfq_id", "supplier_id", "response_type", "outcome", "responded_at", "tenant_id"),
    "rfq_broadcasts": ("rfq_id", "supplier_id", "tier", "scheduled_at", "delivered_at", "viewed_at", "tenant_id"),
    "status_events": ("entity", "entity_id", "to_status", "reason", "version", "tenant_id"),
}
RFQ_PRIMARY_KEY = ("tenant_id", "id")


def to_sqlalchemy_url(raw_db_path: str) -> str:
    raw = (raw_db_path or "").strip()
    if not raw:
        raise RuntimeError("Database URL is not set for migrations.")
    if raw.startswith("postgres://"):
        return "postgresql://" + raw[len("postgres://") :]
    if raw.startswith(("postgresql://", "postgresql+", "sqlite://", "sqlite+pysqlite://")):
        return raw
    return f"sqlite:///{Path(raw).expanduser().resolve().as_posix()}"


def build_alembic_config(db_path: str) -> AlembicConfig:
    alembic_ini = _PROJECT_ROOT / "alembic.ini"
    if not alembic_ini.exists():
        raise RuntimeError("alembic.ini not found at the project root.")

    alembic_cfg = AlembicConfig(str(alembic_ini))
    alembic_cfg.set_main_option("script_location", (_PROJECT_ROOT / "migrations").as_posix())
    alembic_cfg.set_main_option("sqlalchemy.url", to_sqlalchemy_url(db_path))
    return alembic_cfg


@dataclass
class SchemaReport:
    revision: str | None
    head: str | None
    missing_tables: List[str] = field(default_factory=list)
    missing_columns: Dict[str, List[str]] = field(default_factory=dict)
    rfq_primary_key: Tuple[str, ...] = ()

    @property
    def up_to_date(self) -> bool:
        return self.revision is not None and self.revision == self.head

    def problems(self) -> List[str]:
        found = []
        if not self.up_to_date:
            found.append(f"revision {self.revision or 'none'} is not head {self.head}")
        found.extend(f"missing table {table}" for table in self.missing_tables)
        for table, columns in sorted(self.missing_columns.items()):
            found.append(f"{table} lacks {', '.join(columns)}")
        if "rfqs" not in self.missing_tables and tuple(sorted(self.rfq_primary_key)) != tuple(sorted(RFQ_PRIMARY_KEY)):
            found.append(f"rfqs primary key is ({', '.join(self.rfq_primary_key)}), expected (tenant_id, id)")
        return found


def inspect_race_schema(alembic_cfg: AlembicConfig) -> SchemaReport:
    head = ScriptDirectory.from_config(alembic_cfg).get_current_head()
    engine = create_engine(alembic_cfg.get_main_option("sqlalchemy.url"), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            report = SchemaReport(
                revision=MigrationContext.configure(connection).get_current_revision(),
                head=head,
            )
            inspector = inspect(connection)
            existing = set(inspector.get_table_names())
            for table, required in RACE_SCHEMA.items():
                if table not in existing:
                    report.missing_tables.append(table)
                    continue
                columns = {column["name"] for column in inspector.get_columns(table)}
                missing = [name for name in required if name not in columns]
                if missing:
                    report.missing_columns[table] = missing
            if "rfqs" in existing:
                pk = inspector.get_pk_constraint("rfqs") or {}
                report.rfq_primary_key = tuple(pk.get("constrained_columns") or ())
    finally:
        engine.dispose()
    return report


def register_db_cli(app: Flask) -> None:
    @app.cli.group("db")
    def db_group() -> None:
        """Race schema migrations (Alembic)."""

    def _config() -> AlembicConfig:
        return build_alembic_config(app.config["DB_PATH"])

    @db_group.command("upgrade")
    @click.argument("revision", required=False, default="head")
    def db_upgrade(revision: str) -> None:
        command.upgrade(_config(), revision)
        click.echo(f"Race schema upgraded to {revision}.")

    @db_group.command("downgrade")
    @click.argument("revision", required=False, default="-1")
    def db_downgrade(revision: str) -> None:
        command.downgrade(_config(), revision)
        click.echo(f"Race schema downgraded to {revision}.")

    @db_group.command("current")
    def db_current() -> None:
        report = inspect_race_schema(_config())
        state = "up to date" if report.up_to_date else "behind"
        click.echo(f"revision={report.revision or 'none'} head={report.head} ({state})")

    @db_group.command("check")
    def db_check() -> None:
        """Fail unless the database is at head with the versioned race tables."""
        problems = inspect_race_schema(_config()).problems()
        if problems:
            raise click.ClickException("; ".join(problems))
        click.echo("Race schema OK.")
