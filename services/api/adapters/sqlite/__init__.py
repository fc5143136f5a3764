# services/api/adapters/sqlite/__init__.py
from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    event,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from uuid import uuid4

from adapters.base import next_version_token
from core.errors import OrderNotFound, VersionConflict
from core.realtime import ChangeEvent
from models import ATTACHMENT_FIELDS, OrderStatus
from models.converters import patch_to_row

logger = logging.getLogger(__name__)

# ---- Engine (SQLite) with WAL & pragmas -------------------------------------

def _ensure_dir(path: str):
    d = os.path.dirname(path)
    if d and not os.path.isdir(d):
        os.makedirs(d, exist_ok=True)

def make_engine(db_url: str) -> Engine:
    if db_url in ("sqlite://", "sqlite:///:memory:"):
        # One shared in-memory database for every thread
        engine = create_engine(
            db_url,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        # Create data dir if sqlite file
        if db_url.startswith("sqlite:///"):
            file_path = db_url.replace("sqlite:///", "", 1)
            _ensure_dir(file_path)
        engine = create_engine(db_url, future=True, pool_pre_ping=True)

    # Apply pragmas per-connection
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):  # type: ignore
        if isinstance(dbapi_connection, sqlite3.Connection):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.execute("PRAGMA busy_timeout=5000;")
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()

    return engine

# ---- Schema via SQLAlchemy Core ---------------------------------------------

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("title", Text, nullable=False, default=""),
    Column("comment", Text, nullable=False, default=""),
    Column("region", String, nullable=False, default=""),
    Column("city", String, nullable=False, default=""),
    Column("street", String, nullable=False, default=""),
    Column("house", String, nullable=False, default=""),
    Column("fio", String, nullable=False, default=""),
    Column("phone", String, nullable=False, default=""),
    Column("time_window_start", String, nullable=True),  # ISO-8601 UTC
    Column("assigned_to", String, nullable=True),
    Column("status", String, nullable=False, default=OrderStatus.NEW.value),
    Column("urgent", Boolean, nullable=False, default=False),
    Column("department_id", String, nullable=True),
    Column("price", String, nullable=True),      # decimal text
    Column("fuel_cost", String, nullable=True),  # decimal text
    Column("work_type_id", String, nullable=True),
    Column("company_id", String, nullable=True),
    Column("contract_file", JSON, nullable=False, default=list),
    Column("photo_before", JSON, nullable=False, default=list),
    Column("photo_after", JSON, nullable=False, default=list),
    Column("act_file", JSON, nullable=False, default=list),
    Column("created_at", String, nullable=False),
    Column("updated_at", String, nullable=False),
)

companies = Table(
    "companies",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False, default=""),
    Column("use_work_types", Boolean, nullable=False, default=False),
)

order_field_settings = Table(
    "order_field_settings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("company_id", String, nullable=False),
    Column("field_key", String, nullable=False),
    Column("is_enabled_create", Boolean, nullable=False, default=True),
    Column("is_enabled_edit", Boolean, nullable=False, default=True),
    Column("is_visible_read", Boolean, nullable=False, default=True),
    Column("is_required", Boolean, nullable=False, default=False),
    UniqueConstraint("company_id", "field_key", name="uq_field_settings_company_key"),
)

form_schemas = Table(
    "form_schemas",
    metadata,
    Column("context", String, primary_key=True),
    Column("schema", JSON, nullable=False),
)

profiles = Table(
    "profiles",
    metadata,
    Column("id", String, primary_key=True),
    Column("full_name", String, nullable=True),
    Column("email", String, nullable=True),
    Column("company_id", String, nullable=True),
)

Index("idx_orders_company", orders.c.company_id)
Index("idx_orders_assigned", orders.c.assigned_to)
Index("idx_field_settings_company", order_field_settings.c.company_id)

_ORDER_COLUMNS = {c.name for c in orders.columns}
_READONLY_COLUMNS = {"id", "created_at", "updated_at"}

# ---- Adapter implementation --------------------------------------------------

@dataclass(frozen=True)
class SqliteAdapter:
    engine: Engine
    feed: Optional[Any] = None

    @classmethod
    def from_url(cls, db_url: str = "sqlite:///data/orders.db", feed: Optional[Any] = None) -> "SqliteAdapter":
        eng = make_engine(db_url)
        metadata.create_all(eng)
        return cls(engine=eng, feed=feed)

    def _publish(self, op: str, order_id: str, company_id: Optional[str]) -> None:
        if self.feed is not None:
            self.feed.publish(ChangeEvent(table="orders", op=op, record_id=order_id, company_id=company_id))

    @staticmethod
    def _writable(values: Dict[str, Any]) -> Dict[str, Any]:
        row = patch_to_row(values)
        unknown = set(row) - _ORDER_COLUMNS
        if unknown:
            raise ValueError(f"UNKNOWN_ORDER_COLUMNS: {sorted(unknown)}")
        return {k: v for k, v in row.items() if k not in _READONLY_COLUMNS}

    # Orders
    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        with self.engine.connect() as conn:
            row = conn.execute(select(orders).where(orders.c.id == str(order_id))).mappings().first()
        return dict(row) if row else None

    def create_order(self, values: Dict[str, Any]) -> Dict[str, Any]:
        order_id = str(values.get("id") or uuid4())
        token = next_version_token()
        row = {k: v for k, v in self._writable(values).items()}
        row.setdefault("status", OrderStatus.NEW.value)
        for cat in ATTACHMENT_FIELDS:
            row.setdefault(cat, [])
        with self.engine.begin() as conn:
            conn.execute(insert(orders).values(id=order_id, created_at=token, updated_at=token, **row))
        self._publish("INSERT", order_id, row.get("company_id"))
        return self.get_order(order_id)  # type: ignore[return-value]

    def _current(self, order_id: str):
        with self.engine.connect() as conn:
            return conn.execute(
                select(orders.c.updated_at, orders.c.company_id).where(orders.c.id == str(order_id))
            ).first()

    # Conditional update (compare-and-set on updated_at), one statement per write
    def update_order_if_version(
        self,
        order_id: str,
        patch: Dict[str, Any],
        expected_updated_at: Optional[str],
    ) -> Dict[str, Any]:
        values = self._writable(patch)
        current = self._current(order_id)
        if current is None:
            raise OrderNotFound(order_id)

        stmt = update(orders).where(orders.c.id == str(order_id))
        if expected_updated_at is not None:
            stmt = stmt.where(orders.c.updated_at == str(expected_updated_at))
        with self.engine.begin() as conn:
            res = conn.execute(stmt.values(updated_at=next_version_token(current.updated_at), **values))
            updated = res.rowcount == 1

        if not updated:
            latest = self.get_order(order_id)
            if latest is None:
                raise OrderNotFound(order_id)
            logger.warning(f"Version conflict on order {order_id}: expected {expected_updated_at}, stored {latest['updated_at']}")
            raise VersionConflict(latest=latest)

        self._publish("UPDATE", order_id, current.company_id)
        return self.get_order(order_id)  # type: ignore[return-value]

    # Atomic accept: only an unassigned order can be taken
    def accept_order(self, order_id: str, user_id: str) -> bool:
        current = self._current(order_id)
        if current is None:
            raise OrderNotFound(order_id)
        with self.engine.begin() as conn:
            res = conn.execute(
                update(orders)
                .where(orders.c.id == str(order_id))
                .where(orders.c.assigned_to.is_(None))
                .where(orders.c.status != OrderStatus.COMPLETED.value)
                .values(
                    assigned_to=str(user_id),
                    status=OrderStatus.IN_PROGRESS.value,
                    updated_at=next_version_token(current.updated_at),
                )
            )
            accepted = res.rowcount == 1
        if accepted:
            self._publish("UPDATE", order_id, current.company_id)
        return accepted

    def delete_order(self, order_id: str) -> None:
        current = self._current(order_id)
        with self.engine.begin() as conn:
            res = conn.execute(delete(orders).where(orders.c.id == str(order_id)))
            deleted = res.rowcount == 1
        if not deleted:
            raise OrderNotFound(order_id)
        self._publish("DELETE", order_id, current.company_id if current else None)

    # Form schema
    def list_order_field_settings(self, company_id: str) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(order_field_settings).where(order_field_settings.c.company_id == str(company_id))
            ).mappings().all()
        return [dict(r) for r in rows]

    def set_order_field_settings(self, company_id: str, rows: List[Dict[str, Any]]) -> None:
        """Replace the company's field settings (admin / seeding)."""
        with self.engine.begin() as conn:
            conn.execute(delete(order_field_settings).where(order_field_settings.c.company_id == str(company_id)))
            if rows:
                conn.execute(
                    insert(order_field_settings),
                    [
                        dict(
                            company_id=str(company_id),
                            field_key=r["field_key"],
                            is_enabled_create=bool(r.get("is_enabled_create", True)),
                            is_enabled_edit=bool(r.get("is_enabled_edit", True)),
                            is_visible_read=bool(r.get("is_visible_read", True)),
                            is_required=bool(r.get("is_required", False)),
                        )
                        for r in rows
                    ],
                )

    def get_form_schema(self, context: str) -> Optional[Dict[str, Any]]:
        with self.engine.connect() as conn:
            payload = conn.execute(
                select(form_schemas.c.schema).where(form_schemas.c.context == context)
            ).scalar_one_or_none()
        return payload

    def put_form_schema(self, context: str, payload: Dict[str, Any]) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(form_schemas).where(form_schemas.c.context == context))
            conn.execute(insert(form_schemas).values(context=context, schema=payload))

    # Directory
    def get_company(self, company_id: str) -> Optional[Dict[str, Any]]:
        with self.engine.connect() as conn:
            row = conn.execute(select(companies).where(companies.c.id == str(company_id))).mappings().first()
        return dict(row) if row else None

    def upsert_company(self, company_id: str, name: str = "", use_work_types: bool = False) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(companies).where(companies.c.id == str(company_id)))
            conn.execute(insert(companies).values(id=str(company_id), name=name, use_work_types=use_work_types))

    def get_user_display_name(self, user_id: str) -> Optional[str]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(profiles.c.full_name, profiles.c.email).where(profiles.c.id == str(user_id))
            ).first()
        if row is None:
            return None
        return (row.full_name or "").strip() or row.email or None

    def upsert_profile(self, user_id: str, full_name: Optional[str] = None, email: Optional[str] = None, company_id: Optional[str] = None) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(profiles).where(profiles.c.id == str(user_id)))
            conn.execute(
                insert(profiles).values(id=str(user_id), full_name=full_name, email=email, company_id=company_id)
            )

    def ping(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(select(1))
