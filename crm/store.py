"""
crm/store.py -- SQLAlchemy-backed persistence layer for the Everglass CRM.

Uses SQLAlchemy Core (not ORM) so the domain dataclasses in crm/models.py
remain the authoritative domain representation. SQLAlchemy provides a
database-agnostic abstraction: swapping SQLite for MySQL is a connection
string change, not a rewrite.

Pattern: Repository + Data Mapper. CRMStore is the repository (one clean
interface per entity). The _row_to_* functions are the mappers. Route handlers
never touch SQL directly.

Scoping: list/count methods accept center_ids. None means "no restriction"
(head office and admins); a list -- even an empty one -- restricts results to
those centers. Callers derive the list from auth.permissions.

Usage:
    store = CRMStore()                                 # DATABASE_URL
    store = CRMStore("sqlite:///:memory:")             # tests
    franchise_id = store.create_franchise(Franchise(name="Nord"))
    center_id = store.create_center(Center(name="Lille", franchise_id=franchise_id))
    store.create_client(Client(center_id=center_id, first_name="Ana", last_name="Roy"))
    store.list_clients(center_ids=[center_id])
    store.close()
"""

from typing import Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, func, select, text
from sqlalchemy.engine import Engine

from core.config import get_settings
from core.db import make_engine, now_iso
from crm.models import Center, Client, Franchise, OrgDirectory

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_franchises = Table(
    "franchises",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
)

_centers = Table(
    "centers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("franchise_id", Integer, index=True),
    Column("city", String(100)),
    Column("created_at", String(32), nullable=False),
)

_clients = Table(
    "clients",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("center_id", Integer, nullable=False, index=True),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("email", String(255)),
    Column("phone", String(30)),
    Column("company", String(255)),
    Column("created_at", String(32), nullable=False),
)


class CRMStore:
    def __init__(self, db_url: Optional[str] = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Organization
    # ------------------------------------------------------------------

    def create_franchise(self, franchise: Franchise) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_franchises.insert().values(name=franchise.name, created_at=now_iso()))
        return result.inserted_primary_key[0]

    def get_franchise(self, franchise_id: int) -> Optional[Franchise]:
        with self.engine.connect() as conn:
            row = conn.execute(_franchises.select().where(_franchises.c.id == franchise_id)).fetchone()
        return _row_to_franchise(row) if row is not None else None

    def list_franchises(self) -> list[Franchise]:
        with self.engine.connect() as conn:
            rows = conn.execute(_franchises.select().order_by(_franchises.c.name)).fetchall()
        return [_row_to_franchise(r) for r in rows]

    def create_center(self, center: Center) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _centers.insert().values(
                    name=center.name,
                    franchise_id=center.franchise_id,
                    city=center.city,
                    created_at=now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def get_center(self, center_id: int) -> Optional[Center]:
        with self.engine.connect() as conn:
            row = conn.execute(_centers.select().where(_centers.c.id == center_id)).fetchone()
        return _row_to_center(row) if row is not None else None

    def list_centers(self, franchise_id: Optional[int] = None) -> list[Center]:
        query = _centers.select().order_by(_centers.c.name)
        if franchise_id is not None:
            query = query.where(_centers.c.franchise_id == franchise_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_center(r) for r in rows]

    def get_org_directory(self) -> OrgDirectory:
        """Return the franchise -> center tree in two cheap queries."""
        with self.engine.connect() as conn:
            franchise_ids = [r.id for r in conn.execute(select(_franchises.c.id).order_by(_franchises.c.id))]
            centers = conn.execute(select(_centers.c.id, _centers.c.franchise_id)).fetchall()
        return OrgDirectory(
            franchise_ids=franchise_ids,
            center_franchise={r.id: r.franchise_id for r in centers},
        )

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def create_client(self, client: Client) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _clients.insert().values(
                    center_id=client.center_id,
                    first_name=client.first_name,
                    last_name=client.last_name,
                    email=client.email,
                    phone=client.phone,
                    company=client.company,
                    created_at=now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def get_client(self, client_id: int) -> Optional[Client]:
        with self.engine.connect() as conn:
            row = conn.execute(_clients.select().where(_clients.c.id == client_id)).fetchone()
        return _row_to_client(row) if row is not None else None

    def list_clients(self, center_ids: Optional[list[int]] = None) -> list[Client]:
        query = _clients.select().order_by(_clients.c.last_name, _clients.c.first_name)
        if center_ids is not None:
            query = query.where(_clients.c.center_id.in_(center_ids))
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_client(r) for r in rows]

    def count_clients(self, center_ids: Optional[list[int]] = None) -> int:
        query = select(func.count()).select_from(_clients)
        if center_ids is not None:
            query = query.where(_clients.c.center_id.in_(center_ids))
        with self.engine.connect() as conn:
            return conn.execute(query).scalar() or 0

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Round-trip to the database. Raises on connection failure."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_franchise(row) -> Franchise:
    return Franchise(id=row.id, name=row.name, created_at=row.created_at)


def _row_to_center(row) -> Center:
    return Center(
        id=row.id,
        name=row.name,
        franchise_id=row.franchise_id,
        city=row.city,
        created_at=row.created_at,
    )


def _row_to_client(row) -> Client:
    return Client(
        id=row.id,
        center_id=row.center_id,
        first_name=row.first_name,
        last_name=row.last_name,
        email=row.email,
        phone=row.phone,
        company=row.company,
        created_at=row.created_at,
    )
