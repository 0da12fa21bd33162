"""
groups/store.py -- SQLAlchemy-backed persistence layer for groups.

Uses SQLAlchemy Core (not ORM) so the dataclasses in groups/models.py remain
the authoritative domain representation.

Pattern: Repository + Data Mapper. GroupStore is the repository; _row_to_group
and _row_to_member are the mappers. Route handlers never touch SQL directly.

Hierarchy: groups nest through parent_id. A member of a subgroup is subject to
the two-factor requirement of every ancestor, so the policy question "which
groups force this user into 2FA?" is answered by walking up from each direct
membership. Group trees are shallow; the walk loads the whole table once per
call rather than issuing one query per level.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = GroupStore()
    gid = store.create_group(Group(name="Ops", path="ops", require_two_factor_authentication=True))
    store.add_member(gid, user_id, DEVELOPER)
    store.groups_requiring_two_factor(user_id)
    store.close()
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Engine

from core.config import get_settings
from groups.models import DEVELOPER, Group, GroupMember

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_groups = Table(
    "groups",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("path", String(255), nullable=False, unique=True),
    Column("parent_id", Integer),
    Column("require_two_factor_authentication", Boolean, nullable=False, default=False),
    Column("two_factor_grace_period", Integer, nullable=False, default=48),
    Column("created_at", String(32), nullable=False),
)

_members = Table(
    "group_members",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("group_id", Integer, nullable=False, index=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("access_level", Integer, nullable=False, default=DEVELOPER),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("group_id", "user_id", name="uq_group_user"),
)

_UPDATABLE_FIELDS = {"name", "require_two_factor_authentication", "two_factor_grace_period"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _full_name(group_id: int, by_id: dict) -> str:
    """Join ancestor names root-first with " / ". Stops on a parent cycle."""
    names: list[str] = []
    seen: set[int] = set()
    current = by_id.get(group_id)
    while current is not None and current.id not in seen:
        seen.add(current.id)
        names.append(current.name)
        current = by_id.get(current.parent_id) if current.parent_id is not None else None
    return " / ".join(reversed(names))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class GroupStore:
    def __init__(self, db_url: Optional[str] = None) -> None:
        db_url = db_url or get_settings().groups_database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def create_group(self, group: Group) -> int:
        """Insert a group and return its id.

        Raises ValueError for an unknown parent_id and
        sqlalchemy.exc.IntegrityError for a duplicate path.
        """
        if group.parent_id is not None and self.get_group(group.parent_id) is None:
            raise ValueError(f"Parent group {group.parent_id} does not exist")
        with self.engine.connect() as conn:
            result = conn.execute(
                _groups.insert().values(
                    name=group.name,
                    path=group.path,
                    parent_id=group.parent_id,
                    require_two_factor_authentication=group.require_two_factor_authentication,
                    two_factor_grace_period=group.two_factor_grace_period,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def _load_all(self) -> dict[int, Group]:
        with self.engine.connect() as conn:
            rows = conn.execute(_groups.select().order_by(_groups.c.id)).fetchall()
        by_id = {r.id: _row_to_group(r) for r in rows}
        for g in by_id.values():
            g.full_name = _full_name(g.id, by_id)
        return by_id

    def get_group(self, group_id: int) -> Optional[Group]:
        return self._load_all().get(group_id)

    def get_by_path(self, path: str) -> Optional[Group]:
        for g in self._load_all().values():
            if g.path == path:
                return g
        return None

    def list_groups(self) -> list[Group]:
        """All groups ordered by id (creation order)."""
        return list(self._load_all().values())

    def update_group(self, group_id: int, **fields) -> bool:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown group fields: {unknown!r}")
        if not fields:
            return self.get_group(group_id) is not None
        with self.engine.connect() as conn:
            result = conn.execute(_groups.update().where(_groups.c.id == group_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def add_member(self, group_id: int, user_id: int, access_level: int = DEVELOPER) -> None:
        """Add a user to a group, or change their access level if already a member."""
        with self.engine.connect() as conn:
            existing = conn.execute(
                select(_members.c.id).where((_members.c.group_id == group_id) & (_members.c.user_id == user_id))
            ).first()
            if existing is None:
                conn.execute(
                    _members.insert().values(
                        group_id=group_id,
                        user_id=user_id,
                        access_level=access_level,
                        created_at=_now_iso(),
                    )
                )
            else:
                conn.execute(_members.update().where(_members.c.id == existing.id).values(access_level=access_level))
            conn.commit()

    def remove_member(self, group_id: int, user_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _members.delete().where((_members.c.group_id == group_id) & (_members.c.user_id == user_id))
            )
            conn.commit()
        return result.rowcount > 0

    def remove_user(self, user_id: int) -> int:
        """Drop every membership of a deleted user. Returns rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_members.delete().where(_members.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def list_members(self, group_id: int) -> list[GroupMember]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _members.select().where(_members.c.group_id == group_id).order_by(_members.c.id)
            ).fetchall()
        return [_row_to_member(r) for r in rows]

    def groups_for_user(self, user_id: int) -> list[Group]:
        """Groups the user is a direct member of, in creation order."""
        with self.engine.connect() as conn:
            ids = {
                r.group_id
                for r in conn.execute(select(_members.c.group_id).where(_members.c.user_id == user_id)).fetchall()
            }
        return [g for gid, g in self._load_all().items() if gid in ids]

    def groups_requiring_two_factor(self, user_id: int) -> list[Group]:
        """Groups whose 2FA requirement applies to this user, in creation order.

        A requirement applies through direct membership or through membership
        of any descendant group.
        """
        by_id = self._load_all()
        with self.engine.connect() as conn:
            direct = [
                r.group_id
                for r in conn.execute(select(_members.c.group_id).where(_members.c.user_id == user_id)).fetchall()
            ]
        applicable: set[int] = set()
        for gid in direct:
            current = by_id.get(gid)
            while current is not None and current.id not in applicable:
                applicable.add(current.id)
                current = by_id.get(current.parent_id) if current.parent_id is not None else None
        return [g for gid, g in by_id.items() if gid in applicable and g.require_two_factor_authentication]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_group(row) -> Group:
    return Group(
        id=row.id,
        name=row.name,
        path=row.path,
        parent_id=row.parent_id,
        require_two_factor_authentication=bool(row.require_two_factor_authentication),
        two_factor_grace_period=row.two_factor_grace_period,
        created_at=row.created_at,
    )


def _row_to_member(row) -> GroupMember:
    return GroupMember(
        id=row.id,
        group_id=row.group_id,
        user_id=row.user_id,
        access_level=row.access_level,
        created_at=row.created_at,
    )
