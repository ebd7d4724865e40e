from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from aegis.logging import get_logger
from aegis.storage.defaults import DEFAULT_PERMISSIONS, DEFAULT_ROLE_GRANTS, DEFAULT_ROLES
from aegis.storage.errors import ConstraintViolation
from aegis.storage.models import (
    Account,
    AccountFilter,
    AccountStatus,
    AccountType,
    Permission,
    RefreshToken,
    Role,
)

_ACCOUNT_COLUMNS = (
    "id, email, username, password_hash, full_name, phone, account_type, status, "
    "email_verified, phone_verified, version, created_at, updated_at, deleted_at"
)
_TOKEN_COLUMNS = (
    "id, account_id, token_hash, expires_at, created_at, revoked_at, "
    "replaced_by_id, ip_address, user_agent"
)

_UNIQUE_FIELDS = {
    "account_email_live_uq": "email",
    "account_username_live_uq": "username",
    "permission_pair_uq": "permission",
    "role_name_uq": "name",
    "refresh_token_hash_uq": "token_hash",
}


def _unique_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    field = _UNIQUE_FIELDS.get(constraint, "unknown")
    return ConstraintViolation(f"{field} already exists", {"field": field})


def _like_pattern(term: str) -> str:
    """Substring pattern for ``LIKE ... ESCAPE '\\'`` with wildcards taken literally."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _row_to_account(row: Dict[str, Any]) -> Account:
    return Account(
        id=str(row["id"]),
        email=row["email"],
        username=row["username"],
        password_hash=row["password_hash"],
        full_name=row["full_name"],
        phone=row.get("phone"),
        account_type=AccountType(row["account_type"]),
        status=AccountStatus(row["status"]),
        email_verified=bool(row.get("email_verified")),
        phone_verified=bool(row.get("phone_verified")),
        version=int(row["version"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        deleted_at=row.get("deleted_at"),
    )


def _row_to_permission(row: Dict[str, Any]) -> Permission:
    return Permission(
        id=str(row["id"]),
        resource=row["resource"],
        action=row["action"],
        description=row.get("description") or "",
        created_at=row["created_at"],
    )


def _row_to_token(row: Dict[str, Any]) -> RefreshToken:
    replaced_by = row.get("replaced_by_id")
    return RefreshToken(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        token_hash=row["token_hash"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
        revoked_at=row.get("revoked_at"),
        replaced_by_id=str(replaced_by) if replaced_by else None,
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
    )


class PostgresStore:
    """Postgres-backed store for accounts, RBAC and refresh tokens.

    Conditional writes are expressed in SQL (``WHERE version = %s``,
    ``WHERE revoked_at IS NULL``) so concurrent service instances sharing the
    database still observe compare-and-set semantics.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()
        self.seed_defaults()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the tables from sql/001_initial_schema.sql exist."""

        required_tables = [
            "account",
            "permission",
            "role",
            "role_permission",
            "account_role",
            "refresh_token",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_initial_schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def seed_defaults(self) -> None:
        with self._connect() as conn:
            for resource, action, description in DEFAULT_PERMISSIONS:
                conn.execute(
                    """
                    INSERT INTO permission (resource, action, description)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (resource, action) DO NOTHING
                    """,
                    (resource, action, description),
                )
            for name, description in DEFAULT_ROLES:
                conn.execute(
                    "INSERT INTO role (name, description) VALUES (%s, %s) ON CONFLICT (name) DO NOTHING",
                    (name, description),
                )
                grants = DEFAULT_ROLE_GRANTS.get(name, [])
                if "*" in grants:
                    conn.execute(
                        """
                        INSERT INTO role_permission (role_id, permission_id)
                        SELECT r.id, p.id FROM role r CROSS JOIN permission p
                        WHERE r.name = %s
                        ON CONFLICT DO NOTHING
                        """,
                        (name,),
                    )
                    continue
                for claim in grants:
                    resource, action = claim.split(":", 1)
                    conn.execute(
                        """
                        INSERT INTO role_permission (role_id, permission_id)
                        SELECT r.id, p.id FROM role r, permission p
                        WHERE r.name = %s AND p.resource = %s AND p.action = %s
                        ON CONFLICT DO NOTHING
                        """,
                        (name, resource, action),
                    )
        self.logger.debug("store_defaults_seeded", roles=len(DEFAULT_ROLES), permissions=len(DEFAULT_PERMISSIONS))

    # accounts -----------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO account (id, email, username, password_hash, full_name, phone,
                        account_type, status, email_verified, phone_verified, version,
                        created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (
                        account.id,
                        account.email,
                        account.username,
                        account.password_hash,
                        account.full_name,
                        account.phone,
                        account.account_type.value,
                        account.status.value,
                        account.email_verified,
                        account.phone_verified,
                        account.version,
                        account.created_at,
                        account.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        return _row_to_account(row)

    def _fetch_account(self, where: str, value: str) -> Optional[Account]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE {where} AND deleted_at IS NULL",
                    (value,),
                ).fetchone()
        except errors.InvalidTextRepresentation:
            return None
        return _row_to_account(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_account("id = %s", account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_account("lower(email) = lower(%s)", email)

    def get_account_by_username(self, username: str) -> Optional[Account]:
        return self._fetch_account("lower(username) = lower(%s)", username)

    def update_account(self, account: Account) -> Optional[Account]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE account
                    SET email = %s, username = %s, password_hash = %s, full_name = %s,
                        phone = %s, account_type = %s, status = %s, email_verified = %s,
                        phone_verified = %s, deleted_at = %s,
                        version = version + 1, updated_at = now()
                    WHERE id = %s AND version = %s AND deleted_at IS NULL
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (
                        account.email,
                        account.username,
                        account.password_hash,
                        account.full_name,
                        account.phone,
                        account.account_type.value,
                        account.status.value,
                        account.email_verified,
                        account.phone_verified,
                        account.deleted_at,
                        account.id,
                        account.version,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        except errors.InvalidTextRepresentation:
            return None
        return _row_to_account(row) if row else None

    def list_accounts(self, filters: AccountFilter) -> Tuple[List[Account], int]:
        f = filters.normalized()
        clauses = ["deleted_at IS NULL"]
        params: list[Any] = []
        if f.status:
            clauses.append("status = %s")
            params.append(f.status.value)
        if f.account_type:
            clauses.append("account_type = %s")
            params.append(f.account_type.value)
        if f.search:
            clauses.append(
                "(lower(email) LIKE %s ESCAPE '\\' OR lower(username) LIKE %s ESCAPE '\\'"
                " OR lower(full_name) LIKE %s ESCAPE '\\')"
            )
            pattern = _like_pattern(f.search)
            params.extend([pattern, pattern, pattern])
        where = " AND ".join(clauses)
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT count(*) AS total FROM account WHERE {where}", params
            ).fetchone()
            rows = conn.execute(
                f"""
                SELECT {_ACCOUNT_COLUMNS} FROM account WHERE {where}
                ORDER BY created_at DESC LIMIT %s OFFSET %s
                """,
                [*params, f.limit, f.offset],
            ).fetchall()
        total = int(total_row["total"]) if total_row else 0
        return [_row_to_account(r) for r in rows], total

    # permissions --------------------------------------------------------

    def create_permission(self, permission: Permission) -> Permission:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO permission (id, resource, action, description, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING id, resource, action, description, created_at
                    """,
                    (
                        permission.id,
                        permission.resource,
                        permission.action,
                        permission.description,
                        permission.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        return _row_to_permission(row)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id, resource, action, description, created_at FROM permission WHERE id = %s",
                    (permission_id,),
                ).fetchone()
        except errors.InvalidTextRepresentation:
            return None
        return _row_to_permission(row) if row else None

    def get_permission_by_pair(self, resource: str, action: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, resource, action, description, created_at FROM permission
                WHERE resource = %s AND action = %s
                """,
                (resource, action),
            ).fetchone()
        return _row_to_permission(row) if row else None

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, resource, action, description, created_at FROM permission ORDER BY resource, action"
            ).fetchall()
        return [_row_to_permission(r) for r in rows]

    def delete_permission(self, permission_id: str) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "DELETE FROM permission WHERE id = %s RETURNING id", (permission_id,)
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "permission is granted to roles", {"reason": "in_use"}
            ) from exc
        except errors.InvalidTextRepresentation:
            return False
        return row is not None

    def add_permission_to_role(self, role_id: str, permission_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (role_id, permission_id),
                )
        except (errors.ForeignKeyViolation, errors.InvalidTextRepresentation) as exc:
            raise ConstraintViolation(
                "role or permission does not exist", {"reason": "missing_reference"}
            ) from exc

    def remove_permission_from_role(self, role_id: str, permission_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM role_permission WHERE role_id = %s AND permission_id = %s",
                    (role_id, permission_id),
                )
        except errors.InvalidTextRepresentation:
            return

    # roles --------------------------------------------------------------

    def _hydrate_roles(self, conn, rows: List[Dict[str, Any]]) -> List[Role]:
        if not rows:
            return []
        role_ids = [r["id"] for r in rows]
        perm_rows = conn.execute(
            """
            SELECT rp.role_id, p.id, p.resource, p.action, p.description, p.created_at
            FROM role_permission rp JOIN permission p ON p.id = rp.permission_id
            WHERE rp.role_id = ANY(%s)
            ORDER BY p.resource, p.action
            """,
            (role_ids,),
        ).fetchall()
        by_role: Dict[str, List[Permission]] = {}
        for prow in perm_rows:
            by_role.setdefault(str(prow["role_id"]), []).append(_row_to_permission(prow))
        return [
            Role(
                id=str(r["id"]),
                name=r["name"],
                description=r.get("description") or "",
                permissions=by_role.get(str(r["id"]), []),
                created_at=r["created_at"],
                updated_at=r["updated_at"],
            )
            for r in rows
        ]

    def create_role(self, role: Role) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO role (id, name, description, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING id, name, description, created_at, updated_at
                    """,
                    (role.id, role.name, role.description, role.created_at, role.updated_at),
                ).fetchone()
                for perm in role.permissions:
                    conn.execute(
                        "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                        (role.id, perm.id),
                    )
                return self._hydrate_roles(conn, [row])[0]
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc

    def _fetch_role(self, where: str, value: str) -> Optional[Role]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT id, name, description, created_at, updated_at FROM role WHERE {where}",
                    (value,),
                ).fetchone()
                if not row:
                    return None
                return self._hydrate_roles(conn, [row])[0]
        except errors.InvalidTextRepresentation:
            return None

    def get_role(self, role_id: str) -> Optional[Role]:
        return self._fetch_role("id = %s", role_id)

    def get_role_by_name(self, name: str) -> Optional[Role]:
        return self._fetch_role("name = %s", name)

    def update_role(self, role: Role) -> Optional[Role]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE role SET name = %s, description = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING id, name, description, created_at, updated_at
                    """,
                    (role.name, role.description, role.id),
                ).fetchone()
                if not row:
                    return None
                return self._hydrate_roles(conn, [row])[0]
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        except errors.InvalidTextRepresentation:
            return None

    def delete_role(self, role_id: str) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "DELETE FROM role WHERE id = %s RETURNING id", (role_id,)
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "role is assigned to accounts", {"reason": "in_use"}
            ) from exc
        except errors.InvalidTextRepresentation:
            return False
        return row is not None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, name, description, created_at, updated_at FROM role ORDER BY name"
            ).fetchall()
            return self._hydrate_roles(conn, rows)

    def list_account_roles(self, account_id: str) -> List[Role]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT r.id, r.name, r.description, r.created_at, r.updated_at
                    FROM account_role ar JOIN role r ON r.id = ar.role_id
                    WHERE ar.account_id = %s
                    ORDER BY r.name
                    """,
                    (account_id,),
                ).fetchall()
                return self._hydrate_roles(conn, rows)
        except errors.InvalidTextRepresentation:
            return []

    def assign_role(self, account_id: str, role_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_role (account_id, role_id) VALUES (%s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (account_id, role_id),
                )
        except (errors.ForeignKeyViolation, errors.InvalidTextRepresentation) as exc:
            raise ConstraintViolation(
                "account or role does not exist", {"reason": "missing_reference"}
            ) from exc

    def unassign_role(self, account_id: str, role_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM account_role WHERE account_id = %s AND role_id = %s",
                    (account_id, role_id),
                )
        except errors.InvalidTextRepresentation:
            return

    # refresh tokens -----------------------------------------------------

    @staticmethod
    def _token_params(token: RefreshToken) -> tuple:
        return (
            token.id,
            token.account_id,
            token.token_hash,
            token.expires_at,
            token.created_at,
            token.ip_address,
            token.user_agent,
        )

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO refresh_token (id, account_id, token_hash, expires_at,
                        created_at, ip_address, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_TOKEN_COLUMNS}
                    """,
                    self._token_params(token),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        return _row_to_token(row)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM refresh_token WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return _row_to_token(row) if row else None

    def revoke_refresh_token(self, token_id: str, now: datetime) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE refresh_token SET revoked_at = %s
                    WHERE id = %s AND revoked_at IS NULL
                    RETURNING id
                    """,
                    (now, token_id),
                ).fetchone()
        except errors.InvalidTextRepresentation:
            return False
        return row is not None

    def rotate_refresh_token(
        self, current_id: str, successor: RefreshToken, now: datetime
    ) -> bool:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    claimed = conn.execute(
                        """
                        UPDATE refresh_token SET revoked_at = %s
                        WHERE id = %s AND revoked_at IS NULL
                        RETURNING id
                        """,
                        (now, current_id),
                    ).fetchone()
                    if not claimed:
                        return False
                    conn.execute(
                        """
                        INSERT INTO refresh_token (id, account_id, token_hash, expires_at,
                            created_at, ip_address, user_agent)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        """,
                        self._token_params(successor),
                    )
                    conn.execute(
                        "UPDATE refresh_token SET replaced_by_id = %s WHERE id = %s",
                        (successor.id, current_id),
                    )
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        return True

    def revoke_account_refresh_tokens(self, account_id: str, now: datetime) -> int:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    UPDATE refresh_token SET revoked_at = %s
                    WHERE account_id = %s AND revoked_at IS NULL
                    """,
                    (now, account_id),
                )
                return cur.rowcount or 0
        except errors.InvalidTextRepresentation:
            return 0

    def delete_expired_refresh_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s", (before,)
            )
            return cur.rowcount or 0

    def list_account_refresh_tokens(self, account_id: str) -> List[RefreshToken]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT {_TOKEN_COLUMNS} FROM refresh_token WHERE account_id = %s ORDER BY created_at",
                    (account_id,),
                ).fetchall()
        except errors.InvalidTextRepresentation:
            return []
        return [_row_to_token(r) for r in rows]


__all__ = ["PostgresStore"]
