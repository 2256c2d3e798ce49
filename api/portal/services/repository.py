from __future__ import annotations

import json
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from portal.core.config import get_settings


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


SUPPLIER_STATUSES = {"draft", "submitted", "approved", "rejected"}
JOB_STATUSES = {"pending", "running", "done", "failed"}

# Columns a conditional update may write, per table. Guard columns may only be
# compared.
CAS_TABLES: dict[str, dict[str, Any]] = {
    "ppt_jobs": {
        "id_cast": "$1::uuid",
        "columns": {"status", "progress", "file_path", "error", "meta"},
        "json_columns": {"meta"},
        "guard_columns": {"updated_at"},
        "touch_updated_at": True,
    },
}

_JOB_COLUMNS = """
  id::text as id,
  status,
  progress,
  prompt,
  input_json,
  file_path,
  error,
  meta,
  created_at,
  updated_at
"""

_INVITE_CODE_COLUMNS = """
  id::text as id,
  code,
  status,
  expires_at,
  max_uses,
  used_count
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def list_supplier_rows(self, *, statuses: list[str]) -> list[dict[str, Any]]:
        unknown = set(statuses) - SUPPLIER_STATUSES
        if unknown:
            raise RepositoryValidationError(f"unknown supplier statuses: {sorted(unknown)}")

        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              s.id::text as supplier_id,
              s.user_id::text as user_id,
              s.supplier_type,
              s.status,
              s.created_at,
              s.submitted_at,
              coalesce(sc.company_name_en, '') as company_name,
              (p.invite_code_id is not null) as has_invite_code,
              p.account_source
            from suppliers s
            left join supplier_company sc on sc.supplier_id = s.id
            left join profiles p on p.user_id = s.user_id
            where s.status = any($1::text[])
            order by s.created_at asc, s.id asc
            """,
            list(statuses),
        )
        return [self._supplier_row_to_dict(row) for row in rows]

    async def get_supplier_company(self, supplier_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select
                  sc.supplier_id::text as supplier_id,
                  coalesce(sc.company_name_en, '') as company_name
                from supplier_company sc
                where sc.supplier_id = $1::uuid
                """,
                supplier_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("supplier not found") from exc

        if not row:
            raise RepositoryNotFoundError("supplier not found")
        return {"supplier_id": row["supplier_id"], "company_name": row["company_name"]}

    async def apply_supplier_resolution(
        self,
        *,
        group_key: str,
        expected_statuses: dict[str, str],
        approve_id: str | None,
        reject_ids: list[str],
    ) -> None:
        """Write one group's decision atomically.

        The advisory lock serializes writers on the same company name; the
        status re-check rejects decisions computed from a stale read.
        """
        member_ids = list(expected_statuses)
        pool = await self._get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "select pg_advisory_xact_lock(hashtext($1))",
                    f"supplier-duplicates:{group_key}",
                )
                rows = await conn.fetch(
                    """
                    select id::text as id, status
                    from suppliers
                    where id = any($1::uuid[])
                    for update
                    """,
                    member_ids,
                )
                current = {row["id"]: row["status"] for row in rows}
                if current != expected_statuses:
                    raise RepositoryConflictError(
                        f"duplicate group '{group_key}' changed while resolving; reload and retry",
                    )

                if reject_ids:
                    await conn.execute(
                        """
                        update suppliers
                        set status = 'rejected'
                        where id = any($1::uuid[])
                        """,
                        reject_ids,
                    )
                if approve_id:
                    await conn.execute(
                        """
                        update suppliers
                        set status = 'approved'
                        where id = $1::uuid
                        """,
                        approve_id,
                    )

    async def insert_job(self, *, prompt: str, input_json: dict[str, Any]) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into ppt_jobs (status, progress, prompt, input_json, meta)
            values ('pending', 0, $1, $2::jsonb, '{{}}'::jsonb)
            returning {_JOB_COLUMNS}
            """,
            prompt,
            json.dumps(input_json),
        )
        if not row:
            raise RepositoryConflictError("failed to create ppt job")
        return self._job_row_to_dict(row)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {_JOB_COLUMNS}
                from ppt_jobs
                where id = $1::uuid
                """,
                job_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_dict(row)

    async def list_pending_jobs(self, *, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from ppt_jobs
            where status = 'pending'
            order by created_at asc, id asc
            limit $1
            """,
            max(1, limit),
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def compare_and_swap(
        self,
        table: str,
        *,
        row_id: str,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Update one row only while every ``expected`` column still matches.

        Expected values given as a list/tuple/set match any of their members.
        Returns the updated row, or ``None`` when the condition did not hold.
        """
        spec = CAS_TABLES.get(table)
        if spec is None:
            raise RepositoryValidationError(f"compare_and_swap is not supported for table {table}")
        if not changes:
            raise RepositoryValidationError("compare_and_swap requires at least one change")
        unknown = (set(expected) - spec["columns"] - spec["guard_columns"]) | (set(changes) - spec["columns"])
        if unknown:
            raise RepositoryValidationError(f"unsupported columns for {table}: {sorted(unknown)}")

        args: list[Any] = [str(row_id)]
        assignments: list[str] = []
        for column, value in changes.items():
            args.append(self._encode_column(spec, column, value))
            cast = "::jsonb" if column in spec["json_columns"] else ""
            assignments.append(f"{column} = ${len(args)}{cast}")
        if spec["touch_updated_at"]:
            assignments.append("updated_at = now()")

        conditions = [f"id = {spec['id_cast']}"]
        for column, value in expected.items():
            if isinstance(value, (list, tuple, set, frozenset)):
                args.append([str(item) for item in value])
                conditions.append(f"{column}::text = any(${len(args)}::text[])")
            elif value is None:
                conditions.append(f"{column} is null")
            else:
                args.append(value)
                conditions.append(f"{column} = ${len(args)}")

        query = f"""
            update {table}
            set {", ".join(assignments)}
            where {" and ".join(conditions)}
            returning {_JOB_COLUMNS}
        """

        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(query, *args)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None

        return self._job_row_to_dict(row) if row else None

    async def get_invite_code(self, code: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_INVITE_CODE_COLUMNS}
            from invite_codes
            where code = $1
            """,
            code,
        )
        return self._invite_code_row_to_dict(row) if row else None

    async def redeem_invite_code_row(
        self,
        *,
        invite_code_id: str,
        observed_used_count: int,
        max_uses: int,
        user_id: str,
    ) -> dict[str, Any] | None:
        """Consume one use of a code and link it to the user's profile in one transaction.

        Returns ``None`` without linking when the code was changed since it was read.
        """
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            try:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        update invite_codes
                        set used_count = used_count + 1,
                            status = case when used_count + 1 >= $3 then 'used' else 'active' end
                        where id = $1::text::bigint
                          and status = 'active'
                          and used_count = $2
                        returning {_INVITE_CODE_COLUMNS}
                        """,
                        invite_code_id,
                        observed_used_count,
                        max_uses,
                    )
                    if row is None:
                        return None
                    await conn.execute(
                        """
                        insert into profiles (user_id, invite_code_id)
                        values ($1::uuid, $2::text::bigint)
                        on conflict (user_id) do update
                        set invite_code_id = excluded.invite_code_id
                        """,
                        user_id,
                        invite_code_id,
                    )
            except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
                raise RepositoryValidationError("invalid invite code or profile identifier") from exc
        return self._invite_code_row_to_dict(row)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("SP_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _encode_column(spec: dict[str, Any], column: str, value: Any) -> Any:
        if column in spec["json_columns"]:
            return json.dumps(value if value is not None else {})
        return value

    @classmethod
    def _job_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "status": row["status"],
            "progress": int(row["progress"] or 0),
            "prompt": row["prompt"] or "",
            "input_json": cls._coerce_json_dict(row["input_json"]),
            "file_path": row["file_path"],
            "error": row["error"],
            "meta": cls._coerce_json_dict(row["meta"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _supplier_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "supplier_id": row["supplier_id"],
            "user_id": row["user_id"],
            "supplier_type": row["supplier_type"],
            "status": row["status"],
            "created_at": row["created_at"],
            "submitted_at": row["submitted_at"],
            "company_name": row["company_name"] or "",
            "has_invite_code": bool(row["has_invite_code"]),
            "account_source": row["account_source"],
        }

    @staticmethod
    def _invite_code_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        expires_at = row["expires_at"]
        return {
            "id": row["id"],
            "code": row["code"],
            "status": row["status"],
            "expires_at": expires_at if isinstance(expires_at, datetime) else None,
            "max_uses": row["max_uses"],
            "used_count": row["used_count"],
        }

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
