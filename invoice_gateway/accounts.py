from typing import Dict, List, Optional

import psycopg2.errors

from invoice_gateway.db import db_conn


class RoleAlreadyGranted(Exception):
    pass


class AccountDirectory:
    """Users and their invoicing roles (`users`, `authorized_invoicers`)."""

    def __init__(self, connect=db_conn):
        self.connect = connect

    def get_user(self, user_id: str) -> Optional[Dict]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT id, email FROM users WHERE id=%s", (user_id,))
                row = cur.fetchone()
        if not row:
            return None
        return {"id": row[0], "email": row[1]}

    def get_user_by_email(self, email: str) -> Optional[Dict]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT id, email, password_hash FROM users WHERE email=%s", (email,))
                row = cur.fetchone()
        if not row:
            return None
        return {"id": row[0], "email": row[1], "password_hash": row[2]}

    def active_roles(self, user_id: str) -> List[str]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT role FROM authorized_invoicers
                    WHERE user_id=%s AND revoked_at IS NULL
                    ORDER BY role
                    """,
                    (user_id,),
                )
                return [r[0] for r in cur.fetchall()]

    def is_authorized_invoicer(self, user_id: str) -> bool:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT EXISTS (
                        SELECT 1 FROM authorized_invoicers
                        WHERE user_id=%s AND role='invoicer' AND revoked_at IS NULL
                    )
                    """,
                    (user_id,),
                )
                return bool(cur.fetchone()[0])

    def grant_role(self, user_id: str, role: str, granted_by: str) -> None:
        try:
            with self.connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "INSERT INTO authorized_invoicers (user_id, role, granted_by) VALUES (%s,%s,%s)",
                        (user_id, role, granted_by),
                    )
        except psycopg2.errors.UniqueViolation as e:
            raise RoleAlreadyGranted(f"{user_id} already holds {role}") from e

    def revoke_roles(self, user_id: str) -> int:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE authorized_invoicers SET revoked_at=NOW() WHERE user_id=%s AND revoked_at IS NULL",
                    (user_id,),
                )
                return cur.rowcount
