import logging
from contextlib import contextmanager

import psycopg2

from invoice_gateway import config
from invoice_gateway.errors import ConfigurationError

logger = logging.getLogger(__name__)


@contextmanager
def db_conn():
    """
    Open a connection, commit on success, roll back on error, always close.

    Connect and statement timeouts keep a stuck database from pinning a request.
    """
    if not config.DATABASE_URL:
        raise ConfigurationError("DATABASE_URL not set")

    conn = psycopg2.connect(
        config.DATABASE_URL,
        connect_timeout=config.DB_CONNECT_TIMEOUT,
        options=f"-c statement_timeout={config.DB_STATEMENT_TIMEOUT_MS}",
    )
    try:
        with conn:
            yield conn
    finally:
        conn.close()


SCHEMA = [
    'CREATE EXTENSION IF NOT EXISTS "pgcrypto";',
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS authorized_invoicers (
        id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        role TEXT NOT NULL CHECK (role IN ('invoicer', 'auditor')),
        granted_by TEXT NOT NULL REFERENCES users(id),
        granted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        revoked_at TIMESTAMPTZ
    );
    """,
    # one active grant per user and role
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_unique_active_role
        ON authorized_invoicers(user_id, role)
        WHERE revoked_at IS NULL;
    """,
    """
    CREATE TABLE IF NOT EXISTS processed_orders (
        id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
        order_number TEXT NOT NULL,
        user_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
        square_customer_id TEXT,
        square_order_id TEXT,
        square_invoice_id TEXT,
        invoice_number TEXT,
        steps_completed JSONB NOT NULL DEFAULT '[]'::jsonb,
        amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
        customer_name TEXT NOT NULL,
        customer_email TEXT NOT NULL,
        idempotency_key TEXT NOT NULL,
        error_message TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        completed_at TIMESTAMPTZ,
        CONSTRAINT unique_order_number UNIQUE (order_number)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_processed_orders_status ON processed_orders(status);",
    """
    CREATE TABLE IF NOT EXISTS invoice_audit_log (
        id BIGSERIAL PRIMARY KEY,
        correlation_id TEXT NOT NULL,
        timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        user_id TEXT,
        user_email TEXT,
        order_number TEXT,
        customer_name TEXT,
        customer_email TEXT,
        amount_cents INTEGER,
        idempotency_key TEXT,
        square_customer_id TEXT,
        square_order_id TEXT,
        square_invoice_id TEXT,
        result TEXT NOT NULL CHECK (result IN (
            'SUCCESS', 'FAILURE', 'DUPLICATE_BLOCKED', 'VALIDATION_FAILED',
            'UNAUTHORIZED', 'AUTH_MISSING', 'RATE_LIMITED', 'REPLAY_REJECTED'
        )),
        error_code TEXT,
        error_message TEXT,
        request_timestamp TEXT,
        steps_completed JSONB,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_correlation ON invoice_audit_log(correlation_id);",
    "CREATE INDEX IF NOT EXISTS idx_audit_user_ts ON invoice_audit_log(user_id, timestamp DESC);",
    "CREATE INDEX IF NOT EXISTS idx_audit_ts ON invoice_audit_log(timestamp DESC);",
]


def init_db(connect=db_conn):
    with connect() as conn:
        with conn.cursor() as cur:
            for statement in SCHEMA:
                cur.execute(statement)
    logger.info("Database schema ready")
