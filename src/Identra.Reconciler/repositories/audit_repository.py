"""
Audit Repository - ClickHouse trail of reconciliation steps

Audit Rules
- One row per resolution step, written after the reconciliation commits
- Submitted values are stored hashed
- A failed audit write never fails the request that produced it
"""

from clickhouse_driver import Client
from clickhouse_driver.errors import Error as ClickHouseError
from datetime import timezone
from typing import Optional
import os

import structlog

from core.contact_model import ContactHelper, IdentityView

logger = structlog.get_logger()


class AuditRepository:
    """Repository for the contact_audit_log table"""

    def __init__(self, host: str = None, port: int = None, client: Client = None):
        self.client = client or Client(
            host=host or os.getenv('CLICKHOUSE_HOST', 'localhost'),
            port=int(port or os.getenv('CLICKHOUSE_PORT', '9000')),
            user=os.getenv('CLICKHOUSE_USER', 'identra'),
            password=os.getenv('CLICKHOUSE_PASSWORD', 'identra_dev'),
            database=os.getenv('CLICKHOUSE_DATABASE', 'identra')
        )
        self._table_ready = False

    def ensure_table_exists(self):
        """Create contact_audit_log table if it doesn't exist"""
        if self._table_ready:
            return

        self.client.execute("""
            CREATE TABLE IF NOT EXISTS contact_audit_log (
                resolution_id String,
                primary_contact_id UInt64,
                input_email_hash String,
                input_phone_hash String,
                resolution_step String,
                created_at DateTime DEFAULT now()
            )
            ENGINE = MergeTree()
            ORDER BY (primary_contact_id, created_at)
            SETTINGS index_granularity = 8192
        """)

        self._table_ready = True

    def log_resolution(self, view: IdentityView, email: Optional[str], phone: Optional[str]) -> bool:
        """
        Record every step of one reconciliation.
        Returns False (and logs) when ClickHouse can't be reached.
        """
        # ClickHouse DateTime columns take naive UTC
        created_at = view.resolved_at.astimezone(timezone.utc).replace(tzinfo=None)
        rows = [{
            'resolution_id': view.resolution_id or '',
            'primary_contact_id': view.primary_contact_id,
            'input_email_hash': ContactHelper.hash_value(email) if email else '',
            'input_phone_hash': ContactHelper.hash_value(phone) if phone else '',
            'resolution_step': step,
            'created_at': created_at
        } for step in view.resolution_steps]

        if not rows:
            return True

        try:
            self.ensure_table_exists()
            self.client.execute(
                """
                INSERT INTO contact_audit_log (
                    resolution_id, primary_contact_id, input_email_hash,
                    input_phone_hash, resolution_step, created_at
                ) VALUES
                """,
                rows
            )
        except (ClickHouseError, OSError, EOFError) as e:
            logger.warning(
                "audit_write_failed",
                resolution_id=view.resolution_id,
                error=str(e)
            )
            return False
        return True

    def ping(self):
        self.client.execute("SELECT 1")
