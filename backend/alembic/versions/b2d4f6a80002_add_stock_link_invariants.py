"""add warehouse_product_links stock invariants

Revision ID: b2d4f6a80002
Revises: a1c3e5f70001
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "b2d4f6a80002"
down_revision: Union[str, Sequence[str], None] = "a1c3e5f70001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TABLE_NAME = "warehouse_product_links"

CK_QUANTITY = "ck_wpl_quantity_nonneg"
CK_RESERVED = "ck_wpl_reserved_nonneg"
CK_RESERVED_LE = "ck_wpl_reserved_le_quantity"


def _add_check_if_missing(constraint_name: str, check_sql: str) -> None:
    # Idempotent Postgres
    op.execute(
        f"""
        DO $$
        BEGIN
            IF NOT EXISTS (
                SELECT 1
                FROM pg_constraint c
                JOIN pg_class t ON t.oid = c.conrelid
                WHERE t.relname = '{TABLE_NAME}'
                  AND c.conname = '{constraint_name}'
            ) THEN
                ALTER TABLE {TABLE_NAME}
                ADD CONSTRAINT {constraint_name}
                CHECK ({check_sql});
            END IF;
        END $$;
        """
    )


def upgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        with op.batch_alter_table(TABLE_NAME) as batch:
            batch.create_check_constraint(CK_QUANTITY, "quantity >= 0")
            batch.create_check_constraint(CK_RESERVED, "reserved_quantity >= 0")
            batch.create_check_constraint(CK_RESERVED_LE, "reserved_quantity <= quantity")
        return

    # clamp rows loaded before the checks existed
    op.execute(f"UPDATE {TABLE_NAME} SET quantity = 0 WHERE quantity < 0;")
    op.execute(f"UPDATE {TABLE_NAME} SET reserved_quantity = 0 WHERE reserved_quantity < 0;")
    op.execute(f"UPDATE {TABLE_NAME} SET reserved_quantity = quantity WHERE reserved_quantity > quantity;")

    _add_check_if_missing(CK_QUANTITY, "quantity >= 0")
    _add_check_if_missing(CK_RESERVED, "reserved_quantity >= 0")
    _add_check_if_missing(CK_RESERVED_LE, "reserved_quantity <= quantity")


def downgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        with op.batch_alter_table(TABLE_NAME) as batch:
            batch.drop_constraint(CK_RESERVED_LE, type_="check")
            batch.drop_constraint(CK_RESERVED, type_="check")
            batch.drop_constraint(CK_QUANTITY, type_="check")
        return

    op.execute(f"ALTER TABLE {TABLE_NAME} DROP CONSTRAINT IF EXISTS {CK_RESERVED_LE};")
    op.execute(f"ALTER TABLE {TABLE_NAME} DROP CONSTRAINT IF EXISTS {CK_RESERVED};")
    op.execute(f"ALTER TABLE {TABLE_NAME} DROP CONSTRAINT IF EXISTS {CK_QUANTITY};")
