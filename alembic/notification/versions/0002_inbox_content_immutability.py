"""freeze inbox record content

Revision ID: 0002_inbox_content_immutability
Revises: 0001_notification
Create Date: 2026-10-19

Only `is_read` may change after insert; deletes stay allowed so users can
clear their inbox.
"""

from alembic import op


revision = "0002_inbox_content_immutability"
down_revision = "0001_notification"
branch_labels = None
depends_on = None

TABLES = ("admin_alerts", "user_notifications")


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_inbox_content_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            IF NEW.recipient_id IS DISTINCT FROM OLD.recipient_id
               OR NEW.category IS DISTINCT FROM OLD.category
               OR NEW.title IS DISTINCT FROM OLD.title
               OR NEW.body IS DISTINCT FROM OLD.body
               OR NEW.payload IS DISTINCT FROM OLD.payload THEN
                RAISE EXCEPTION '% content is immutable; only is_read may change', TG_TABLE_NAME;
            END IF;
            RETURN NEW;
        END;
        $$;
        """
    )
    for table in TABLES:
        op.execute(
            f"""
            CREATE TRIGGER trg_{table}_immutable
            BEFORE UPDATE ON {table}
            FOR EACH ROW
            EXECUTE FUNCTION prevent_inbox_content_mutation();
            """
        )


def downgrade() -> None:
    for table in TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS trg_{table}_immutable ON {table};")
    op.execute("DROP FUNCTION IF EXISTS prevent_inbox_content_mutation();")
