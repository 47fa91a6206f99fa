"""freeze terminal payments and make the timeline append-only

Revision ID: 0002_terminal_immutability
Revises: 0001_payments
Create Date: 2026-10-13
"""

from alembic import op


revision = "0002_terminal_immutability"
down_revision = "0001_payments"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_terminal_payment_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            IF OLD.status IN ('SUCCESS', 'FAILED') THEN
                RAISE EXCEPTION 'payment % is terminal (%); % is not allowed', OLD.reference, OLD.status, TG_OP;
            END IF;
            IF TG_OP = 'DELETE' THEN
                RETURN OLD;
            END IF;
            RETURN NEW;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_payments_terminal_immutable
        BEFORE UPDATE OR DELETE ON payments
        FOR EACH ROW
        EXECUTE FUNCTION prevent_terminal_payment_mutation();
        """
    )
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_payment_timeline_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION 'payment_timeline is append-only; % is not allowed', TG_OP;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_payment_timeline_immutable
        BEFORE UPDATE OR DELETE ON payment_timeline
        FOR EACH ROW
        EXECUTE FUNCTION prevent_payment_timeline_mutation();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_payment_timeline_immutable ON payment_timeline;")
    op.execute("DROP FUNCTION IF EXISTS prevent_payment_timeline_mutation();")
    op.execute("DROP TRIGGER IF EXISTS trg_payments_terminal_immutable ON payments;")
    op.execute("DROP FUNCTION IF EXISTS prevent_terminal_payment_mutation();")
