"""create_dosing_tables

Revision ID: core_001
Revises:
Create Date: 2026-09-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS households (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name TEXT NOT NULL,
            timezone TEXT NOT NULL DEFAULT 'UTC',
            cosign_window_minutes INTEGER CHECK (cosign_window_minutes > 0),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS animals (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            household_id UUID NOT NULL REFERENCES households(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            species TEXT,
            timezone TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_animals_household ON animals (household_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS regimens (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            animal_id UUID NOT NULL REFERENCES animals(id) ON DELETE CASCADE,
            medication_id UUID NOT NULL,
            name TEXT,
            schedule_type TEXT NOT NULL CHECK (schedule_type IN ('FIXED', 'PRN')),
            times_local TEXT[] NOT NULL DEFAULT '{}',
            start_date DATE,
            end_date DATE,
            late_minutes INTEGER CHECK (late_minutes > 0),
            very_late_minutes INTEGER CHECK (very_late_minutes > 0),
            cutoff_minutes INTEGER CHECK (cutoff_minutes > 0),
            high_risk BOOLEAN NOT NULL DEFAULT false,
            requires_co_sign BOOLEAN NOT NULL DEFAULT false,
            active BOOLEAN NOT NULL DEFAULT true,
            discontinued_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CHECK (very_late_minutes IS NULL OR late_minutes IS NULL
                   OR very_late_minutes >= late_minutes)
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_regimens_animal ON regimens (animal_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS inventory_items (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            household_id UUID NOT NULL REFERENCES households(id) ON DELETE CASCADE,
            medication_id UUID NOT NULL,
            lot_number TEXT,
            expires_on DATE,
            units_remaining INTEGER CHECK (units_remaining >= 0),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS administrations (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            regimen_id UUID NOT NULL REFERENCES regimens(id),
            animal_id UUID NOT NULL REFERENCES animals(id),
            household_id UUID NOT NULL REFERENCES households(id),
            caregiver_id UUID NOT NULL,
            scheduled_for TIMESTAMPTZ,
            recorded_at TIMESTAMPTZ NOT NULL,
            client_recorded_at TIMESTAMPTZ,
            status TEXT NOT NULL CHECK (
                status IN ('on_time', 'late', 'very_late', 'missed', 'prn')
            ),
            inventory_source_id UUID REFERENCES inventory_items(id),
            inventory_override JSONB,
            notes TEXT,
            cosign_pending BOOLEAN NOT NULL DEFAULT false,
            cosign_missing BOOLEAN NOT NULL DEFAULT false,
            cosigned_by UUID,
            cosigned_at TIMESTAMPTZ,
            idempotency_key TEXT NOT NULL,
            is_edited BOOLEAN NOT NULL DEFAULT false,
            edited_by UUID,
            edited_at TIMESTAMPTZ,
            is_deleted BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_administrations_idempotency_key UNIQUE (idempotency_key)
        )
    """)
    # At most one live record per scheduled slot; undo frees the slot.
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_administrations_live_slot
        ON administrations (regimen_id, animal_id, scheduled_for)
        WHERE NOT is_deleted AND scheduled_for IS NOT NULL
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_administrations_animal_time
        ON administrations (animal_id, (COALESCE(scheduled_for, recorded_at)))
        WHERE NOT is_deleted
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS cosign_requests (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            administration_id UUID NOT NULL UNIQUE
                REFERENCES administrations(id) ON DELETE CASCADE,
            requested_by UUID NOT NULL,
            requested_at TIMESTAMPTZ NOT NULL,
            expires_at TIMESTAMPTZ NOT NULL,
            state TEXT NOT NULL DEFAULT 'pending'
                CHECK (state IN ('pending', 'confirmed', 'expired')),
            confirmed_by UUID,
            resolved_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_cosign_requests_pending
        ON cosign_requests (expires_at) WHERE state = 'pending'
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS administration_events (
            id BIGSERIAL PRIMARY KEY,
            event_type TEXT NOT NULL,
            administration_id UUID NOT NULL,
            actor TEXT NOT NULL,
            reason TEXT,
            event_metadata JSONB NOT NULL DEFAULT '{}',
            occurred_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_administration_events_administration
        ON administration_events (administration_id, occurred_at)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS administration_events")
    op.execute("DROP TABLE IF EXISTS cosign_requests")
    op.execute("DROP TABLE IF EXISTS administrations")
    op.execute("DROP TABLE IF EXISTS inventory_items")
    op.execute("DROP TABLE IF EXISTS regimens")
    op.execute("DROP TABLE IF EXISTS animals")
    op.execute("DROP TABLE IF EXISTS households")
