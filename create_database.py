#!/usr/bin/env python3
"""
Create the mirror, cursor and attribution tables using a direct PostgreSQL connection
"""

import os
import sys
import psycopg2
from pathlib import Path
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent / 'backend'
load_dotenv(ROOT_DIR / '.env')

DATABASE_URL = os.environ.get('DATABASE_URL')

TABLES = [
    'crm_contacts', 'crm_deals', 'crm_calls', 'crm_associations',
    'sync_cursors', 'sync_runs', 'call_attributions',
]

SQL_COMMANDS = [
    # Contacts mirror
    """
    CREATE TABLE IF NOT EXISTS crm_contacts (
        id TEXT PRIMARY KEY,
        owner_id TEXT,
        properties JSONB NOT NULL DEFAULT '{}'::jsonb,
        archived BOOLEAN DEFAULT FALSE,
        email TEXT,
        phone TEXT,
        phone_normalized TEXT,
        created_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ,
        synced_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,

    "CREATE INDEX IF NOT EXISTS idx_crm_contacts_phone_normalized ON crm_contacts(phone_normalized);",
    "CREATE INDEX IF NOT EXISTS idx_crm_contacts_updated_at ON crm_contacts(updated_at);",

    # Deals mirror
    """
    CREATE TABLE IF NOT EXISTS crm_deals (
        id TEXT PRIMARY KEY,
        owner_id TEXT,
        properties JSONB NOT NULL DEFAULT '{}'::jsonb,
        archived BOOLEAN DEFAULT FALSE,
        deal_name TEXT,
        deal_stage TEXT,
        pipeline TEXT,
        amount NUMERIC,
        close_date TIMESTAMPTZ,
        created_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ,
        synced_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,

    "CREATE INDEX IF NOT EXISTS idx_crm_deals_stage_close ON crm_deals(deal_stage, close_date);",
    "CREATE INDEX IF NOT EXISTS idx_crm_deals_owner_id ON crm_deals(owner_id);",

    # Calls mirror
    """
    CREATE TABLE IF NOT EXISTS crm_calls (
        id TEXT PRIMARY KEY,
        owner_id TEXT,
        properties JSONB NOT NULL DEFAULT '{}'::jsonb,
        archived BOOLEAN DEFAULT FALSE,
        call_timestamp TIMESTAMPTZ,
        to_number TEXT,
        to_number_normalized TEXT,
        from_number TEXT,
        direction TEXT,
        disposition TEXT,
        call_status TEXT,
        duration_ms BIGINT,
        created_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ,
        synced_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,

    "CREATE INDEX IF NOT EXISTS idx_crm_calls_to_number_normalized ON crm_calls(to_number_normalized);",
    "CREATE INDEX IF NOT EXISTS idx_crm_calls_owner_timestamp ON crm_calls(owner_id, call_timestamp);",

    # CRM-reported links between objects
    """
    CREATE TABLE IF NOT EXISTS crm_associations (
        source_type TEXT NOT NULL,
        source_id TEXT NOT NULL,
        target_type TEXT NOT NULL,
        target_id TEXT NOT NULL,
        association_type TEXT NOT NULL,
        synced_at TIMESTAMPTZ DEFAULT NOW(),
        UNIQUE (source_type, source_id, target_type, target_id, association_type)
    );
    """,

    "CREATE INDEX IF NOT EXISTS idx_crm_associations_target ON crm_associations(target_type, target_id);",

    # One watermark + run lock per object type
    """
    CREATE TABLE IF NOT EXISTS sync_cursors (
        object_type TEXT PRIMARY KEY,
        last_synced_at TIMESTAMPTZ,
        last_run_status TEXT NOT NULL DEFAULT 'idle'
            CHECK (last_run_status IN ('idle', 'running', 'success', 'failed')),
        last_run_at TIMESTAMPTZ,
        phase TEXT NOT NULL DEFAULT 'idle',
        run_id TEXT,
        run_started_at TIMESTAMPTZ,
        run_finished_at TIMESTAMPTZ,
        error_message TEXT,
        records_fetched INTEGER DEFAULT 0,
        records_upserted INTEGER DEFAULT 0,
        records_skipped INTEGER DEFAULT 0,
        associations_resolved INTEGER DEFAULT 0,
        attributions_computed INTEGER DEFAULT 0
    );
    """,

    # Run history
    """
    CREATE TABLE IF NOT EXISTS sync_runs (
        id BIGSERIAL PRIMARY KEY,
        run_id TEXT NOT NULL,
        object_type TEXT NOT NULL,
        trigger TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at TIMESTAMPTZ NOT NULL,
        finished_at TIMESTAMPTZ,
        duration_ms INTEGER,
        pages INTEGER DEFAULT 0,
        watermark TIMESTAMPTZ,
        error_message TEXT,
        records_fetched INTEGER DEFAULT 0,
        records_upserted INTEGER DEFAULT 0,
        records_skipped INTEGER DEFAULT 0,
        associations_resolved INTEGER DEFAULT 0,
        attributions_computed INTEGER DEFAULT 0
    );
    """,

    "CREATE INDEX IF NOT EXISTS idx_sync_runs_object_started ON sync_runs(object_type, started_at DESC);",

    # Closing call per closed deal
    """
    CREATE TABLE IF NOT EXISTS call_attributions (
        deal_id TEXT PRIMARY KEY,
        call_id TEXT NOT NULL,
        owner_id TEXT,
        match_basis TEXT NOT NULL CHECK (match_basis IN ('direct_association', 'phone_match')),
        call_timestamp TIMESTAMPTZ NOT NULL,
        deal_close_date TIMESTAMPTZ,
        computed_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,

    "CREATE INDEX IF NOT EXISTS idx_call_attributions_owner_close ON call_attributions(owner_id, deal_close_date);",
]


def create_tables():
    """Create all required tables"""
    try:
        print("🚀 Connecting to Supabase PostgreSQL...")
        conn = psycopg2.connect(DATABASE_URL)
        cursor = conn.cursor()

        print(f"   Connected successfully!")

        for i, sql in enumerate(SQL_COMMANDS, 1):
            try:
                print(f"   Executing command {i}/{len(SQL_COMMANDS)}...")
                cursor.execute(sql)
                conn.commit()
                print(f"   ✅ Command {i} executed successfully")
            except Exception as e:
                print(f"   ⚠️  Command {i} warning: {str(e)}")
                conn.rollback()
                continue

        cursor.close()
        conn.close()

        print("✅ Database tables created successfully!")
        return True

    except Exception as e:
        print(f"❌ Database connection error: {str(e)}")
        return False


def verify_tables():
    """Verify tables were created"""
    try:
        print("\n🔍 Verifying table creation...")
        conn = psycopg2.connect(DATABASE_URL)
        cursor = conn.cursor()

        for table in TABLES:
            cursor.execute(f"SELECT COUNT(*) FROM {table};")
            count = cursor.fetchone()[0]
            print(f"   ✅ Table '{table}' exists (rows: {count})")

        cursor.close()
        conn.close()

        print("✅ All tables verified!")
        return True

    except Exception as e:
        print(f"❌ Verification error: {str(e)}")
        return False


def main():
    print("CRM Mirror Database Setup")
    print("=" * 50)

    if not DATABASE_URL:
        print("❌ Missing DATABASE_URL")
        return False

    print(f"Database URL: {DATABASE_URL[:50]}...")

    if create_tables():
        if verify_tables():
            print("\n🎉 Database setup completed successfully!")
            print("Run `python backend/run_sync.py --all` for the initial load.")
            return True
        else:
            print("\n❌ Table verification failed")
            return False
    else:
        print("\n❌ Database setup failed")
        return False


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
