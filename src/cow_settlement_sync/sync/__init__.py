"""Sync controllers - historical backfill, realtime polling and orchestration."""
