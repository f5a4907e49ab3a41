"""Tests for the hook-decision log: record shape, truncation, rotation and retention."""

import json
import os
from datetime import datetime, timedelta, timezone

from pm_agents.audit import AuditEvent, HookAuditLog
from tests.test_utils import read_hook_log


def test_records_are_json_lines(hook_log_path):
    hook_log = HookAuditLog(str(hook_log_path))

    hook_log.log_hook_decision(
        tenant_id="tenant-a",
        hook_name="rate_limiter",
        phase="pre_tool_use",
        decision="deny",
        reason="Rate limit exceeded: 101/100 calls in window",
        ai_action_id="action-1",
        tool_name="pm-db.query",
    )
    hook_log.log_permission_decision(
        tenant_id="tenant-a",
        ai_action_id="action-1",
        tool_name="pm-db.mutate",
        decision="allow",
        step="permission_mode",
        reason="acceptEdits allows mutations",
        is_mutation=True,
    )
    hook_log.log_transition("tenant-a", "action-1", "running", "failed", error_message="model_timeout: 120s")

    first, second, third = read_hook_log(hook_log_path)
    assert first["event"] == "hook_decision"
    assert first["hook_name"] == "rate_limiter"
    assert first["decision"] == "deny"
    assert datetime.fromisoformat(first["timestamp"]).tzinfo is not None
    assert (second["event"], second["step"], second["is_mutation"]) == ("permission_decision", "permission_mode", True)
    assert third == {
        **third,
        "event": "action_transition",
        "from_status": "running",
        "to_status": "failed",
        "error_message": "model_timeout: 120s",
    }


def test_long_content_is_truncated(hook_log_path):
    hook_log = HookAuditLog(str(hook_log_path))

    record = hook_log.log(
        AuditEvent.REVIEW,
        tenant_id="tenant-a",
        notes="x" * 1500,
        nested={"items": ["y" * 1200, "short"]},
    )

    assert record["notes"].startswith("x" * 1000)
    assert record["notes"].endswith("[truncated, 1500 total chars]")
    assert record["nested"]["items"][1] == "short"
    assert "[truncated, 1200 total chars]" in record["nested"]["items"][0]
    [written] = read_hook_log(hook_log_path)
    assert written["notes"] == record["notes"]


def test_non_json_values_are_stringified(hook_log_path):
    hook_log = HookAuditLog(str(hook_log_path))
    when = datetime(2026, 1, 2, tzinfo=timezone.utc)

    hook_log.log(AuditEvent.ROLLBACK, tenant_id="tenant-a", at=when)

    [written] = read_hook_log(hook_log_path)
    assert written["at"] == str(when)


def test_log_rotation_and_cleanup(tmp_path):
    """Logs rotate by size and cleanup respects retention days."""
    log_file = tmp_path / "hook_log.jsonl"
    retention_days = 1
    hook_log = HookAuditLog(str(log_file), retention_days=retention_days, rotation_bytes=50)

    # Seed log file with data to trigger rotation on next write.
    log_file.write_text("x" * 51)
    hook_log.log(AuditEvent.REVIEW, tenant_id="tenant-a", decision="approve")

    rotated_files = list(tmp_path.glob("hook_log.jsonl.*"))
    assert len(rotated_files) == 1
    assert rotated_files[0].read_text() == "x" * 51
    lines = log_file.read_text(encoding="utf-8").strip().splitlines()
    assert json.loads(lines[0])["decision"] == "approve"

    # Create an old rotated file for cleanup
    old_file = tmp_path / "hook_log.jsonl.20000101000000"
    old_file.write_text("old log")
    old_timestamp = (datetime.now(timezone.utc) - timedelta(days=retention_days + 1)).timestamp()
    os.utime(old_file, (old_timestamp, old_timestamp))

    hook_log._cleanup_old_logs()

    assert not old_file.exists()
    assert rotated_files[0].exists()
    assert log_file.exists()


def test_zero_retention_keeps_everything(tmp_path):
    old_file = tmp_path / "hook_log.jsonl.20000101000000"
    old_file.write_text("old log")
    old_timestamp = (datetime.now(timezone.utc) - timedelta(days=365)).timestamp()
    os.utime(old_file, (old_timestamp, old_timestamp))

    HookAuditLog(str(tmp_path / "hook_log.jsonl"), retention_days=0)

    assert old_file.exists()


def test_log_directory_is_created(tmp_path):
    log_file = tmp_path / "nested" / "logs" / "hook_log.jsonl"

    HookAuditLog(str(log_file)).log(AuditEvent.REVIEW, tenant_id="tenant-a")

    assert log_file.exists()
