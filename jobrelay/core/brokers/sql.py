"""SQL constants for the job store.

Status and triggered_by columns hold enum NAMES ('PENDING', 'USER', ...),
matching the non-native SQLAlchemy Enum columns of the ORM models.
"""

from __future__ import annotations

from sqlalchemy import text

JOB_COLUMNS = """
    id, owner_id, job_type, status, triggered_by, payload, result, error,
    error_code, worker_id, created_at, started_at, completed_at, heartbeat_at
"""

EVENT_COLUMNS = """
    id, job_id, step_label, percent, detail, is_final, created_at
"""


# ---------- Schema ----------

SCHEMA_ADVISORY_LOCK_SQL = text("""
    SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))
""")

CREATE_EVENT_NOTIFY_FUNCTION_SQL = text("""
    CREATE OR REPLACE FUNCTION jobrelay_notify_progress_event()
    RETURNS trigger AS $$
    BEGIN
        PERFORM pg_notify(
            'jobrelay_job_progress',
            json_build_object('job_id', NEW.job_id, 'event_id', NEW.id)::text
        );
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql;
""")

CREATE_EVENT_NOTIFY_TRIGGER_SQL = text("""
    DROP TRIGGER IF EXISTS jobrelay_progress_notify_trigger ON jobrelay_progress_events;
    CREATE TRIGGER jobrelay_progress_notify_trigger
        AFTER INSERT ON jobrelay_progress_events
        FOR EACH ROW
        EXECUTE FUNCTION jobrelay_notify_progress_event();
""")

CREATE_STATUS_NOTIFY_FUNCTION_SQL = text("""
    CREATE OR REPLACE FUNCTION jobrelay_notify_job_status()
    RETURNS trigger AS $$
    BEGIN
        IF OLD.status IS DISTINCT FROM NEW.status THEN
            PERFORM pg_notify(
                'jobrelay_job_status',
                json_build_object('job_id', NEW.id, 'status', NEW.status)::text
            );
        END IF;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql;
""")

CREATE_STATUS_NOTIFY_TRIGGER_SQL = text("""
    DROP TRIGGER IF EXISTS jobrelay_job_status_notify_trigger ON jobrelay_jobs;
    CREATE TRIGGER jobrelay_job_status_notify_trigger
        AFTER UPDATE ON jobrelay_jobs
        FOR EACH ROW
        EXECUTE FUNCTION jobrelay_notify_job_status();
""")


# ---------- Submission ----------

INSERT_JOB_SQL = text("""
    INSERT INTO jobrelay_jobs (id, owner_id, job_type, status, triggered_by, payload, created_at)
    VALUES (:id, :owner_id, :job_type, 'PENDING', :triggered_by, CAST(:payload AS JSONB), NOW())
""")

# Sent inside the insert transaction: delivered only if the row commits.
NOTIFY_SQL = text("""
    SELECT pg_notify(:channel, :payload)
""")


# ---------- Claim ----------

# Compare-and-set: only a PENDING row can be claimed, so of two concurrent
# claims exactly one gets a row back.
CLAIM_JOB_SQL = text(f"""
    UPDATE jobrelay_jobs
    SET status = 'RUNNING',
        started_at = NOW(),
        heartbeat_at = NOW(),
        worker_id = :worker_id
    WHERE id = :job_id
      AND status = 'PENDING'
    RETURNING {JOB_COLUMNS}
""")

# Sweep for pending jobs whose dispatch notice was lost (worker down at
# submit time, dropped NOTIFY). The grace period leaves fresh jobs to the
# notify path.
CLAIM_NEXT_PENDING_SQL = text(f"""
    WITH next AS (
      SELECT id
      FROM jobrelay_jobs
      WHERE status = 'PENDING'
        AND created_at <= NOW() - CAST(:grace_seconds || ' seconds' AS INTERVAL)
      ORDER BY created_at ASC, id ASC
      FOR UPDATE SKIP LOCKED
      LIMIT 1
    )
    UPDATE jobrelay_jobs t
    SET status = 'RUNNING',
        started_at = NOW(),
        heartbeat_at = NOW(),
        worker_id = :worker_id
    FROM next
    WHERE t.id = next.id
    RETURNING t.id, t.owner_id, t.job_type, t.status, t.triggered_by, t.payload,
              t.result, t.error, t.error_code, t.worker_id, t.created_at,
              t.started_at, t.completed_at, t.heartbeat_at
""")


# ---------- Progress ----------

# Only the worker holding the job may append, and only while it is RUNNING.
# FOR SHARE serializes the append with terminal updates of the job row, so
# no non-final event can commit after the final one.
APPEND_PROGRESS_SQL = text("""
    INSERT INTO jobrelay_progress_events (job_id, step_label, percent, detail, is_final)
    SELECT :job_id, :step_label, :percent, CAST(:detail AS JSONB), FALSE
    WHERE EXISTS (
        SELECT 1 FROM jobrelay_jobs
        WHERE id = :job_id AND status = 'RUNNING' AND worker_id = :worker_id
        FOR SHARE
    )
    RETURNING id, created_at
""")

INSERT_FINAL_EVENT_SQL = text("""
    INSERT INTO jobrelay_progress_events (job_id, step_label, percent, detail, is_final)
    VALUES (:job_id, :step_label, :percent, CAST(:detail AS JSONB), TRUE)
    RETURNING id, created_at
""")


# ---------- Terminal transitions ----------

FINALIZE_COMPLETED_SQL = text("""
    UPDATE jobrelay_jobs
    SET status = 'COMPLETED',
        result = CAST(:result AS JSONB),
        completed_at = NOW(),
        heartbeat_at = NULL
    WHERE id = :job_id
      AND status = 'RUNNING'
    RETURNING id
""")

FINALIZE_FAILED_SQL = text("""
    UPDATE jobrelay_jobs
    SET status = 'FAILED',
        error = :error,
        error_code = :error_code,
        completed_at = NOW(),
        heartbeat_at = NULL
    WHERE id = :job_id
      AND status = 'RUNNING'
    RETURNING id
""")


# ---------- Reads ----------

GET_JOB_SQL = text(f"""
    SELECT {JOB_COLUMNS}
    FROM jobrelay_jobs
    WHERE id = :job_id
""")

LIST_EVENTS_SQL = text(f"""
    SELECT {EVENT_COLUMNS}
    FROM jobrelay_progress_events
    WHERE job_id = :job_id
      AND id > :after_id
    ORDER BY id ASC
""")


# ---------- Heartbeat / recovery ----------

TOUCH_HEARTBEATS_SQL = text("""
    UPDATE jobrelay_jobs
    SET heartbeat_at = NOW()
    WHERE id = ANY(:job_ids)
      AND status = 'RUNNING'
      AND worker_id = :worker_id
""")

SELECT_STALE_RUNNING_SQL = text("""
    SELECT id, worker_id, started_at, heartbeat_at
    FROM jobrelay_jobs
    WHERE status = 'RUNNING'
      AND COALESCE(heartbeat_at, started_at) < NOW() - CAST(:stale_seconds || ' seconds' AS INTERVAL)
    ORDER BY started_at ASC
    FOR UPDATE SKIP LOCKED
""")

DELETE_TERMINAL_JOBS_SQL = text("""
    DELETE FROM jobrelay_jobs
    WHERE status IN ('COMPLETED', 'FAILED')
      AND completed_at < NOW() - CAST(:retention_hours || ' hours' AS INTERVAL)
""")

DELETE_OWNER_JOBS_SQL = text("""
    DELETE FROM jobrelay_jobs
    WHERE owner_id = :owner_id
""")

PING_SQL = text("""
    SELECT 1
""")
