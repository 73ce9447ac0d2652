"""
Named SQL statements used by the Postgres adapter.

Parameters use SQLAlchemy's named ``:param`` style. Casts on parameters are
written as ``CAST(:param AS type)`` so the bind parser never sees ``::``
directly after a parameter name.
"""

from sqlalchemy import TextClause, text

from pgjobs.jobs.models import JOBS_TABLE

JOB_COLUMNS = (
    "queue, priority, run_at, job_id, job_type, retryable, args, error_count, last_error"
)

# Locks a job using a recursive CTE.
#
# The recursion walks the table one row at a time in (priority, run_at, job_id)
# order, trying an advisory lock on each. A plain SELECT with
# pg_try_advisory_lock in its target list would lock every row it scanned.
#
# The anchor term picks the first eligible row at or after the cursor. Each
# recursive step picks the next row strictly after the previous candidate. The
# outer LIMIT 1 stops recursion at the first row we managed to lock; when no
# candidate is left the recursive term returns nothing and recursion ends.
LOCK_JOB = f"""
WITH RECURSIVE jobs AS (
  SELECT (j).*, pg_try_advisory_lock((j).job_id) AS locked
  FROM (
    SELECT j
    FROM {JOBS_TABLE} AS j
    WHERE queue = CAST(:queue AS text)
    AND job_id >= CAST(:cursor AS bigint)
    AND run_at <= now()
    AND retryable = true
    ORDER BY priority, run_at, job_id
    LIMIT 1
  ) AS t1
  UNION ALL (
    SELECT (j).*, pg_try_advisory_lock((j).job_id) AS locked
    FROM (
      SELECT (
        SELECT j
        FROM {JOBS_TABLE} AS j
        WHERE queue = CAST(:queue AS text)
        AND run_at <= now()
        AND retryable = true
        AND (priority, run_at, job_id) > (jobs.priority, jobs.run_at, jobs.job_id)
        ORDER BY priority, run_at, job_id
        LIMIT 1
      ) AS j
      FROM jobs
      WHERE jobs.job_id IS NOT NULL
      LIMIT 1
    ) AS t1
  )
)
SELECT {JOB_COLUMNS},
       CAST(extract(epoch from (now() - run_at)) AS double precision) AS latency
FROM jobs
WHERE locked
LIMIT 1
"""

CHECK_JOB = f"""
SELECT 1 AS one
FROM   {JOBS_TABLE}
WHERE  queue     = CAST(:queue AS text)
AND    retryable = true
AND    priority  = CAST(:priority AS smallint)
AND    run_at    = CAST(:run_at AS timestamptz)
AND    job_id    = CAST(:job_id AS bigint)
"""

SET_ERROR = f"""
UPDATE {JOBS_TABLE}
SET error_count = CAST(:error_count AS integer),
    run_at      = now() + make_interval(secs => CAST(:delay AS double precision)),
    last_error  = CAST(:last_error AS text)
WHERE queue     = CAST(:queue AS text)
AND   priority  = CAST(:priority AS smallint)
AND   run_at    = CAST(:run_at AS timestamptz)
AND   job_id    = CAST(:job_id AS bigint)
"""

INSERT_JOB = f"""
INSERT INTO {JOBS_TABLE}
(queue, priority, run_at, job_type, retryable, args)
VALUES
  ( coalesce(CAST(:queue AS text), '')
  , coalesce(CAST(:priority AS smallint), 100)
  , coalesce(CAST(:run_at AS timestamptz), now())
  , CAST(:job_type AS text)
  , coalesce(CAST(:retryable AS boolean), true)
  , coalesce(CAST(:args AS json), '[]')
  )
RETURNING {JOB_COLUMNS}
"""

DESTROY_JOB = f"""
DELETE FROM {JOBS_TABLE}
WHERE queue    = CAST(:queue AS text)
AND   priority = CAST(:priority AS smallint)
AND   run_at   = CAST(:run_at AS timestamptz)
AND   job_id   = CAST(:job_id AS bigint)
"""

# Advisory locks on a bigint key are stored in pg_locks split across classid
# (high 32 bits) and objid (low 32 bits).
JOB_STATS = f"""
SELECT queue,
       job_type,
       count(*)                    AS count,
       count(locks.job_id)         AS count_working,
       sum((error_count > 0)::int) AS count_errored,
       max(error_count)            AS highest_error_count,
       min(run_at)                 AS oldest_run_at
FROM {JOBS_TABLE}
LEFT JOIN (
  SELECT (classid::bigint << 32) + objid::bigint AS job_id
  FROM pg_locks
  WHERE locktype = 'advisory'
) locks USING (job_id)
GROUP BY queue, job_type
ORDER BY count(*) DESC
"""

TRY_LOCK = "SELECT pg_try_advisory_lock(CAST(:job_id AS bigint)) AS locked"

UNLOCK_JOB = "SELECT pg_advisory_unlock(CAST(:job_id AS bigint)) AS unlocked"

SQL: dict[str, TextClause] = {
    "lock_job": text(LOCK_JOB),
    "check_job": text(CHECK_JOB),
    "set_error": text(SET_ERROR),
    "insert_job": text(INSERT_JOB),
    "destroy_job": text(DESTROY_JOB),
    "job_stats": text(JOB_STATS),
    "try_lock": text(TRY_LOCK),
    "unlock_job": text(UNLOCK_JOB),
}
