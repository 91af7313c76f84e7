from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
QUEUE_DEPTH = Gauge('content_queue_depth', 'Work-queue messages by state', ['state'])  # waiting|delayed|active|completed|dead
JOBS_BY_STATUS = Gauge('content_jobs', 'Hydration jobs by status', ['status'])
JOB_FAILURES = Counter('content_job_failures_total', 'Total job failures', ['job_type', 'type'])  # type=retryable|final|conflict
JOB_DURATION = Histogram('content_job_duration_seconds', 'Time from STARTED to COMPLETED', buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0])

JOB_COMPLETE_TOTAL = Counter(
    "content_job_complete_total",
    "Total number of jobs completed",
    ["job_type"]
)

POLICY_DEFERRALS = Counter(
    "content_policy_deferrals_total",
    "Deliveries deferred by an admin kill-switch",
    ["tag"]
)

LOCK_CONTENTION = Counter(
    "content_lock_contention_total",
    "Deliveries deferred because the target lock was held"
)

STALE_LOCK_STEALS = Counter(
    "content_stale_lock_steals_total",
    "Expired locks reclaimed from another holder"
)

WORKERS_ALIVE = Gauge(
    "content_workers_alive",
    "Workers with a recent heartbeat"
)

OUTBOX_RELAYED = Counter(
    "content_outbox_relayed_total",
    "Outbox rows relayed to the work queue",
    ["result"]  # sent|duplicate|error
)

REAPER_RECOVERED = Counter(
    "content_reaper_recovered_total",
    "Queue messages recovered by the reaper",
    ["outcome"]  # requeued|dead_lettered
)

CASCADES_FINISHED = Counter(
    "content_cascades_finished_total",
    "Hydration cascades that reached a final state",
    ["status"]  # completed|failed|cancelled
)

LEADER_STATUS = Gauge(
    "instance_leader_status",
    "Whether this instance is currently the leader (1 for leader, 0 for follower)"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
