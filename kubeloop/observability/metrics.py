"""Prometheus metrics for kubeloop."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Object store metrics
store_writes_total = Counter(
    "kubeloop_store_writes_total",
    "Total object store writes",
    ["kind", "operation"],
)

store_conflicts_total = Counter(
    "kubeloop_store_conflicts_total",
    "Total optimistic-concurrency conflicts rejected by the store",
    ["kind"],
)

store_objects = Gauge(
    "kubeloop_store_objects",
    "Number of objects held by the store",
    ["kind"],
)

store_resource_version = Gauge(
    "kubeloop_store_resource_version",
    "Latest resourceVersion assigned by the store",
)

store_transient_errors_total = Counter(
    "kubeloop_store_transient_errors_total",
    "Total store writes that failed with a transient infrastructure error",
    ["reason"],
)

# Watch metrics
watch_events_total = Counter(
    "kubeloop_watch_events_total",
    "Total watch events delivered to subscribers",
    ["kind", "event_type"],
)

watch_subscribers = Gauge(
    "kubeloop_watch_subscribers",
    "Number of active watch subscriptions",
    ["kind"],
)

informer_relists_total = Counter(
    "kubeloop_informer_relists_total",
    "Total informer relists",
    ["informer", "reason"],
)

informer_backoff_seconds = Histogram(
    "kubeloop_informer_backoff_seconds",
    "Informer back-off delay in seconds",
    ["informer"],
    buckets=(1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0),
)

# Work queue metrics
queue_depth = Gauge(
    "kubeloop_queue_depth",
    "Number of keys waiting in a controller work queue",
    ["controller"],
)

queue_requeues_total = Counter(
    "kubeloop_queue_requeues_total",
    "Total keys requeued with back-off",
    ["controller"],
)

# Reconcile metrics
reconcile_total = Counter(
    "kubeloop_reconcile_total",
    "Total reconciliations",
    ["controller", "result"],
)

reconcile_duration_seconds = Histogram(
    "kubeloop_reconcile_duration_seconds",
    "Reconcile duration in seconds",
    ["controller"],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0),
)

# Scheduler metrics
scheduling_attempts_total = Counter(
    "kubeloop_scheduling_attempts_total",
    "Total scheduling attempts",
    ["result"],
)

scheduling_bind_conflicts_total = Counter(
    "kubeloop_scheduling_bind_conflicts_total",
    "Total binding writes rejected because the Node changed after scoring",
)

unschedulable_pods = Gauge(
    "kubeloop_unschedulable_pods",
    "Number of Pods currently marked Unschedulable",
)

# Rollout metrics
rollout_transitions_total = Counter(
    "kubeloop_rollout_transitions_total",
    "Total Deployment rollout state transitions",
    ["state"],
)

# Autoscaler metrics
autoscaler_desired_replicas = Gauge(
    "kubeloop_autoscaler_desired_replicas",
    "Replica count recommended by the autoscaler",
    ["namespace", "name"],
)

autoscaler_scale_events_total = Counter(
    "kubeloop_autoscaler_scale_events_total",
    "Total scale operations applied by the autoscaler",
    ["direction"],
)

# Garbage collector metrics
gc_deleted_total = Counter(
    "kubeloop_gc_deleted_total",
    "Total dependents removed by the garbage collector",
    ["kind"],
)
