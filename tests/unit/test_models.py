"""Tests for kubeloop.models: quantities, selectors, Pod helpers and typed specs."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from kubeloop.errors import ValidationError
from kubeloop.models.autoscaling import HPASpec, MetricTargetType, ScalingPolicyType
from kubeloop.models.cluster import NodeSpec, PersistentVolumeSpec, ReclaimPolicy, parse_claim
from kubeloop.models.objects import (
    Kind,
    KubeObject,
    ObjectKey,
    OwnerReference,
    get_condition,
    owner_reference_for,
    remove_condition,
    set_condition,
)
from kubeloop.models.pods import deletion_rank, is_pod_active, is_pod_available, is_pod_ready
from kubeloop.models.quantity import parse_bytes, parse_cpu, parse_quantity
from kubeloop.models.selectors import LabelSelector, parse_selector_string
from kubeloop.models.workloads import (
    Affinity,
    DeploymentSpec,
    DeploymentStrategy,
    DeploymentStrategyType,
    PodSchedulingSpec,
    StatefulSetSpec,
)
from tests import manifests

# ---------------------------------------------------------------------------
# Quantities
# ---------------------------------------------------------------------------


class TestQuantity:
    def test_cpu_millicores(self) -> None:
        assert parse_cpu("500m") == 500
        assert parse_cpu("1.5") == 1500
        assert parse_cpu(2) == 2000

    def test_memory_suffixes(self) -> None:
        assert parse_bytes("128Mi") == 128 * 1024 * 1024
        assert parse_bytes("1G") == 1_000_000_000
        assert parse_bytes("1e3") == 1000

    def test_invalid_quantity(self) -> None:
        with pytest.raises(ValidationError):
            parse_quantity("lots")
        with pytest.raises(ValidationError):
            parse_quantity("5Xi")

    def test_negative_rejected(self) -> None:
        with pytest.raises(ValidationError):
            parse_quantity("-1")


# ---------------------------------------------------------------------------
# Selectors
# ---------------------------------------------------------------------------


class TestLabelSelector:
    def test_match_labels_and_expressions(self) -> None:
        selector = LabelSelector.from_dict(
            {
                "matchLabels": {"app": "web"},
                "matchExpressions": [{"key": "tier", "operator": "In", "values": ["fe", "edge"]}],
            }
        )
        assert selector.matches({"app": "web", "tier": "fe"})
        assert not selector.matches({"app": "web", "tier": "db"})
        assert not selector.matches({"tier": "fe"})

    def test_flat_mapping_is_match_labels(self) -> None:
        assert LabelSelector.from_dict({"app": "web"}).matches({"app": "web", "x": "y"})

    def test_none_matches_nothing(self) -> None:
        selector = LabelSelector.from_dict(None)
        assert not selector.matches({})
        assert str(selector) == "<none>"

    def test_empty_matches_everything(self) -> None:
        selector = LabelSelector()
        assert selector.empty
        assert selector.matches({"any": "thing"})

    def test_not_in_matches_absent_key(self) -> None:
        selector = LabelSelector.from_dict({"matchExpressions": [{"key": "env", "operator": "NotIn", "values": ["prod"]}]})
        assert selector.matches({})
        assert not selector.matches({"env": "prod"})

    def test_exists_with_values_rejected(self) -> None:
        with pytest.raises(ValidationError):
            LabelSelector.from_dict({"matchExpressions": [{"key": "a", "operator": "Exists", "values": ["x"]}]})

    def test_unknown_operator_rejected(self) -> None:
        with pytest.raises(ValidationError):
            LabelSelector.from_dict({"matchExpressions": [{"key": "a", "operator": "Near"}]})

    def test_parse_selector_string(self) -> None:
        selector = parse_selector_string("app=web,tier!=db,canary,!legacy")
        assert selector.matches({"app": "web", "tier": "fe", "canary": "1"})
        assert not selector.matches({"app": "web", "tier": "db", "canary": "1"})
        assert not selector.matches({"app": "web", "canary": "1", "legacy": "yes"})
        assert str(selector) == "app=web,tier notin (db),canary,!legacy"

    def test_parse_selector_string_empty_key(self) -> None:
        with pytest.raises(ValidationError):
            parse_selector_string("=web")


# ---------------------------------------------------------------------------
# Objects and conditions
# ---------------------------------------------------------------------------


class TestKubeObject:
    def test_key_str_namespaced_and_cluster(self) -> None:
        assert str(ObjectKey("Pod", "default", "web-1")) == "Pod/default/web-1"
        assert str(ObjectKey("Node", "", "n1")) == "Node/n1"

    def test_to_dict_from_dict(self) -> None:
        obj = KubeObject(
            kind=Kind.POD,
            name="web-1",
            spec={"containers": [{"name": "a"}]},
            labels={"app": "web"},
            owner_references=[OwnerReference(kind="ReplicaSet", name="web", uid="u1")],
            uid="p1",
            resource_version=7,
            creation_timestamp=datetime(2024, 1, 1, tzinfo=UTC),
        )
        document = obj.to_dict()
        assert document["metadata"]["resourceVersion"] == "7"
        restored = KubeObject.from_dict(document)
        assert restored == obj

    def test_copy_is_deep(self) -> None:
        obj = KubeObject(kind=Kind.POD, name="a", spec={"containers": [{"name": "c"}]})
        clone = obj.copy()
        clone.spec["containers"][0]["name"] = "changed"
        assert obj.spec["containers"][0]["name"] == "c"

    def test_controller_ref(self) -> None:
        owner = KubeObject(kind=Kind.REPLICA_SET, name="web", uid="rs-1")
        child = KubeObject(kind=Kind.POD, name="web-x", owner_references=[owner_reference_for(owner)])
        assert child.is_controlled_by(owner)
        assert not child.is_controlled_by(KubeObject(kind=Kind.REPLICA_SET, name="other", uid="rs-2"))


class TestConditions:
    def test_set_condition_transition_time_only_moves_on_flip(self) -> None:
        status: dict[str, object] = {}
        t1 = datetime(2024, 1, 1, tzinfo=UTC)
        t2 = datetime(2024, 1, 2, tzinfo=UTC)
        assert set_condition(status, "Ready", "False", reason="Starting", now=t1)
        assert not set_condition(status, "Ready", "False", reason="Starting", now=t2)
        assert set_condition(status, "Ready", "False", reason="Waiting", now=t2)
        condition = get_condition(status, "Ready")
        assert condition is not None
        assert condition.last_transition_time == t1.isoformat()
        assert set_condition(status, "Ready", "True", now=t2)
        condition = get_condition(status, "Ready")
        assert condition is not None
        assert condition.last_transition_time == t2.isoformat()

    def test_remove_condition(self) -> None:
        status: dict[str, object] = {}
        set_condition(status, "InvalidSpec", "True")
        assert remove_condition(status, "InvalidSpec")
        assert not remove_condition(status, "InvalidSpec")
        assert get_condition(status, "InvalidSpec") is None


# ---------------------------------------------------------------------------
# Pod helpers
# ---------------------------------------------------------------------------


def _pod(name: str, node: str | None = None, phase: str = "Pending", ready: bool = False, created: int = 0) -> KubeObject:
    spec: dict[str, object] = {"nodeName": node} if node else {}
    return KubeObject(
        kind=Kind.POD,
        name=name,
        spec=spec,
        status={"phase": phase, "ready": ready, "readySince": 100.0},
        creation_timestamp=datetime.fromtimestamp(1_700_000_000 + created, tz=UTC),
    )


class TestPodHelpers:
    def test_ready_requires_running_phase(self) -> None:
        assert is_pod_ready(_pod("a", node="n", phase="Running", ready=True))
        assert not is_pod_ready(_pod("a", node="n", phase="Pending", ready=True))

    def test_terminating_pod_not_ready_or_active(self) -> None:
        pod = _pod("a", node="n", phase="Running", ready=True)
        pod.deletion_timestamp = datetime.now(tz=UTC)
        assert not is_pod_ready(pod)
        assert not is_pod_active(pod)

    def test_available_after_min_ready_seconds(self) -> None:
        pod = _pod("a", node="n", phase="Running", ready=True)
        assert is_pod_available(pod, 0, now=100.0)
        assert not is_pod_available(pod, 10, now=105.0)
        assert is_pod_available(pod, 10, now=110.0)

    def test_deletion_rank_order(self) -> None:
        unplaced = _pod("unplaced", created=5)
        pending = _pod("pending", node="n", phase="Pending", created=4)
        not_ready = _pod("not-ready", node="n", phase="Running", created=3)
        ready_new = _pod("ready-new", node="n", phase="Running", ready=True, created=2)
        ready_old = _pod("ready-old", node="n", phase="Running", ready=True, created=1)
        ordered = sorted([ready_old, ready_new, not_ready, pending, unplaced], key=deletion_rank)
        assert [p.name for p in ordered] == ["unplaced", "pending", "not-ready", "ready-new", "ready-old"]


# ---------------------------------------------------------------------------
# Typed specs
# ---------------------------------------------------------------------------


class TestWorkloadSpecs:
    def test_strategy_resolution_rounding(self) -> None:
        strategy = DeploymentStrategy(max_surge="25%", max_unavailable="25%")
        assert strategy.resolve(10) == (3, 2)

    def test_strategy_zero_zero_allows_one_unavailable(self) -> None:
        assert DeploymentStrategy(max_surge="10%", max_unavailable="10%").resolve(3) == (1, 0)
        assert DeploymentStrategy(max_surge="0%", max_unavailable="10%").resolve(3) == (0, 1)

    def test_strategy_both_zero_rejected(self) -> None:
        with pytest.raises(ValidationError):
            DeploymentStrategy.from_dict({"type": "RollingUpdate", "rollingUpdate": {"maxSurge": 0, "maxUnavailable": 0}})

    def test_recreate_strategy(self) -> None:
        strategy = DeploymentStrategy.from_dict({"type": "Recreate"})
        assert strategy.type == DeploymentStrategyType.RECREATE

    def test_deployment_spec_defaults(self) -> None:
        spec = DeploymentSpec.from_dict(manifests.deployment("web", 3, {"app": "web"})["spec"])
        assert spec.replicas == 3
        assert spec.progress_deadline_seconds == 600
        assert spec.revision_history_limit == 10
        assert not spec.paused

    def test_selector_must_match_template(self) -> None:
        document = manifests.deployment("web", 3, {"app": "web"})
        document["spec"]["selector"] = {"matchLabels": {"app": "api"}}
        with pytest.raises(ValidationError, match="does not match"):
            DeploymentSpec.from_dict(document["spec"])

    def test_negative_replicas_rejected(self) -> None:
        document = manifests.deployment("web", -1, {"app": "web"})
        with pytest.raises(ValidationError):
            DeploymentSpec.from_dict(document["spec"])

    def test_statefulset_claim_templates(self) -> None:
        document = manifests.statefulset("db", 3, {"app": "db"}, claim_templates=[manifests.claim_template()])
        spec = StatefulSetSpec.from_dict(document["spec"])
        assert spec.volume_claim_templates[0].name == "data"
        assert spec.volume_claim_templates[0].request_bytes == 1024**3

    def test_statefulset_requires_service_name(self) -> None:
        document = manifests.statefulset("db", 1, {"app": "db"})
        del document["spec"]["serviceName"]
        with pytest.raises(ValidationError):
            StatefulSetSpec.from_dict(document["spec"])

    def test_pod_scheduling_spec_sums_requests(self) -> None:
        spec = manifests.pod_spec(cpu="250m", memory="64Mi")
        spec["containers"].append({"name": "side", "resources": {"requests": {"cpu": "50m"}}})
        parsed = PodSchedulingSpec.from_pod_spec(spec)
        assert parsed.requests.cpu_millis == 300
        assert parsed.requests.memory_bytes == 64 * 1024 * 1024

    def test_affinity_parsing(self) -> None:
        affinity = Affinity.from_dict(
            {
                "nodeAffinity": {
                    "requiredDuringSchedulingIgnoredDuringExecution": {
                        "nodeSelectorTerms": [{"matchExpressions": [{"key": "zone", "operator": "In", "values": ["a"]}]}]
                    }
                },
                "podAntiAffinity": {
                    "requiredDuringSchedulingIgnoredDuringExecution": [
                        {"labelSelector": {"matchLabels": {"app": "web"}}, "topologyKey": "kubernetes.io/hostname"}
                    ]
                },
            }
        )
        assert affinity.required_node_terms[0].matches({"zone": "a"})
        assert not affinity.required_node_terms[0].matches({"zone": "b"})
        assert affinity.required_anti_affinity[0].topology_key == "kubernetes.io/hostname"


class TestClusterSpecs:
    def test_node_spec(self) -> None:
        spec = NodeSpec.from_dict(manifests.node("n1", taints=[{"key": "gpu", "effect": "NoSchedule"}])["spec"])
        assert spec.allocatable.cpu_millis == 4000
        assert spec.taints[0].key == "gpu"

    def test_node_bad_taint_effect(self) -> None:
        with pytest.raises(ValidationError):
            NodeSpec.from_dict({"allocatable": {"cpu": "1"}, "taints": [{"key": "a", "effect": "Sometimes"}]})

    def test_volume_satisfies_claim(self) -> None:
        volume = PersistentVolumeSpec.from_dict(manifests.volume("pv-1", size="2Gi", reclaim="Delete")["spec"])
        assert volume.reclaim_policy == ReclaimPolicy.DELETE
        assert volume.satisfies(parse_claim(manifests.claim("c", size="1Gi")["spec"]))
        assert not volume.satisfies(parse_claim(manifests.claim("c", size="4Gi")["spec"]))
        assert not volume.satisfies(parse_claim(manifests.claim("c", storage_class="fast")["spec"]))


class TestHPASpec:
    def test_parse_utilization_metric(self) -> None:
        spec = HPASpec.from_dict(manifests.autoscaler("web", "web", min_replicas=2, max_replicas=8)["spec"])
        assert spec.min_replicas == 2
        assert spec.metrics[0].target_type == MetricTargetType.UTILIZATION
        assert spec.metrics[0].target_value == 70.0
        assert {p.type for p in spec.scale_up.policies} == {ScalingPolicyType.PERCENT, ScalingPolicyType.PODS}
        assert spec.scale_down.stabilization_window_seconds == 300

    def test_max_below_min_rejected(self) -> None:
        with pytest.raises(ValidationError):
            HPASpec.from_dict(manifests.autoscaler("web", "web", min_replicas=5, max_replicas=2)["spec"])

    def test_unscalable_target_rejected(self) -> None:
        with pytest.raises(ValidationError):
            HPASpec.from_dict(manifests.autoscaler("web", "web", target_kind="Service")["spec"])

    def test_scale_down_window_override(self) -> None:
        spec = HPASpec.from_dict(manifests.autoscaler("web", "web")["spec"], default_scale_down_window=60)
        assert spec.scale_down.stabilization_window_seconds == 60
