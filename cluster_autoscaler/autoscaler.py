"""
The autoscaling control loop.

StaticAutoscaler.run_once performs one tick: snapshot, health gate,
unregistered node cleanup, size reconciliation, pod filtering, scale-up and,
when nothing was added, scale-down. AutoscalerRunner repeats ticks on a
fixed interval in a background thread.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from .backoff import ExponentialBackoff
from .cloudprovider import CloudProvider
from .clusterstate import ClusterStateRegistry
from .config import AutoscalerConfig, AutoscalingOptions
from .errors import ApiCallError, AutoscalerError, CloudProviderError, ErrorType, to_autoscaler_error
from .expander import Strategy, build_expander
from .kube_client import ClusterClient
from .metrics import AutoscalerMetrics, Phase
from .model import Node, Pod
from .scale_down import ScaleDown
from .scale_up import ScaleUpPlanner
from .simulator import PredicateChecker
from .status import (
    EventType, LogStatusRecorder, ScaleDownResult, ScaleDownStatus, ScaleUpResult, ScaleUpStatus,
    StatusRecorder,
)
from .utils import (
    all_pods_are_new, clean_to_be_deleted, filter_out_expendable_and_split, filter_out_nodes_with_unready_gpus,
    filter_out_schedulable, filter_out_young_pods, fix_node_group_size, get_potentially_unneeded_nodes,
    remove_old_unregistered_nodes,
)

logger = logging.getLogger(__name__)

# Nodes may still be booting when the autoscaler starts
NODES_NOT_READY_AFTER_START_TIMEOUT = timedelta(minutes=10)


@dataclass
class TickStatus:
    """Statuses published at the end of a tick"""
    scale_up: ScaleUpStatus = field(default_factory=ScaleUpStatus)
    scale_down: ScaleDownStatus = field(default_factory=ScaleDownStatus)
    cluster_status: Optional[str] = None


class StaticAutoscaler:
    """
    Autoscaler working against a fixed set of node groups.

    All state (registry, unneeded nodes, cooldown clocks) is owned by the
    thread calling run_once.
    """

    def __init__(self,
                 options: AutoscalingOptions,
                 cloud_provider: CloudProvider,
                 client: ClusterClient,
                 recorder: Optional[StatusRecorder] = None,
                 backoff: Optional[ExponentialBackoff] = None,
                 expander: Optional[Strategy] = None,
                 metrics: Optional[AutoscalerMetrics] = None,
                 predicate_checker: Optional[PredicateChecker] = None,
                 start_time: Optional[datetime] = None):
        self.options = options
        self.cloud_provider = cloud_provider
        self.client = client
        self.recorder = recorder or LogStatusRecorder()
        self.metrics = metrics or AutoscalerMetrics()
        self.predicate_checker = predicate_checker or PredicateChecker()

        self.registry = ClusterStateRegistry(cloud_provider, options, backoff or ExponentialBackoff())
        self.scale_down = ScaleDown(cloud_provider, client, self.registry, self.predicate_checker, options)
        self.scale_up_planner = ScaleUpPlanner(cloud_provider, self.registry, self.predicate_checker,
                                               expander or build_expander(options.expander), options)

        self.start_time = start_time or datetime.now(timezone.utc)
        self.last_scale_up_time = self.start_time
        self.last_scale_up_attempt_time = self.start_time
        self.last_scale_down_delete_time = self.start_time
        self.last_scale_down_fail_time = self.start_time
        self.initialized = False

    def run_once(self, now: datetime) -> TickStatus:
        """
        Run a single tick.

        Exactly one scale-up status, one scale-down status and one cluster
        status are published, whichever way the tick ends.

        Returns:
            The statuses published for this tick

        Raises:
            AutoscalerError: If the tick had to stop on an error
        """
        tick = TickStatus()
        try:
            with self.metrics.timed(Phase.MAIN):
                self._run_once(now, tick)
        except AutoscalerError as e:
            self.metrics.register_error(e.error_type)
            if e.error_type == ErrorType.INTERNAL_ERROR:
                logger.critical(f"Internal error in autoscaling loop: {e}")
            raise
        finally:
            self._publish(tick, now)
        return tick

    def _run_once(self, now: datetime, tick: TickStatus) -> None:
        self._clean_up_if_required()
        logger.debug("Starting main loop")

        with self.metrics.timed(Phase.UPDATE_STATE):
            all_nodes, ready_nodes = self._obtain_node_lists()
            if self._act_on_empty_cluster(all_nodes, ready_nodes, now, tick):
                return
            self._update_cluster_state(all_nodes, now)

        unregistered = self.registry.get_unregistered_nodes()
        if unregistered:
            logger.info(f"{len(unregistered)} unregistered node(s) present")
            if remove_old_unregistered_nodes(unregistered, self.cloud_provider, now,
                                             self.options.max_node_provision_time):
                logger.info("Some unregistered nodes were removed, skipping the iteration")
                return

        if not self.registry.is_cluster_healthy():
            logger.warning("Cluster is not ready for autoscaling")
            self.scale_down.clean_up_unneeded_nodes()
            self.recorder.event(EventType.WARNING, "ClusterUnhealthy", "Cluster is unhealthy")
            return

        if fix_node_group_size(self.registry, self.cloud_provider, now, self.options.max_node_provision_time):
            logger.info("Some node group target size was fixed, skipping the iteration")
            return

        self.metrics.update_last_activity("autoscaling", now)

        all_unschedulable = self._list(self.client.list_unschedulable_pods, "unschedulable pods")
        self.metrics.set_gauge("unschedulable_pods", len(all_unschedulable))
        all_scheduled = self._list(self.client.list_scheduled_pods, "scheduled pods")

        self.predicate_checker.configure_for_loop(all_unschedulable, all_scheduled)

        unschedulable, waiting_for_preemption = filter_out_expendable_and_split(
            all_unschedulable, self.options.expendable_pods_priority_cutoff)

        with self.metrics.timed(Phase.FILTER_OUT_SCHEDULABLE):
            to_help = filter_out_schedulable(unschedulable, ready_nodes, all_scheduled, waiting_for_preemption,
                                             self.predicate_checker, self.options.expendable_pods_priority_cutoff)

        scale_down_forbidden = False
        if len(to_help) != len(unschedulable):
            logger.debug("Schedulable pods present")
            scale_down_forbidden = True

        to_help = filter_out_young_pods(to_help, now, self.options.new_pod_scale_up_delay)

        if not to_help:
            logger.debug("No unschedulable pods")
            tick.scale_up.result = ScaleUpResult.NOT_NEEDED
        elif 0 < self.options.max_nodes_total <= len(ready_nodes):
            logger.info("Max total nodes in cluster reached")
            tick.scale_up.result = ScaleUpResult.NO_OPTIONS_AVAILABLE
            tick.scale_up.pods_remain_unschedulable = to_help
        elif all_pods_are_new(to_help, now):
            logger.info("Unschedulable pods are very new, waiting one iteration for more")
            scale_down_forbidden = True
            tick.scale_up.result = ScaleUpResult.IN_COOLDOWN
        else:
            try:
                daemon_sets = self._list(self.client.list_daemon_sets, "daemon sets")
                self.last_scale_up_attempt_time = now
                self.metrics.update_last_activity("scale_up", now)
                with self.metrics.timed(Phase.SCALE_UP):
                    tick.scale_up = self.scale_up_planner.scale_up(to_help, ready_nodes, all_scheduled,
                                                                   daemon_sets, now)
            except AutoscalerError as e:
                logger.error(f"Failed to scale up: {e}")
                tick.scale_up = ScaleUpStatus(result=ScaleUpResult.ERROR, pods_remain_unschedulable=to_help,
                                              message=str(e))
                if e.error_type == ErrorType.CLOUD_PROVIDER_ERROR:
                    self.metrics.increment("failed_scale_ups_total")
                raise

            if tick.scale_up.result == ScaleUpResult.SUCCESSFUL:
                self.last_scale_up_time = now
                self.metrics.increment("scaled_up_nodes_total",
                                       sum(info.new_size - info.current_size for info in tick.scale_up.scale_up_infos))
                tick.scale_down.result = ScaleDownResult.IN_COOLDOWN
                return

        if self.options.scale_down_enabled:
            # Pods waiting for preemption hold capacity on their nominated node
            pods_for_simulation = all_scheduled + [pod.copy(node_name=pod.nominated_node_name)
                                                   for pod in waiting_for_preemption]
            self._scale_down(all_nodes, pods_for_simulation, all_scheduled, scale_down_forbidden, now, tick)

    def _scale_down(self, all_nodes: List[Node], pods_for_simulation: List[Pod], all_scheduled: List[Pod],
                    scale_down_forbidden: bool, now: datetime, tick: TickStatus) -> None:
        try:
            pdbs = self._list(self.client.list_pod_disruption_budgets, "pod disruption budgets")

            with self.metrics.timed(Phase.FIND_UNNEEDED):
                self.scale_down.clean_up(now)
                candidates = get_potentially_unneeded_nodes(all_nodes, self.cloud_provider)
                self.scale_down.update_unneeded_nodes(all_nodes, candidates, pods_for_simulation, now, pdbs)
        except AutoscalerError as e:
            logger.error(f"Failed to scale down: {e}")
            tick.scale_down = ScaleDownStatus(result=ScaleDownResult.ERROR, message=str(e))
            raise
        self.metrics.set_gauge("unneeded_nodes", len(self.scale_down.unneeded_nodes))

        for name, since in self.scale_down.unneeded_nodes.items():
            logger.debug(f"{name} is unneeded since {since.isoformat()} duration {now - since}")

        in_cooldown = (scale_down_forbidden
                       or self.last_scale_up_time + self.options.scale_down_delay_after_add > now
                       or self.last_scale_down_fail_time + self.options.scale_down_delay_after_failure > now
                       or self.last_scale_down_delete_time + self.options.scale_down_delay_after_delete > now)
        delete_in_progress = self.scale_down.node_deletion_status.is_delete_in_progress()

        logger.debug(f"Scale down status: lastScaleUpTime={self.last_scale_up_time} "
                     f"lastScaleDownDeleteTime={self.last_scale_down_delete_time} "
                     f"lastScaleDownFailTime={self.last_scale_down_fail_time} "
                     f"scaleDownForbidden={scale_down_forbidden} isDeleteInProgress={delete_in_progress}")

        if in_cooldown:
            tick.scale_down.result = ScaleDownResult.IN_COOLDOWN
            return
        if delete_in_progress:
            tick.scale_down.result = ScaleDownResult.IN_PROGRESS
            return

        logger.debug("Starting scale down")
        self.metrics.update_last_activity("scale_down", now)
        try:
            with self.metrics.timed(Phase.SCALE_DOWN):
                tick.scale_down = self.scale_down.try_to_scale_down(all_nodes, all_scheduled, pdbs, now)
        except AutoscalerError as e:
            logger.error(f"Failed to scale down: {e}")
            self.last_scale_down_fail_time = now
            tick.scale_down = ScaleDownStatus(result=ScaleDownResult.ERROR, message=str(e))
            raise

        if tick.scale_down.result == ScaleDownResult.SUCCESSFUL:
            self.last_scale_down_delete_time = now
            self.metrics.increment("scaled_down_nodes_total", len(tick.scale_down.scaled_down_nodes))
            self.registry.recalculate()

    def _clean_up_if_required(self) -> None:
        """Remove deletion taints left by a previous run, once per process"""
        if self.initialized:
            return
        try:
            ready_nodes = self.client.list_ready_nodes()
        except ApiCallError as e:
            logger.error(f"Failed to list ready nodes, not cleaning up taints: {e}")
        else:
            clean_to_be_deleted(ready_nodes, self.client, self.recorder)
        self.initialized = True

    def _list(self, lister: Callable[[], list], what: str) -> list:
        try:
            return lister()
        except ApiCallError as e:
            logger.error(f"Failed to list {what}: {e}")
            raise to_autoscaler_error(ErrorType.API_CALL_ERROR, e)

    def _obtain_node_lists(self) -> Tuple[List[Node], List[Node]]:
        all_nodes = self._list(self.client.list_all_nodes, "all nodes")
        ready_nodes = self._list(self.client.list_ready_nodes, "ready nodes")
        return filter_out_nodes_with_unready_gpus(all_nodes, ready_nodes)

    def _act_on_empty_cluster(self, all_nodes: List[Node], ready_nodes: List[Node], now: datetime,
                              tick: TickStatus) -> bool:
        if not all_nodes:
            self._on_empty_cluster("Cluster has no nodes.", True, tick)
            return True
        if not ready_nodes:
            emit = now > self.start_time + NODES_NOT_READY_AFTER_START_TIMEOUT
            self._on_empty_cluster("Cluster has no ready nodes.", emit, tick)
            return True
        return False

    def _on_empty_cluster(self, message: str, emit_event: bool, tick: TickStatus) -> None:
        logger.warning(message)
        self.scale_down.clean_up_unneeded_nodes()
        self.metrics.update_cluster_state(0, 0, 0, 0, len(self.cloud_provider.node_groups()), False)
        tick.cluster_status = message
        if emit_event:
            self.recorder.event(EventType.WARNING, "ClusterUnhealthy", message)

    def _update_cluster_state(self, all_nodes: List[Node], now: datetime) -> None:
        try:
            self.cloud_provider.refresh()
        except CloudProviderError as e:
            logger.error(f"Failed to refresh cloud provider config: {e}")
            raise to_autoscaler_error(ErrorType.CLOUD_PROVIDER_ERROR, e)

        try:
            self.registry.update_nodes(all_nodes, now)
        except AutoscalerError as e:
            logger.error(f"Failed to update node registry: {e}")
            self.scale_down.clean_up_unneeded_nodes()
            raise

        readiness = self.registry.get_cluster_readiness()
        self.metrics.update_cluster_state(
            readiness.ready, readiness.unready, readiness.not_started,
            len(self.registry.get_unregistered_nodes()), len(self.cloud_provider.node_groups()),
            self.registry.is_cluster_healthy())

    def _publish(self, tick: TickStatus, now: datetime) -> None:
        self.recorder.record_scale_up(tick.scale_up)
        self.recorder.record_scale_down(tick.scale_down)
        if tick.cluster_status is None:
            try:
                tick.cluster_status = self.registry.get_status(now).readable()
            except Exception as e:
                logger.error(f"Failed to build cluster status: {e}")
                tick.cluster_status = f"Cluster status unavailable: {e}"
        self.recorder.record_cluster_status(tick.cluster_status)
        self.metrics.sample_process()

    def exit_clean_up(self) -> None:
        """Release recorder and provider resources"""
        self.recorder.cleanup()
        self.cloud_provider.cleanup()


class AutoscalerRunner:
    """Runs autoscaler ticks every scan_interval until stopped"""

    def __init__(self, autoscaler: StaticAutoscaler, scan_interval: timedelta,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.autoscaler = autoscaler
        self.scan_interval = scan_interval
        self.clock = clock
        self.ticks = 0
        self._stop_event = threading.Event()
        self._lock = threading.RLock()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._loop, name="AutoscalerLoop", daemon=True)
            self._thread.start()
            logger.info(f"Autoscaler started, scanning every {self.scan_interval}")

    def stop(self, timeout: float = 10.0) -> None:
        with self._lock:
            self._stop_event.set()
            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=timeout)
            self.autoscaler.exit_clean_up()
            logger.info("Autoscaler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def run_tick(self) -> None:
        """Run one tick, logging instead of raising errors"""
        try:
            self.autoscaler.run_once(self.clock())
        except AutoscalerError as e:
            logger.error(f"Autoscaling tick failed: {e}")
        except Exception as e:
            logger.critical(f"Unexpected error in autoscaling loop: {e}")
        self.ticks += 1

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            started = time.monotonic()
            self.run_tick()
            elapsed = time.monotonic() - started
            self._stop_event.wait(max(0.0, self.scan_interval.total_seconds() - elapsed))


def build_autoscaler(config: AutoscalerConfig, cloud_provider: CloudProvider, client: ClusterClient,
                     recorder: Optional[StatusRecorder] = None, start_time: Optional[datetime] = None,
                     seed: Optional[int] = None) -> StaticAutoscaler:
    """Wire an autoscaler from configuration"""
    backoff = ExponentialBackoff(
        initial_backoff=config.backoff.initial_backoff,
        max_backoff=config.backoff.max_backoff,
        reset_timeout=config.backoff.backoff_reset_timeout,
    )
    expander = build_expander(config.autoscaling.expander, config.instance_prices, seed=seed)
    metrics = AutoscalerMetrics(enabled=config.monitoring.enable_metrics)
    return StaticAutoscaler(
        options=config.autoscaling,
        cloud_provider=cloud_provider,
        client=client,
        recorder=recorder,
        backoff=backoff,
        expander=expander,
        metrics=metrics,
        start_time=start_time,
    )
