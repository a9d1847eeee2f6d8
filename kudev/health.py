"""Deployment health evaluation."""

from datetime import datetime
from typing import Iterable, Optional

from kubernetes.client import V1Pod

from .models import PodStatus, StatusCode

# Restart count above which a pod with no ready replicas counts as crash looping
CRASH_LOOP_RESTARTS = 3


def compute_status_code(ready: int, desired: int, pods: Iterable[PodStatus]) -> StatusCode:
    """
    Determine overall deployment health.

    Args:
        ready: Ready replica count
        desired: Desired replica count
        pods: Status of the deployment's pods

    Returns:
        StatusCode
    """
    if desired == 0:
        return StatusCode.UNKNOWN

    if ready >= desired:
        return StatusCode.RUNNING

    if ready == 0:
        if any(pod.restarts > CRASH_LOOP_RESTARTS for pod in pods):
            return StatusCode.FAILED
        return StatusCode.PENDING

    return StatusCode.DEGRADED


def build_status_message(code: StatusCode, ready: int, desired: int) -> str:
    """Create a user-facing status message."""
    if code is StatusCode.RUNNING:
        return f"All {desired} replicas are running"
    if code is StatusCode.PENDING:
        return f"Waiting for pods to start (0/{desired} ready)"
    if code is StatusCode.DEGRADED:
        return f"Partially running ({ready}/{desired} ready)"
    if code is StatusCode.FAILED:
        return "Pods are failing - check logs with 'kubectl logs'"
    return "Unable to determine status"


def is_pod_ready(pod: V1Pod) -> bool:
    """Check the PodReady condition of a pod."""
    for condition in (pod.status and pod.status.conditions) or []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def pod_status(pod: V1Pod) -> PodStatus:
    """
    Summarize a pod.

    Restarts are summed over all containers. The message is the last
    non-empty waiting or terminated message, terminated taking precedence
    within one container.
    """
    restarts = 0
    message = ""
    name = ""
    phase: Optional[str] = None
    created_at: Optional[datetime] = None

    if pod.metadata is not None:
        name = pod.metadata.name or ""
        created_at = pod.metadata.creation_timestamp

    if pod.status is not None:
        phase = pod.status.phase
        for container_status in pod.status.container_statuses or []:
            restarts += container_status.restart_count or 0

            state = container_status.state
            if state is None:
                continue
            if state.waiting is not None and state.waiting.message:
                message = state.waiting.message
            if state.terminated is not None and state.terminated.message:
                message = state.terminated.message

    return PodStatus(
        name=name,
        phase=phase or "Unknown",
        ready=is_pod_ready(pod),
        restarts=restarts,
        created_at=created_at,
        message=message,
    )
