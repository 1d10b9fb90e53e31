"""
Step Dependency Runner

Helpers shared by every engine that sequences named steps: account setup
steps, compliance approval steps and progress phases. A step is any object
with ``name``, ``status`` and ``dependencies`` (a list of other step names).

Dependencies are matched by name, so names must be unique within one
collection of steps.
"""

from typing import Any, Dict, Iterable, List, Optional, Set


def index_by_name(steps: Iterable[Any]) -> Dict[str, Any]:
    """Map step name to step, rejecting duplicate names"""
    index = {}
    for step in steps:
        if step.name in index:
            raise ValueError(f"Duplicate step name: {step.name}")
        index[step.name] = step
    return index


def completed_names(steps: Iterable[Any], completed_status: Any) -> Set[str]:
    return {step.name for step in steps if step.status == completed_status}


def dependencies_met(step: Any, done: Set[str]) -> bool:
    return all(dependency in done for dependency in step.dependencies)


def find_next_eligible(steps: List[Any], pending_status: Any, completed_status: Any) -> Optional[Any]:
    """
    First step, in list order, that is still pending and whose dependencies
    have all completed. ``None`` when nothing can run right now.
    """
    done = completed_names(steps, completed_status)
    for step in steps:
        if step.status == pending_status and dependencies_met(step, done):
            return step
    return None


def find_all_eligible(steps: List[Any], ready_status: Any, completed_status: Any) -> List[Any]:
    """Every step in ``ready_status`` whose dependencies have all completed"""
    done = completed_names(steps, completed_status)
    return [step for step in steps if step.status == ready_status and dependencies_met(step, done)]


def resolve_terminal_status(steps: List[Any], completed_status: Any, failed_status: Any) -> Optional[str]:
    """
    Outcome once no further step is eligible: "COMPLETED" when every step
    completed, "FAILED" when any failed, otherwise ``None`` (still waiting on
    outside input).
    """
    if steps and all(step.status == completed_status for step in steps):
        return "COMPLETED"
    if any(step.status == failed_status for step in steps):
        return "FAILED"
    return None


def sort_by_order(steps: List[Any]) -> List[Any]:
    """Stable sort on the (possibly fractional) ``order`` attribute"""
    return sorted(steps, key=lambda step: step.order)
