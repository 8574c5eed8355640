from typing import Any, List, Optional, Tuple

NODE_READY = "Ready"
NODE_STATUS_UNKNOWN = "NodeStatusUnknown"
JOB_COMPLETE = "Complete"
JOB_FAILED = "Failed"


def get_condition(conditions: Optional[List[Any]], condition_type: str) -> Tuple[int, Optional[Any]]:
    """Return (index, condition) of the first condition of the given type, or (-1, None)"""
    for i, condition in enumerate(conditions or []):
        if condition.type == condition_type:
            return i, condition
    return -1, None


def get_node_condition(status, condition_type: str) -> Tuple[int, Optional[Any]]:
    if status is None:
        return -1, None
    return get_condition(status.conditions, condition_type)


def get_job_condition(status, condition_type: str) -> Tuple[int, Optional[Any]]:
    if status is None:
        return -1, None
    return get_condition(status.conditions, condition_type)
