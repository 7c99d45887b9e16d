"""
Resource snapshots for supervised processes.

Collects CPU and memory usage of a process and its children so the supervisor
can log what each dev server is doing on every monitoring tick.
"""

import logging

import psutil

logger = logging.getLogger(__name__)


def get_process_metrics(pid: int) -> dict:
    """Get current CPU and memory usage for a process tree."""
    result = {
        "cpu_percent": 0.0,
        "memory_mb": 0.0,
        "child_processes": 0,
    }

    try:
        proc = psutil.Process(pid)
        cpu_percent = proc.cpu_percent(interval=0.1)
        memory_mb = proc.memory_info().rss / 1024 / 1024

        # Include children (bundle exec and swift run both fork the real server)
        child_count = 0
        try:
            children = proc.children(recursive=True)
            child_count = len(children)
            for child in children:
                cpu_percent += child.cpu_percent(interval=0.1)
                memory_mb += child.memory_info().rss / 1024 / 1024
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

        result.update({
            "cpu_percent": round(cpu_percent, 1),
            "memory_mb": round(memory_mb, 1),
            "child_processes": child_count,
        })

    except psutil.NoSuchProcess:
        logger.debug(f"Process {pid} no longer exists")
    except psutil.AccessDenied:
        logger.debug(f"Access denied for process {pid}")

    return result


def list_descendants(pid: int) -> list[psutil.Process]:
    """Return all live descendants of a process (empty if it is gone)."""
    try:
        return psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []
