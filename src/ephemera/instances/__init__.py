"""Instance lifecycle: port allocation, host execution and cleanup."""

from ephemera.instances.cleaner import InstanceCleaner
from ephemera.instances.executor import Executor, OSExecutor
from ephemera.instances.ports import allocate_instance_port, allocate_port

__all__ = [
    "Executor",
    "InstanceCleaner",
    "OSExecutor",
    "allocate_instance_port",
    "allocate_port",
]
