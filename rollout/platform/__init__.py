"""Platform abstraction layer."""

from .files import atomic_symlink, atomic_write_text, remove_tree
from .host import read_mem_total_mb
from .process import (
    CommandCall,
    CommandRunner,
    MockRunner,
    ProcessError,
    SubprocessRunner,
    run,
)

__all__ = [
    # files
    "atomic_symlink",
    "atomic_write_text",
    "remove_tree",
    # host
    "read_mem_total_mb",
    # process
    "CommandCall",
    "CommandRunner",
    "MockRunner",
    "ProcessError",
    "SubprocessRunner",
    "run",
]
