"""Read-only inspection of LSM-tree klog, vlog and WAL files."""

__version__ = "0.1.0"
