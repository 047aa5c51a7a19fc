"""
Sysmon JSON - convert Sysmon configurations between XML and JSON and merge them.

Features:
- XML <-> JSON conversion through a shared document tree
- Batch conversion of whole directories on a worker pool
- Rule-based merging of many configuration modules into one file
- Depth, size and ignore-pattern limits for discovery
- Optional backups and round-trip verification of outputs
- Progress visualization
"""

__version__ = "1.0.0"
