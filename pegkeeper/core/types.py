"""
Pegkeeper: Core Type Definitions

This module defines common type aliases shared across the Pegkeeper
codebase. It exists to centralise frequently used type definitions and
avoid circular imports between higher-level modules.

External dependencies:
- typing: Standard library typing primitives only

Thread safety: Thread-safe (no mutable global state)
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, TypeAlias

# ============================================================================
# Type Aliases
# ============================================================================

# Millisecond timestamps and durations (epoch-based for wall clocks)
Millis: TypeAlias = int

# Zero-argument callable returning the current time in milliseconds
ClockFn: TypeAlias = Callable[[], Millis]

# Read-only mapping of configuration overrides (partial config patches)
ConfigPatch: TypeAlias = Mapping[str, Any]

# Generic metadata / snapshot mapping returned to host processes
MetadataDict: TypeAlias = Dict[str, Any]
