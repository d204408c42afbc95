"""CPU profiling harness for the drg-attacks binary.

This package provisions gperftools and libunwind, builds the target with its
`cpu-profile` feature, runs a fixed workload and renders the captured profile
into a revision-labelled call graph.
"""

from __future__ import annotations
