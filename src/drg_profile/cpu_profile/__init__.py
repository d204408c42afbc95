"""
Sequential profiling pipeline for the drg-attacks binary.

Stages run in a fixed order and stop at the first fatal failure:

`provision -> toolchain -> build -> execute -> tag -> render`

Per-run logs and metadata are written under `<work_dir>/tmp/cpu_profile/<run_id>/`.
"""

from __future__ import annotations
