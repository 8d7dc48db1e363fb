# Copyright (c) 2024 Hostplay Contributors
# MIT License

"""
Hostplay: declarative host-configuration orchestrator.

Runs Ansible-style playbooks against an inventory of hosts.

Features:
    - Strict 14-rank variable precedence with deep merge
    - Linear and free execution strategies over a bounded worker pool
    - block/rescue/always, loops, retries, handlers and tag selection
    - Rolling batches with ``serial`` and ``max_fail_percentage``

This package exposes release metadata; the engine lives in ``hostplay.engine``.
"""

from __future__ import annotations

from hostplay.release import __version__, __author__, __codename__

__all__ = [
    "__version__",
    "__author__",
    "__codename__",
]
